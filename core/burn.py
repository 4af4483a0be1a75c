"""Token-burn orchestration for a redemption order.

A run walks the stages strictly in order:

    preparing -> signing -> broadcasting -> confirming -> completing -> completed

and ends in `failed` or `unknown` when something goes wrong. Where it goes
wrong decides what the caller may do next:

- before broadcasting nothing reached the ledger: `failed`, retry is safe
- during/after broadcasting the ledger may have executed the burn: `unknown`,
  no retry until reconciliation has looked the transaction up
- burn confirmed but the order update failed: reported as completed with
  recorded=False; later runs only retry the order update, never the burn

The order must already exist (it is the durable record of the attempt), and
each run leaves a BurnAttempt row that doubles as the job-status record and
the reconciliation queue.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import asdict, dataclass

from django.db import connections
from django.utils import timezone

from .adapters.ledger_adapter import LedgerError, LedgerRejectedError
from .exceptions import (
	BurnInProgressError, DuplicateKeyError, ExternalCallError, InvalidTransitionError, PersistenceError,
	ReconciliationRequiredError, RedemptionError, StageTimeoutError, ValidationError,
)
from .models import BurnAttempt, BurnAttemptStatus, BurnStage, FulfillmentStatus
from .signals import burn_stage_changed

logger = logging.getLogger(__name__)

STAGE_SEQUENCE = (
	BurnStage.PREPARING,
	BurnStage.SIGNING,
	BurnStage.BROADCASTING,
	BurnStage.CONFIRMING,
	BurnStage.COMPLETING,
	BurnStage.COMPLETED,
)

# Stages whose attempt record must be written before moving on; up to and
# including broadcasting, since that write carries the transaction id.
STRICT_STAGES = frozenset({BurnStage.PREPARING, BurnStage.SIGNING, BurnStage.BROADCASTING})


class BurnOutcome:
	COMPLETED = "completed"
	FAILED = "failed"
	UNKNOWN = "unknown"


@dataclass
class BurnResult:
	order_id: str
	attempt_id: str
	outcome: str
	stage: str
	transaction_id: str | None = None
	recorded: bool = True
	retryable: bool = False
	error: str = ""

	def as_dict(self) -> dict:
		return asdict(self)


@dataclass
class BurnProgress:
	order_id: str
	attempt_id: str
	stage: str
	transaction_id: str | None = None
	error: str = ""


def _run_and_close(fn, *args):
	try:
		return fn(*args)
	finally:
		# Worker threads open their own DB connections
		connections.close_all()


class BurnOrchestrator:

	def __init__(self, orders, ledger, attempts, variations=None, *, stage_timeout=None, listeners=(), clock=timezone.now):
		self.orders = orders
		self.ledger = ledger
		self.attempts = attempts
		self.variations = variations
		self.stage_timeout = stage_timeout
		self.listeners = list(listeners)
		self.clock = clock

	def add_listener(self, listener) -> None:
		self.listeners.append(listener)

	def run(self, order_id: str, cancel_event: threading.Event | None = None) -> BurnResult:
		"""
		Burn the tokens for an existing pending order and settle it.

		Raises NotFoundError, InvalidTransitionError, BurnInProgressError or
		ReconciliationRequiredError before anything is sent; every other
		outcome comes back as a BurnResult.
		"""
		order, attempt, previous = self._claim(order_id)
		if attempt is None:
			return self._resume(previous)
		logger.info("Burn attempt %s started for order %s", attempt.attempt_id, order_id)
		return self._drive(order, attempt, cancel_event)

	def _claim(self, order_id):
		"""
		Under the order's row lock, either open a new attempt or hand back the
		live one. The (order_id, not failed) unique key on attempts backs this
		up where the store cannot lock.
		"""
		with self.orders.repository.lock(order_id):
			order = self.orders.get_order(order_id)
			previous = self.attempts.latest_for_order(order_id)
			if previous is not None and previous.status != BurnAttemptStatus.FAILED:
				return order, None, previous
			if order.transaction_id:
				raise InvalidTransitionError(order.status, FulfillmentStatus.COMPLETED, f"Order {order_id} already has burn transaction {order.transaction_id}")
			if order.status != FulfillmentStatus.PENDING:
				raise InvalidTransitionError(order.status, FulfillmentStatus.COMPLETED)

			now = self.clock()
			try:
				attempt = self.attempts.add(BurnAttempt(
					order_id=order.order_id,
					account_id=order.account_id,
					token_id=order.token_id,
					amount=order.amount,
					stage=BurnStage.IDLE,
					status=BurnAttemptStatus.IN_PROGRESS,
					created_at=now,
					updated_at=now,
				))
			except DuplicateKeyError as e:
				raise BurnInProgressError(f"Another burn for order {order_id} was opened concurrently") from e
		return order, attempt, None

	def _resume(self, previous) -> BurnResult:
		if previous.status == BurnAttemptStatus.COMPLETED:
			return self._result(previous, BurnOutcome.COMPLETED)
		if previous.status == BurnAttemptStatus.PERSIST_PENDING:
			logger.info("Order %s was burned in %s; retrying the order update only", previous.order_id, previous.transaction_id)
			return self.settle(previous)
		if previous.status == BurnAttemptStatus.UNKNOWN:
			raise ReconciliationRequiredError(previous.order_id, str(previous.attempt_id))
		raise BurnInProgressError(f"Burn attempt {previous.attempt_id} for order {previous.order_id} is still in progress")

	def _drive(self, order, attempt, cancel_event) -> BurnResult:
		# preparing: local checks only, nothing leaves the process
		try:
			self._enter(attempt, BurnStage.PREPARING)
			balance = self._call(BurnStage.PREPARING, self.ledger.query_balance, order.account_id, order.token_id)
			if balance < order.amount:
				raise ValidationError(
					f"Insufficient token balance. Required: {order.amount}, Available: {balance}",
					code="insufficient_balance",
				)
			self._reserve(order, attempt)
			prepared = self._call(BurnStage.PREPARING, self.ledger.prepare_burn, order.account_id, order.token_id, order.amount)
		except Exception as e:
			return self.abandon(attempt, e)

		if cancel_event is not None and cancel_event.is_set():
			return self.abandon(attempt, "Cancelled before signing")

		try:
			self._enter(attempt, BurnStage.SIGNING)
			signed = self._call(BurnStage.SIGNING, self.ledger.sign, prepared)
		except Exception as e:
			return self.abandon(attempt, e)

		attempt.transaction_id = prepared.transaction_id
		try:
			self._enter(attempt, BurnStage.BROADCASTING)
		except PersistenceError as e:
			attempt.transaction_id = None
			return self.abandon(attempt, e)

		# From here on the ledger may have executed the burn
		try:
			tx_id = self._call(BurnStage.BROADCASTING, self.ledger.broadcast, signed)
		except ExternalCallError as e:
			if e.definitive:
				return self.abandon(attempt, e)
			return self._mark_unknown(attempt, e)
		except Exception as e:
			return self._mark_unknown(attempt, e)
		if tx_id and tx_id != attempt.transaction_id:
			logger.warning("Ledger returned %s for prepared transaction %s", tx_id, attempt.transaction_id)
			attempt.transaction_id = tx_id

		self._enter(attempt, BurnStage.CONFIRMING)
		try:
			self._call(BurnStage.CONFIRMING, self.ledger.confirm, attempt.transaction_id)
		except ExternalCallError as e:
			if e.definitive:
				return self.abandon(attempt, e)
			return self._mark_unknown(attempt, e)
		except Exception as e:
			return self._mark_unknown(attempt, e)

		self._enter(attempt, BurnStage.COMPLETING)
		return self.settle(attempt)

	def settle(self, attempt) -> BurnResult:
		"""
		Record a confirmed burn on its order. Never raises: a failure here
		leaves the attempt persist_pending for reconciliation.
		"""
		attempt.persist_attempts += 1
		try:
			self.orders.record_burn(attempt.order_id, attempt.transaction_id)
		except Exception as e:
			# The tokens are gone; only bookkeeping is behind
			logger.exception(
				"Burn %s for order %s confirmed but the order update failed; queued for reconciliation",
				attempt.transaction_id, attempt.order_id,
			)
			attempt.status = BurnAttemptStatus.PERSIST_PENDING
			attempt.last_error = _describe(e)
			self._enter(attempt, BurnStage.COMPLETED, attempt.last_error)
			return self._result(attempt, BurnOutcome.COMPLETED, recorded=False)

		attempt.status = BurnAttemptStatus.COMPLETED
		attempt.last_error = ""
		self._enter(attempt, BurnStage.COMPLETED)
		logger.info("Order %s settled with burn %s", attempt.order_id, attempt.transaction_id)
		return self._result(attempt, BurnOutcome.COMPLETED)

	def abandon(self, attempt, error) -> BurnResult:
		"""Close an attempt that provably burned nothing; the order may be retried."""
		self._release(attempt)
		attempt.status = BurnAttemptStatus.FAILED
		attempt.last_error = _describe(error)
		logger.warning("Burn attempt %s for order %s failed at %s: %s", attempt.attempt_id, attempt.order_id, attempt.stage, attempt.last_error)
		self._enter(attempt, BurnStage.FAILED, attempt.last_error)
		return self._result(attempt, BurnOutcome.FAILED, retryable=True)

	def _mark_unknown(self, attempt, error) -> BurnResult:
		attempt.status = BurnAttemptStatus.UNKNOWN
		attempt.last_error = _describe(error)
		logger.error(
			"Burn %s for order %s has an unknown outcome after %s: %s",
			attempt.transaction_id, attempt.order_id, attempt.stage, attempt.last_error,
		)
		self._enter(attempt, BurnStage.UNKNOWN, attempt.last_error)
		return self._result(attempt, BurnOutcome.UNKNOWN)

	def _reserve(self, order, attempt):
		if self.variations is None or not order.combination:
			return
		stock = self.variations.reserve(order.physical_item_id, order.combination)
		attempt.reserved_stock_id = stock.id

	def _release(self, attempt):
		if self.variations is None or attempt.reserved_stock_id is None:
			return
		try:
			self.variations.release(attempt.reserved_stock_id)
		except RedemptionError:
			logger.exception("Could not release variant stock %s for order %s", attempt.reserved_stock_id, attempt.order_id)
			return
		attempt.reserved_stock_id = None

	def _call(self, stage, fn, *args):
		"""
		One ledger call, bounded by stage_timeout. Ledger errors come back as
		ExternalCallError; definitive only when the ledger rejected the burn.
		"""
		try:
			if not self.stage_timeout:
				return fn(*args)
			executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"burn-{stage}")
			try:
				future = executor.submit(_run_and_close, fn, *args)
				try:
					return future.result(timeout=self.stage_timeout)
				except FutureTimeout as e:
					future.cancel()
					raise StageTimeoutError(stage, f"Ledger did not answer within {self.stage_timeout}s during {stage}") from e
			finally:
				executor.shutdown(wait=False)
		except LedgerRejectedError as e:
			raise ExternalCallError(stage, f"Ledger rejected the burn during {stage}: {e}", definitive=True) from e
		except LedgerError as e:
			raise ExternalCallError(stage, f"Ledger call failed during {stage}: {e}") from e

	def _enter(self, attempt, stage, error=""):
		attempt.stage = stage
		attempt.updated_at = self.clock()
		try:
			self.attempts.save(attempt)
		except PersistenceError:
			if stage in STRICT_STAGES:
				raise
			logger.exception("Could not record stage %s of burn attempt %s", stage, attempt.attempt_id)
		self._emit(attempt, stage, error)

	def _emit(self, attempt, stage, error=""):
		progress = BurnProgress(
			order_id=attempt.order_id,
			attempt_id=str(attempt.attempt_id),
			stage=str(stage),
			transaction_id=attempt.transaction_id,
			error=error,
		)
		for receiver, response in burn_stage_changed.send_robust(sender=self.__class__, **asdict(progress)):
			if isinstance(response, Exception):
				logger.error("burn_stage_changed receiver %r failed: %s", receiver, response)
		for listener in self.listeners:
			try:
				listener(progress)
			except Exception:
				logger.exception("Burn progress listener %r failed", listener)

	def _result(self, attempt, outcome, recorded=True, retryable=False) -> BurnResult:
		return BurnResult(
			order_id=attempt.order_id,
			attempt_id=str(attempt.attempt_id),
			outcome=outcome,
			stage=str(attempt.stage),
			transaction_id=attempt.transaction_id,
			recorded=recorded,
			retryable=retryable,
			error=attempt.last_error,
		)


def _describe(error) -> str:
	if isinstance(error, str):
		return error
	if isinstance(error, ValidationError):
		return "; ".join(error.messages)
	return str(error) or error.__class__.__name__
