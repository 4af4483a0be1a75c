"""Reconciliation of burns whose bookkeeping is behind the ledger.

Attempts land here in three ways:
- persist_pending: the burn is confirmed, the order update failed -> retry the update
- unknown: broadcast/confirm did not answer -> ask the ledger what happened
- in_progress but stale: the process died mid-run -> treat by the stage it reached

Nothing here ever sends a burn.
"""

import logging
from datetime import timedelta

from django.conf import settings
from django.utils import timezone

from .adapters.ledger_adapter import LedgerError, TransactionStatus
from .burn import STRICT_STAGES
from .models import OPEN_BURN_STATUSES, BurnAttemptStatus, BurnStage

logger = logging.getLogger(__name__)


class BurnReconciler:

	def __init__(self, orchestrator, grace_seconds=None, clock=timezone.now):
		self.orchestrator = orchestrator
		self.attempts = orchestrator.attempts
		self.ledger = orchestrator.ledger
		if grace_seconds is None:
			grace_seconds = getattr(settings, "BURN_RECONCILE_GRACE_SECONDS", 180.0)
		self.grace = timedelta(seconds=grace_seconds)
		self.clock = clock

	def pending(self) -> list:
		"""Attempts that still need attention."""
		return self.attempts.list(statuses=OPEN_BURN_STATUSES)

	def reconcile_order(self, order_id: str):
		attempt = self.attempts.latest_for_order(order_id)
		if attempt is None or attempt.status not in OPEN_BURN_STATUSES:
			return attempt
		return self.reconcile_attempt(attempt)

	def reconcile_attempt(self, attempt):
		"""Move one attempt forward as far as the ledger allows; returns it."""
		if attempt.status == BurnAttemptStatus.PERSIST_PENDING:
			self.orchestrator.settle(attempt)
			return attempt

		if attempt.status == BurnAttemptStatus.IN_PROGRESS:
			if not self._is_stale(attempt):
				return attempt
			if attempt.stage in STRICT_STAGES and attempt.stage != BurnStage.BROADCASTING:
				self.orchestrator.abandon(attempt, f"Run stopped during {attempt.stage}")
				return attempt
			if attempt.stage == BurnStage.COMPLETING:
				self.orchestrator.settle(attempt)
				return attempt
			attempt.status = BurnAttemptStatus.UNKNOWN
			logger.warning("Stale burn attempt %s stopped at %s; checking the ledger", attempt.attempt_id, attempt.stage)

		if attempt.status == BurnAttemptStatus.UNKNOWN:
			self._resolve_unknown(attempt)
		return attempt

	def run_pending(self) -> dict:
		summary = {"checked": 0, "settled": 0, "failed": 0, "unresolved": 0}
		for attempt in self.pending():
			summary["checked"] += 1
			try:
				attempt = self.reconcile_attempt(attempt)
			except LedgerError:
				logger.exception("Ledger lookup failed for burn attempt %s", attempt.attempt_id)
				summary["unresolved"] += 1
				continue
			if attempt.status == BurnAttemptStatus.COMPLETED:
				summary["settled"] += 1
			elif attempt.status == BurnAttemptStatus.FAILED:
				summary["failed"] += 1
			else:
				summary["unresolved"] += 1
		logger.info("Reconciliation run: %s", summary)
		return summary

	def _resolve_unknown(self, attempt):
		if not attempt.transaction_id:
			# No id was ever recorded, so nothing was broadcast
			self.orchestrator.abandon(attempt, "No transaction id recorded before broadcast")
			return
		status = self.ledger.get_transaction_status(attempt.transaction_id)
		logger.info("Ledger reports %s for burn %s (order %s)", status, attempt.transaction_id, attempt.order_id)
		if status == TransactionStatus.SUCCESS:
			self.orchestrator.settle(attempt)
		elif status == TransactionStatus.FAILED:
			self.orchestrator.abandon(attempt, f"Ledger reports transaction {attempt.transaction_id} failed")
		elif status == TransactionStatus.NOT_FOUND and self._is_stale(attempt):
			self.orchestrator.abandon(attempt, f"Ledger never saw transaction {attempt.transaction_id}")
		else:
			# PENDING, or NOT_FOUND still inside the valid-start window
			attempt.updated_at = self.clock()
			self.attempts.save(attempt)

	def _is_stale(self, attempt) -> bool:
		return self.clock() - attempt.created_at >= self.grace
