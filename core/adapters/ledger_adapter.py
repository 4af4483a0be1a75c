"""Adapter over the distributed ledger.

LedgerClient is the narrow contract the redemption core consumes. The burn is
exposed both as one call (burn) and as the stages the orchestrator drives one
at a time (prepare_burn, sign, broadcast, confirm), so each stage can be
bounded and reported separately.

StubLedgerClient mutates the ledger_stub tables to simulate balances and
receipts. In production, a client for the real network SDK takes its place
(settings.LEDGER_CLIENT).
"""

import hashlib
import hmac
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from django.conf import settings
from django.db import transaction
from django.db.models import F
from django.utils.module_loading import import_string

from ledger_stub.models import LedgerStubBalance, LedgerStubTx, LedgerStubWallet

logger = logging.getLogger(__name__)


class TransactionStatus:
	SUCCESS = "SUCCESS"
	FAILED = "FAILED"
	PENDING = "PENDING"
	NOT_FOUND = "NOT_FOUND"


class LedgerError(Exception):
	"""Any ledger/wallet failure. On its own it says nothing about whether the transaction executed."""


class LedgerRejectedError(LedgerError):
	"""The ledger states the transaction did not execute (precheck or receipt failure)."""

	def __init__(self, message, reason=""):
		self.reason = reason
		super().__init__(message)


class LedgerUnavailableError(LedgerError):
	"""Transport failure or no answer; outcome unknown."""


@dataclass
class PreparedBurn:
	"""
	An unsigned burn. transaction_id is derived client-side (payer account +
	valid-start time), so it is known before anything reaches the network.
	"""
	transaction_id: str
	account_id: str
	token_id: str
	amount: int


@dataclass
class SignedBurn:
	prepared: PreparedBurn
	signature: str
	extra: dict = field(default_factory=dict)

	@property
	def transaction_id(self) -> str:
		return self.prepared.transaction_id


@dataclass
class BurnReceipt:
	transaction_id: str
	status: str


def derive_transaction_id(account_id: str, valid_start_ns: int | None = None) -> str:
	"""
	"<account>@<seconds>.<nanos>", the shape ledger SDKs use for payer-derived ids
	"""
	ns = valid_start_ns if valid_start_ns is not None else time.time_ns()
	seconds, nanos = divmod(ns, 1_000_000_000)
	return f"{account_id}@{seconds}.{nanos:09d}"


class LedgerClient(ABC):

	@abstractmethod
	def connect(self, wallet_kind: str) -> dict:
		"""Return {"account_id": ...} for the wallet the user approved."""

	@abstractmethod
	def query_balance(self, account_id: str, token_id: str) -> int:
		...

	@abstractmethod
	def prepare_burn(self, account_id: str, token_id: str, amount: int) -> PreparedBurn:
		...

	@abstractmethod
	def sign(self, prepared: PreparedBurn) -> SignedBurn:
		...

	@abstractmethod
	def broadcast(self, signed: SignedBurn) -> str:
		"""Submit to the network; returns the transaction id."""

	@abstractmethod
	def confirm(self, transaction_id: str) -> BurnReceipt:
		"""Wait for the receipt; LedgerRejectedError if it reports failure."""

	@abstractmethod
	def get_transaction_status(self, transaction_id: str) -> str:
		"""One of TransactionStatus; used by reconciliation."""

	def burn(self, token_id: str, amount: int, account_id: str | None = None) -> str:
		"""
		Whole burn in one blocking call, for callers that do not need the stages
		"""
		account_id = account_id or getattr(self, "account_id", None)
		if not account_id:
			raise LedgerError("No connected account to burn from")
		prepared = self.prepare_burn(account_id, token_id, amount)
		tx_id = self.broadcast(self.sign(prepared))
		self.confirm(tx_id)
		return tx_id


class StubLedgerClient(LedgerClient):
	"""
	Deterministic ledger backed by the ledger_stub tables.
	Signing is an HMAC over the burn body; nothing here is real cryptography.
	"""

	def __init__(self, account_id: str | None = None, signing_key: str | None = None):
		self.account_id = account_id
		self.signing_key = (signing_key or settings.SECRET_KEY).encode("utf-8")

	def connect(self, wallet_kind: str) -> dict:
		wallet = LedgerStubWallet.objects.filter(wallet_kind=wallet_kind).first()
		if wallet is None:
			raise LedgerRejectedError(f"Wallet '{wallet_kind}' is not available", reason="WALLET_NOT_FOUND")
		self.account_id = wallet.account_id
		return {"account_id": wallet.account_id}

	def query_balance(self, account_id: str, token_id: str) -> int:
		bal = LedgerStubBalance.objects.filter(account_id=account_id, token_id=token_id).first()
		return int(bal.balance_units) if bal else 0

	def credit(self, account_id: str, token_id: str, amount_units: int) -> str:
		"""
		Simulate tokens arriving in an account (seeding / demo only)
		"""
		tx_id = derive_transaction_id(account_id)
		with transaction.atomic():
			bal, _ = LedgerStubBalance.objects.select_for_update().get_or_create(
				account_id=account_id, token_id=token_id, defaults={"balance_units": 0},
			)
			bal.balance_units += int(amount_units)
			bal.save(update_fields=["balance_units"])
			LedgerStubTx.objects.create(
				transaction_id=tx_id, kind="credit", account_id=account_id,
				token_id=token_id, amount_units=int(amount_units), status=TransactionStatus.SUCCESS,
			)
		return tx_id

	def prepare_burn(self, account_id: str, token_id: str, amount: int) -> PreparedBurn:
		return PreparedBurn(
			transaction_id=derive_transaction_id(account_id),
			account_id=account_id,
			token_id=token_id,
			amount=int(amount),
		)

	def sign(self, prepared: PreparedBurn) -> SignedBurn:
		body = json.dumps({
			"transaction_id": prepared.transaction_id,
			"token_id": prepared.token_id,
			"amount": prepared.amount,
		}, sort_keys=True).encode("utf-8")
		signature = hmac.new(self.signing_key, body, hashlib.sha256).hexdigest()
		return SignedBurn(prepared=prepared, signature=signature)

	def broadcast(self, signed: SignedBurn) -> str:
		"""
		Execute the burn: the receipt is SUCCESS when the balance covers it, FAILED otherwise.
		Re-broadcasting the same transaction id is a no-op (the ledger dedupes by id).
		"""
		p = signed.prepared
		expected = self.sign(p).signature
		if not hmac.compare_digest(expected, signed.signature):
			raise LedgerRejectedError("Invalid signature", reason="INVALID_SIGNATURE")

		with transaction.atomic():
			if LedgerStubTx.objects.filter(transaction_id=p.transaction_id).exists():
				return p.transaction_id
			taken = LedgerStubBalance.objects.filter(
				account_id=p.account_id, token_id=p.token_id, balance_units__gte=p.amount,
			).update(balance_units=F("balance_units") - p.amount)
			LedgerStubTx.objects.create(
				transaction_id=p.transaction_id,
				kind="burn",
				account_id=p.account_id,
				token_id=p.token_id,
				amount_units=p.amount,
				status=TransactionStatus.SUCCESS if taken else TransactionStatus.FAILED,
				failure_reason="" if taken else "INSUFFICIENT_TOKEN_BALANCE",
			)
		logger.info("Ledger stub burn %s: %s x%s from %s", p.transaction_id, p.token_id, p.amount, p.account_id)
		return p.transaction_id

	def confirm(self, transaction_id: str) -> BurnReceipt:
		tx = LedgerStubTx.objects.filter(transaction_id=transaction_id).first()
		if tx is None:
			raise LedgerUnavailableError(f"No receipt for {transaction_id}")
		if tx.status != TransactionStatus.SUCCESS:
			raise LedgerRejectedError(f"Transaction {transaction_id} failed: {tx.failure_reason}", reason=tx.failure_reason)
		return BurnReceipt(transaction_id=transaction_id, status=tx.status)

	def get_transaction_status(self, transaction_id: str) -> str:
		tx = LedgerStubTx.objects.filter(transaction_id=transaction_id).first()
		return tx.status if tx else TransactionStatus.NOT_FOUND


def get_ledger_client() -> LedgerClient:
	"""
	Instantiate the client named by settings.LEDGER_CLIENT (a fresh one per call)
	"""
	return import_string(settings.LEDGER_CLIENT)()
