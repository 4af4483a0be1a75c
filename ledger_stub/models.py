"""In-process ledger tables simulating confirmed network state per account and token.


- LedgerStubWallet: wallet kind -> account id returned by connect()
- LedgerStubBalance: fungible token balance per (account, token)
- LedgerStubTx: append-only transaction log with receipt status, keyed by transaction id
"""

import uuid
from django.db import models
from django.utils.timezone import now


class LedgerStubWallet(models.Model):
	"""
	A connected wallet (e.g. "hashpack", "blade") and the account it controls
	"""
	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	wallet_kind = models.CharField(max_length=32, unique=True)
	account_id = models.CharField(max_length=64)


class LedgerStubBalance(models.Model):
	"""
	Tracks per-account token balance as if confirmed on the ledger
	"""
	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	account_id = models.CharField(max_length=64)
	token_id = models.CharField(max_length=64)
	balance_units = models.BigIntegerField(default=0)

	class Meta:
		unique_together = (("account_id", "token_id"),)


class LedgerStubTx(models.Model):
	"""
	One submitted transaction and its receipt status ('SUCCESS' | 'FAILED')
	"""
	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	transaction_id = models.CharField(max_length=128, unique=True)
	kind = models.CharField(max_length=10)  # 'burn' | 'credit'
	account_id = models.CharField(max_length=64)
	token_id = models.CharField(max_length=64)
	amount_units = models.BigIntegerField()
	status = models.CharField(max_length=10)
	failure_reason = models.CharField(max_length=64, blank=True, default="")
	occurred_at = models.DateTimeField(default=now)
