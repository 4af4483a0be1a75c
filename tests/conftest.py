"""Shared fixtures: a scriptable ledger, a controllable clock and wired services."""

import threading
import time
from datetime import timedelta

import pytest
from django.utils import timezone

from core.adapters.ledger_adapter import (
    BurnReceipt,
    LedgerClient,
    LedgerRejectedError,
    LedgerUnavailableError,
    PreparedBurn,
    SignedBurn,
    StubLedgerClient,
    TransactionStatus,
    derive_transaction_id,
)
from core.services import build_services

ACCOUNT_ID = '0.0.1001'
TOKEN_ID = '0.0.5005'
ITEM_ID = 7


class FakeLedgerClient(LedgerClient):
    """
    In-process ledger for orchestration tests.

    failures maps a stage method name ('query_balance', 'prepare_burn', 'sign',
    'broadcast', 'confirm') to an exception raised when it is called.
    `execute_before_failing` lets broadcast burn the tokens and then raise, the
    way a lost response looks to the caller.
    """

    def __init__(self, balances=None):
        self.account_id = ACCOUNT_ID
        self.balances = dict(balances or {})
        self.transactions = {}
        self.failures = {}
        self.delays = {}
        self.execute_before_failing = False
        self.calls = []
        self._counter = 0
        self._lock = threading.Lock()
        self.broadcast_done = threading.Event()

    def _enter(self, name):
        self.calls.append(name)
        delay = self.delays.get(name)
        if delay:
            time.sleep(delay)
        error = self.failures.get(name)
        if error is not None and not (name == 'broadcast' and self.execute_before_failing):
            raise error

    def connect(self, wallet_kind):
        self._enter('connect')
        return {'account_id': self.account_id}

    def query_balance(self, account_id, token_id):
        self._enter('query_balance')
        return self.balances.get((account_id, token_id), 0)

    def prepare_burn(self, account_id, token_id, amount):
        self._enter('prepare_burn')
        with self._lock:
            self._counter += 1
            tx_id = derive_transaction_id(account_id, 1_700_000_000_000_000_000 + self._counter)
        return PreparedBurn(transaction_id=tx_id, account_id=account_id, token_id=token_id, amount=amount)

    def sign(self, prepared):
        self._enter('sign')
        return SignedBurn(prepared=prepared, signature='fake-signature')

    def broadcast(self, signed):
        self._enter('broadcast')
        p = signed.prepared
        key = (p.account_id, p.token_id)
        if self.balances.get(key, 0) >= p.amount:
            self.balances[key] -= p.amount
            self.transactions[p.transaction_id] = TransactionStatus.SUCCESS
        else:
            self.transactions[p.transaction_id] = TransactionStatus.FAILED
        self.broadcast_done.set()
        if self.execute_before_failing and 'broadcast' in self.failures:
            raise self.failures['broadcast']
        return p.transaction_id

    def confirm(self, transaction_id):
        self._enter('confirm')
        status = self.transactions.get(transaction_id)
        if status == TransactionStatus.FAILED:
            raise LedgerRejectedError(f'Transaction {transaction_id} failed', reason='INSUFFICIENT_TOKEN_BALANCE')
        return BurnReceipt(transaction_id=transaction_id, status=status)

    def get_transaction_status(self, transaction_id):
        self.calls.append('get_transaction_status')
        return self.transactions.get(transaction_id, TransactionStatus.NOT_FOUND)

    def burns(self):
        return [tx for tx, status in self.transactions.items() if status == TransactionStatus.SUCCESS]


class FakeClock:

    def __init__(self):
        self.now = timezone.now()

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def shipping_info():
    return {
        'firstName': 'Ada',
        'lastName': 'Lovelace',
        'email': 'ada@example.com',
        'address': '12 Analytical Row',
        'city': 'London',
        'state': 'Greater London',
        'zip': 'NW1 6XE',
        'country': 'United Kingdom',
        'phone': '+44 20 7946 0000',
    }


@pytest.fixture
def ledger():
    return FakeLedgerClient(balances={(ACCOUNT_ID, TOKEN_ID): 100})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_services(ledger, clock):
    return build_services(backend='memory', ledger=ledger, clock=clock)


@pytest.fixture
def db_services(db, ledger, clock):
    return build_services(backend='django', ledger=ledger, clock=clock)


@pytest.fixture
def stub_ledger(db):
    client = StubLedgerClient(account_id=ACCOUNT_ID)
    client.credit(ACCOUNT_ID, TOKEN_ID, 100)
    return client


@pytest.fixture
def make_order(shipping_info):
    """Create a pending order on the given services."""
    def _make(services, amount=10, combination=None, physical_item_id=ITEM_ID):
        return services.orders.create_order(
            account_id=ACCOUNT_ID,
            token_id=TOKEN_ID,
            physical_item_id=physical_item_id,
            amount=amount,
            shipping_info=dict(shipping_info),
            combination=combination,
        )
    return _make


class LostReceiptLedgerClient(StubLedgerClient):
    """Stub ledger whose receipt queries never answer (selected through settings.LEDGER_CLIENT)."""

    def confirm(self, transaction_id):
        raise LedgerUnavailableError(f'Receipt query for {transaction_id} timed out')
