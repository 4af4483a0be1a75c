"""Wiring for the redemption flow.

build_services() assembles the stores, the orchestrator and the reconciler for
one request or command. Nothing here is a module-level singleton: every caller
gets its own graph over the shared database. The "memory" backend keeps its
state in the returned graph, so it is only for callers that hold on to it
(tests, embedding); views always use the ORM.
"""

import logging
from dataclasses import dataclass

from django.conf import settings
from django.utils import timezone

from .adapters.ledger_adapter import LedgerClient, StubLedgerClient, get_ledger_client
from .burn import BurnOrchestrator
from .exceptions import ValidationError
from .fulfillment import FulfillmentStateMachine
from .orders import OrderStore
from .reconciliation import BurnReconciler
from .repositories import (
	DjangoBurnAttemptRepository, DjangoOrderRepository, DjangoVariantRepository,
	InMemoryBurnAttemptRepository, InMemoryOrderRepository, InMemoryVariantRepository,
)
from .variations import VariationCombinator

logger = logging.getLogger(__name__)

BACKENDS = {
	"django": (DjangoOrderRepository, DjangoVariantRepository, DjangoBurnAttemptRepository),
	"memory": (InMemoryOrderRepository, InMemoryVariantRepository, InMemoryBurnAttemptRepository),
}


@dataclass
class RedemptionServices:
	orders: OrderStore
	variations: VariationCombinator
	orchestrator: BurnOrchestrator
	reconciler: BurnReconciler
	ledger: LedgerClient

	def open_redemption(self, *, account_id, token_id, physical_item_id, amount, shipping_info, combination=None):
		"""
		Create the pending order for a redemption after checking the account can
		cover it. The balance is checked again right before the burn.
		"""
		balance = self.ledger.query_balance(account_id, token_id)
		if isinstance(amount, int) and not isinstance(amount, bool) and balance < amount:
			raise ValidationError(
				{"amount": [f"Insufficient token balance. Required: {amount}, Available: {balance}"]},
				code="insufficient_balance",
			)
		return self.orders.create_order(
			account_id=account_id,
			token_id=token_id,
			physical_item_id=physical_item_id,
			amount=amount,
			shipping_info=shipping_info,
			combination=combination,
		)


def build_services(*, backend: str | None = None, ledger: LedgerClient | None = None,
		stage_timeout=None, grace_seconds=None, listeners=(), clock=timezone.now) -> RedemptionServices:
	backend = backend or "django"
	try:
		order_repo_cls, variant_repo_cls, attempt_repo_cls = BACKENDS[backend]
	except KeyError:
		raise ValueError(f"Unknown redemption store backend '{backend}'") from None

	if stage_timeout is None:
		stage_timeout = getattr(settings, "BURN_STAGE_TIMEOUT_SECONDS", None)
	ledger = ledger or get_ledger_client()

	attempts = attempt_repo_cls()
	variations = VariationCombinator(variant_repo_cls(), clock=clock)
	orders = OrderStore(
		order_repo_cls(),
		state_machine=FulfillmentStateMachine(clock=clock),
		variations=variations,
		attempts=attempts,
		clock=clock,
	)
	orchestrator = BurnOrchestrator(
		orders, ledger, attempts, variations,
		stage_timeout=stage_timeout, listeners=listeners, clock=clock,
	)
	reconciler = BurnReconciler(orchestrator, grace_seconds=grace_seconds, clock=clock)
	return RedemptionServices(
		orders=orders,
		variations=variations,
		orchestrator=orchestrator,
		reconciler=reconciler,
		ledger=ledger,
	)


class DemoServices:

	@staticmethod
	def seed(*, wallet_kind: str, account_id: str, token_id: str, amount_units: int) -> dict:
		"""
		Register a stub wallet and credit it, so a redemption can run end to end
		without a real network
		"""
		from ledger_stub.models import LedgerStubWallet

		LedgerStubWallet.objects.update_or_create(wallet_kind=wallet_kind, defaults={"account_id": account_id})
		client = StubLedgerClient(account_id=account_id)
		tx_id = client.credit(account_id, token_id, amount_units)
		logger.info("Seeded %s wallet %s with %s x%s", wallet_kind, account_id, token_id, amount_units)
		return {
			"wallet_kind": wallet_kind,
			"account_id": account_id,
			"token_id": token_id,
			"credit_transaction_id": tx_id,
			"balance_units": client.query_balance(account_id, token_id),
		}
