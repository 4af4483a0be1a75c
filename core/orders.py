"""Order store: exactly-once creation, keyed lookup, patch-style updates.

Every write goes through the injected OrderRepository under a per-order lock;
status changes are delegated to the FulfillmentStateMachine so the history
stays append-only. Whole-history replacement is an explicit administrative
correction and is refused unless the caller holds that capability.

While a burn for the order is open, status and transaction id belong to the
burn: admin patches touching them are refused and record_burn() is the only
way the order reaches `completed` through a burn.
"""

import logging

from django.utils import timezone

from .constants import BURN_SETTLED_MESSAGE, ORDER_RECEIVED_MESSAGE, SYSTEM_ACTOR, generate_order_id
from .exceptions import (
	BurnInProgressError, CorrectionNotPermittedError, DuplicateKeyError, InvalidTransitionError,
	NotFoundError, ValidationError,
)
from .forms import OrderPatchForm, RedemptionOrderForm, ShippingInfoForm, clean_or_raise
from .fulfillment import FulfillmentStateMachine
from .models import OPEN_BURN_STATUSES, FulfillmentStatus, RedemptionOrder

logger = logging.getLogger(__name__)

SCALAR_PATCH_FIELDS = ("transaction_id", "tracking_number", "tracking_url", "carrier", "notes", "estimated_delivery")
PATCH_FIELDS = frozenset(SCALAR_PATCH_FIELDS + ("status", "fulfillment_update", "fulfillment_updates"))

# Order ids are random; a collision is astronomically rare but still handled
MAX_ORDER_ID_ATTEMPTS = 5


class OrderStore:

	def __init__(self, repository, state_machine=None, variations=None, attempts=None, clock=timezone.now):
		self.repository = repository
		self.attempts = attempts
		self.state_machine = state_machine or FulfillmentStateMachine(clock=clock)
		self.variations = variations
		self.clock = clock

	def create_order(self, account_id, token_id, physical_item_id, amount, shipping_info, combination=None) -> RedemptionOrder:
		"""
		Validate and store a new pending order. No ledger call happens here; the
		order must exist before any burn is attempted for it.
		"""
		data = clean_or_raise(RedemptionOrderForm(data={
			"account_id": account_id,
			"token_id": token_id,
			"physical_item_id": physical_item_id,
			"amount": amount,
			"combination": combination or "",
		}))
		if not isinstance(shipping_info, dict):
			raise ValidationError({"shipping_info": ["Expected an object"]})
		try:
			shipping = clean_or_raise(ShippingInfoForm(data=shipping_info))
		except ValidationError as e:
			raise ValidationError({f"shipping_info.{field}": messages for field, messages in e.message_dict.items()}) from e
		if not shipping.get("address2"):
			shipping.pop("address2", None)

		self._check_combination(data["physical_item_id"], data["combination"])

		now = self.clock()
		for _ in range(MAX_ORDER_ID_ATTEMPTS):
			order = RedemptionOrder(
				order_id=generate_order_id(),
				account_id=data["account_id"],
				token_id=data["token_id"],
				physical_item_id=data["physical_item_id"],
				amount=data["amount"],
				combination=data["combination"],
				shipping_info=shipping,
				fulfillment_updates=[{
					"status": str(FulfillmentStatus.PENDING),
					"timestamp": now.isoformat(),
					"message": ORDER_RECEIVED_MESSAGE,
					"performed_by": SYSTEM_ACTOR,
				}],
				created_at=now,
				updated_at=now,
			)
			try:
				order = self.repository.add(order)
			except DuplicateKeyError:
				logger.warning("Order id collision on %s, regenerating", order.order_id)
				continue
			logger.info("Created order %s for account %s (%s x%s)", order.order_id, order.account_id, order.token_id, order.amount)
			return order
		raise DuplicateKeyError("Could not allocate a unique order id")

	def get_order(self, order_id: str) -> RedemptionOrder:
		order = self.repository.get(order_id)
		if order is None:
			raise NotFoundError(f"Order {order_id} not found")
		return order

	def list_orders(self, status: str | None = None) -> list[RedemptionOrder]:
		if status and status not in FulfillmentStatus.values:
			raise ValidationError(f"Unknown fulfillment status '{status}'", code="invalid_status")
		return self.repository.list(status=status)

	def update_order(self, order_id: str, patch: dict, *, allow_history_rewrite: bool = False) -> RedemptionOrder:
		"""
		Apply a patch. Scalar fields merge unconditionally; `fulfillment_update`
		appends one history entry; `status` alone is shorthand for that;
		`fulfillment_updates` replaces the history (correction capability only).
		All checks run before anything is written.
		"""
		if not isinstance(patch, dict):
			raise ValidationError("Patch must be an object", code="invalid_patch")
		unknown = set(patch) - PATCH_FIELDS
		if unknown:
			raise ValidationError(f"Unknown patch fields: {', '.join(sorted(unknown))}", code="invalid_patch")
		if "fulfillment_update" in patch and "fulfillment_updates" in patch:
			raise ValidationError("Send either fulfillment_update or fulfillment_updates, not both", code="invalid_patch")

		scalars = {k: patch[k] for k in SCALAR_PATCH_FIELDS if k in patch}
		cleaned = clean_or_raise(OrderPatchForm(data={k: v for k, v in scalars.items() if v is not None}))
		# Explicit nulls clear a field
		scalars = {k: (cleaned.get(k) if patch[k] is not None else None) for k in scalars}
		for k, v in scalars.items():
			if v == "":
				scalars[k] = None

		with self.repository.lock(order_id):
			order = self.get_order(order_id)
			update = None if "fulfillment_updates" in patch else self._fulfillment_update(order, patch)
			if update is not None or "fulfillment_updates" in patch or "transaction_id" in scalars:
				self._refuse_during_burn(order_id)

			if "fulfillment_updates" in patch:
				if not allow_history_rewrite:
					raise CorrectionNotPermittedError("Replacing fulfillment history requires the correction capability")
				history = self.state_machine.validate_history(patch["fulfillment_updates"])
				logger.warning(
					"Fulfillment history of %s replaced (%d -> %d entries)",
					order_id, len(order.fulfillment_updates), len(history),
				)
				order.fulfillment_updates = history
			elif update is not None:
				self.state_machine.apply_update(
					order,
					update["status"],
					message=update.get("message"),
					performed_by=update.get("performed_by"),
				)

			for field, value in scalars.items():
				setattr(order, field, value)

			order.updated_at = self.clock()
			order.version += 1
			order = self.repository.save(order)

		logger.info("Updated order %s (status=%s)", order_id, order.status)
		return order

	def record_burn(self, order_id: str, transaction_id: str) -> RedemptionOrder:
		"""
		Attach a confirmed burn to its order and complete it. Repeating the call
		with the same transaction id changes nothing.
		"""
		with self.repository.lock(order_id):
			order = self.get_order(order_id)
			if order.transaction_id and order.transaction_id != transaction_id:
				raise InvalidTransitionError(
					order.status, FulfillmentStatus.COMPLETED,
					f"Order {order_id} already has burn transaction {order.transaction_id}",
				)
			if order.transaction_id == transaction_id and order.status == FulfillmentStatus.COMPLETED:
				return order
			if order.status != FulfillmentStatus.COMPLETED:
				self.state_machine.apply_update(
					order,
					FulfillmentStatus.COMPLETED,
					message=BURN_SETTLED_MESSAGE.format(transaction_id=transaction_id),
					performed_by=SYSTEM_ACTOR,
				)
			order.transaction_id = transaction_id
			order.updated_at = self.clock()
			order.version += 1
			order = self.repository.save(order)

		logger.info("Recorded burn %s on order %s", transaction_id, order_id)
		return order

	def _refuse_during_burn(self, order_id):
		if self.attempts is None:
			return
		attempt = self.attempts.latest_for_order(order_id)
		if attempt is not None and attempt.status in OPEN_BURN_STATUSES:
			raise BurnInProgressError(
				f"Order {order_id} is held by burn attempt {attempt.attempt_id} ({attempt.status}); "
				"status and transaction id cannot change until it settles"
			)

	def _fulfillment_update(self, order, patch) -> dict | None:
		update = patch.get("fulfillment_update")
		if update is not None:
			if not isinstance(update, dict) or not update.get("status"):
				raise ValidationError("fulfillment_update needs a status", code="invalid_patch")
			if patch.get("status") and patch["status"] != update["status"]:
				raise ValidationError("status and fulfillment_update.status disagree", code="invalid_patch")
			return update
		status = patch.get("status")
		if status and status != order.status:
			return {"status": status}
		return None

	def _check_combination(self, physical_item_id, combination):
		if self.variations is None:
			return
		if not self.variations.has_variations(physical_item_id):
			if combination:
				raise ValidationError({"combination": ["This item has no variations"]})
			return
		if not combination:
			raise ValidationError({"combination": ["Select one option for every variation of this item"]})
		try:
			stock = self.variations.get_stock_for_combination(physical_item_id, combination)
		except NotFoundError as e:
			raise ValidationError({"combination": [f"Unknown combination '{combination}'"]}) from e
		if stock.stock < 1:
			raise ValidationError({"combination": [f"'{combination}' is out of stock"]}, code="out_of_stock")
