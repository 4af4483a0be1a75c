"""Order fulfillment state machine.

The graph below is the only source of allowed status changes. Every change is
appended to the order's fulfillment history; the order's status is whatever the
last history entry says.

    pending -> confirmed -> processing -> shipped -> delivered -> completed
    pending -> completed                      (burn settlement)
    any non-terminal -> cancelled | refunded
"""

from django.utils import timezone
from django.utils.dateparse import parse_datetime

from .constants import SYSTEM_ACTOR
from .exceptions import InvalidTransitionError, ValidationError
from .models import FulfillmentStatus

TERMINAL_STATES = frozenset({
	FulfillmentStatus.COMPLETED,
	FulfillmentStatus.CANCELLED,
	FulfillmentStatus.REFUNDED,
})

_ABORT = {FulfillmentStatus.CANCELLED, FulfillmentStatus.REFUNDED}

ALLOWED_TRANSITIONS = {
	FulfillmentStatus.PENDING: frozenset({FulfillmentStatus.CONFIRMED, FulfillmentStatus.COMPLETED, *_ABORT}),
	FulfillmentStatus.CONFIRMED: frozenset({FulfillmentStatus.PROCESSING, *_ABORT}),
	FulfillmentStatus.PROCESSING: frozenset({FulfillmentStatus.SHIPPED, *_ABORT}),
	FulfillmentStatus.SHIPPED: frozenset({FulfillmentStatus.DELIVERED, *_ABORT}),
	FulfillmentStatus.DELIVERED: frozenset({FulfillmentStatus.COMPLETED, *_ABORT}),
	FulfillmentStatus.COMPLETED: frozenset(),
	FulfillmentStatus.CANCELLED: frozenset(),
	FulfillmentStatus.REFUNDED: frozenset(),
}


def allowed_next(status: str) -> frozenset:
	return ALLOWED_TRANSITIONS.get(status, frozenset())


def can_transition(from_status: str, to_status: str) -> bool:
	if from_status in TERMINAL_STATES:
		return False
	return to_status in allowed_next(from_status)


def default_message(status: str) -> str:
	return f"Status updated to {status}"


class FulfillmentStateMachine:
	"""
	Validates and applies status changes to a RedemptionOrder in place.

	The order is only touched after the transition has been accepted, so a
	rejected update leaves it exactly as it was.
	"""

	def __init__(self, clock=timezone.now):
		self.clock = clock

	def validate(self, order, new_status: str) -> None:
		if new_status not in FulfillmentStatus.values:
			raise ValidationError(f"Unknown fulfillment status '{new_status}'", code="invalid_status")
		if not can_transition(order.status, new_status):
			raise InvalidTransitionError(order.status, new_status)

	def apply_update(self, order, new_status: str, message: str | None = None, performed_by: str | None = None):
		self.validate(order, new_status)
		entry = {
			"status": str(new_status),
			"timestamp": self._next_timestamp(order),
			"message": message or default_message(new_status),
			"performed_by": performed_by or SYSTEM_ACTOR,
		}
		order.fulfillment_updates = [*order.fulfillment_updates, entry]
		return order

	def validate_history(self, entries) -> list[dict]:
		"""
		Check a full replacement history (administrative correction path) and
		return it normalised. It must read like a history this machine could
		have produced: starts at pending, known statuses, allowed steps,
		non-decreasing timestamps.
		"""
		if not isinstance(entries, list) or not entries:
			raise ValidationError("fulfillment_updates must be a non-empty list", code="invalid_history")
		normalised = []
		previous = None
		for index, raw in enumerate(entries):
			if not isinstance(raw, dict):
				raise ValidationError(f"fulfillment_updates[{index}] must be an object", code="invalid_history")
			status = raw.get("status")
			if status not in FulfillmentStatus.values:
				raise ValidationError(f"fulfillment_updates[{index}] has unknown status '{status}'", code="invalid_history")
			if index == 0 and status != FulfillmentStatus.PENDING:
				raise ValidationError("fulfillment history must start with 'pending'", code="invalid_history")
			if previous is not None and not can_transition(previous["status"], status):
				raise ValidationError(
					f"fulfillment_updates[{index}]: '{previous['status']}' cannot be followed by '{status}'",
					code="invalid_history",
				)
			timestamp = raw.get("timestamp")
			parsed = parse_datetime(timestamp) if isinstance(timestamp, str) else None
			if parsed is None:
				raise ValidationError(f"fulfillment_updates[{index}] needs an ISO timestamp", code="invalid_history")
			if previous is not None and parsed < parse_datetime(previous["timestamp"]):
				raise ValidationError("fulfillment timestamps must not decrease", code="invalid_history")
			entry = {
				"status": status,
				"timestamp": timestamp,
				"message": raw.get("message") or default_message(status),
				"performed_by": raw.get("performed_by") or SYSTEM_ACTOR,
			}
			normalised.append(entry)
			previous = entry
		return normalised

	def _next_timestamp(self, order) -> str:
		now = self.clock()
		if order.fulfillment_updates:
			last = parse_datetime(order.fulfillment_updates[-1]["timestamp"])
			# Clock skew must not make the history run backwards
			if last is not None and last > now:
				now = last
		return now.isoformat()
