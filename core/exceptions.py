"""Domain errors for the redemption core.

Views map these onto HTTP responses. Two families must never be confused:
- ExternalCallError before broadcast: nothing happened on the ledger, retry is safe
- ReconciliationRequiredError / persist-pending outcomes: something may have happened,
  bookkeeping is catching up and the burn must not be re-sent
"""

from django.core.exceptions import ValidationError as DjangoValidationError


class RedemptionError(Exception):
	"""Base exception for the redemption core."""


class ValidationError(RedemptionError, DjangoValidationError):
	"""Malformed input, rejected before any side effect.

	Also a django ValidationError, so `.messages` / `.message_dict` work as usual.
	"""


class OutOfStockError(ValidationError):
	"""The selected variant combination has no stock left."""


class NotFoundError(RedemptionError):
	"""Unknown order, variation or variant stock id."""


class InvalidTransitionError(RedemptionError):
	"""Status change not allowed by the fulfillment graph."""

	def __init__(self, from_status, to_status, message=None):
		self.from_status = from_status
		self.to_status = to_status
		super().__init__(message or f"Cannot transition order from '{from_status}' to '{to_status}'")


class CorrectionNotPermittedError(RedemptionError):
	"""Full history replacement attempted without the correction capability."""


class ExternalCallError(RedemptionError):
	"""
	A wallet/ledger call failed. definitive=True means the ledger stated the
	transaction did not execute; otherwise the outcome is unknown.
	"""

	def __init__(self, stage, message, definitive=False):
		self.stage = stage
		self.definitive = definitive
		super().__init__(message)


class StageTimeoutError(ExternalCallError):
	"""A wallet/ledger call did not answer inside the stage timeout."""


class PersistenceError(RedemptionError):
	"""A store write failed."""


class ConcurrentUpdateError(PersistenceError):
	"""The record changed underneath us (optimistic version mismatch)."""


class DuplicateKeyError(PersistenceError):
	"""A unique key (order id, combination) already exists."""


class BurnInProgressError(RedemptionError):
	"""Another orchestration run holds this order."""


class ReconciliationRequiredError(RedemptionError):
	"""A previous burn for this order has an unresolved outcome."""

	def __init__(self, order_id, attempt_id, message=None):
		self.order_id = order_id
		self.attempt_id = attempt_id
		super().__init__(message or f"Burn outcome for order {order_id} is unresolved; reconcile before retrying")
