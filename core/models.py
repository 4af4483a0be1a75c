"""Database models for the redemption core.


Tables:
- RedemptionOrder: one row per redemption attempt, never deleted (audit)
- ItemVariation: a named attribute of a physical item with its ordered options
- ItemVariantStock: stock counter for one concrete combination of options
- BurnAttempt: audit row for each burn orchestration run (stage, outcome, tx id)

Physical items and tokens live outside this app and are referenced by id only.
The same classes back the in-memory repositories, which never call save().
"""

import uuid
from django.db import models
from django.utils import timezone


class FulfillmentStatus(models.TextChoices):
	PENDING = "pending", "Pending"
	CONFIRMED = "confirmed", "Confirmed"
	PROCESSING = "processing", "Processing"
	SHIPPED = "shipped", "Shipped"
	DELIVERED = "delivered", "Delivered"
	COMPLETED = "completed", "Completed"
	CANCELLED = "cancelled", "Cancelled"
	REFUNDED = "refunded", "Refunded"


class RedemptionOrder(models.Model):
	"""
	A token-burn commitment linked to a physical-goods shipment.

	status is derived from the last fulfillment update; current_status mirrors it
	for filtering and is rewritten on every save.
	"""
	id = models.BigAutoField(primary_key=True)
	order_id = models.CharField(max_length=40, unique=True)
	account_id = models.CharField(max_length=64)
	token_id = models.CharField(max_length=64)
	physical_item_id = models.PositiveIntegerField()
	amount = models.PositiveBigIntegerField()
	combination = models.CharField(max_length=512, blank=True, default="")
	shipping_info = models.JSONField()
	fulfillment_updates = models.JSONField(default=list)
	current_status = models.CharField(max_length=16, choices=FulfillmentStatus.choices, default=FulfillmentStatus.PENDING, db_index=True)
	transaction_id = models.CharField(max_length=128, null=True, blank=True)
	tracking_number = models.CharField(max_length=128, null=True, blank=True)
	tracking_url = models.URLField(max_length=500, null=True, blank=True)
	carrier = models.CharField(max_length=64, null=True, blank=True)
	estimated_delivery = models.DateField(null=True, blank=True)
	notes = models.TextField(null=True, blank=True)
	version = models.PositiveIntegerField(default=0)
	created_at = models.DateTimeField(default=timezone.now)
	updated_at = models.DateTimeField(default=timezone.now)

	class Meta:
		permissions = [
			("correct_fulfillment_history", "Can replace an order's fulfillment history"),
		]

	@property
	def status(self) -> str:
		if not self.fulfillment_updates:
			return FulfillmentStatus.PENDING
		return self.fulfillment_updates[-1]["status"]

	def save(self, *args, **kwargs):
		self.current_status = self.status
		super().save(*args, **kwargs)

	def as_dict(self) -> dict:
		return {
			"order_id": self.order_id,
			"account_id": self.account_id,
			"token_id": self.token_id,
			"physical_item_id": self.physical_item_id,
			"amount": self.amount,
			"combination": self.combination or None,
			"shipping_info": self.shipping_info,
			"status": self.status,
			"fulfillment_updates": [dict(u) for u in self.fulfillment_updates],
			"transaction_id": self.transaction_id,
			"tracking_number": self.tracking_number,
			"tracking_url": self.tracking_url,
			"carrier": self.carrier,
			"estimated_delivery": self.estimated_delivery.isoformat() if self.estimated_delivery else None,
			"notes": self.notes,
			"created_at": self.created_at.isoformat(),
			"updated_at": self.updated_at.isoformat(),
		}


class ItemVariation(models.Model):
	"""
	A named attribute (e.g. "Size") with its ordered option labels.
	position keeps declaration order, which fixes the combination format.
	"""
	id = models.BigAutoField(primary_key=True)
	physical_item_id = models.PositiveIntegerField(db_index=True)
	name = models.CharField(max_length=100)
	options = models.JSONField(default=list)
	position = models.PositiveIntegerField(default=0)
	created_at = models.DateTimeField(default=timezone.now)
	updated_at = models.DateTimeField(default=timezone.now)

	class Meta:
		ordering = ["physical_item_id", "position", "id"]
		unique_together = (("physical_item_id", "name"), ("physical_item_id", "position"))

	def as_dict(self) -> dict:
		return {
			"id": self.id,
			"physical_item_id": self.physical_item_id,
			"name": self.name,
			"options": list(self.options),
			"position": self.position,
		}


class ItemVariantStock(models.Model):
	"""
	Stock counter for one combination. Archived rows (is_active=False) belong to
	combinations that are no longer live; they keep their count for audit.
	"""
	id = models.BigAutoField(primary_key=True)
	physical_item_id = models.PositiveIntegerField(db_index=True)
	combination = models.CharField(max_length=512)
	stock = models.PositiveIntegerField(default=0)
	is_active = models.BooleanField(default=True)
	created_at = models.DateTimeField(default=timezone.now)
	updated_at = models.DateTimeField(default=timezone.now)

	class Meta:
		unique_together = (("physical_item_id", "combination"),)
		ordering = ["physical_item_id", "id"]

	def as_dict(self) -> dict:
		return {
			"id": self.id,
			"physical_item_id": self.physical_item_id,
			"combination": self.combination,
			"stock": self.stock,
			"is_active": self.is_active,
		}


class BurnStage(models.TextChoices):
	IDLE = "idle", "Idle"
	PREPARING = "preparing", "Preparing"
	SIGNING = "signing", "Signing"
	BROADCASTING = "broadcasting", "Broadcasting"
	CONFIRMING = "confirming", "Confirming"
	COMPLETING = "completing", "Completing"
	COMPLETED = "completed", "Completed"
	FAILED = "failed", "Failed"
	UNKNOWN = "unknown", "Unknown"


class BurnAttemptStatus(models.TextChoices):
	IN_PROGRESS = "in_progress", "In progress"
	COMPLETED = "completed", "Completed"
	FAILED = "failed", "Failed (retryable)"
	UNKNOWN = "unknown", "Unknown (reconciliation required)"
	PERSIST_PENDING = "persist_pending", "Burned, order update pending"


# A burn in one of these states still owns its order's status
OPEN_BURN_STATUSES = (
	BurnAttemptStatus.PERSIST_PENDING,
	BurnAttemptStatus.UNKNOWN,
	BurnAttemptStatus.IN_PROGRESS,
)


class BurnAttempt(models.Model):
	"""
	Tracks each burn orchestration run for an order and its outcome.

	transaction_id is recorded before broadcast so an ambiguous outcome can be
	looked up on the ledger later.
	"""
	id = models.BigAutoField(primary_key=True)
	attempt_id = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)
	order_id = models.CharField(max_length=40, db_index=True)
	account_id = models.CharField(max_length=64)
	token_id = models.CharField(max_length=64)
	amount = models.PositiveBigIntegerField()
	stage = models.CharField(max_length=16, choices=BurnStage.choices, default=BurnStage.IDLE)
	status = models.CharField(max_length=20, choices=BurnAttemptStatus.choices, default=BurnAttemptStatus.IN_PROGRESS, db_index=True)
	transaction_id = models.CharField(max_length=128, null=True, blank=True)
	reserved_stock_id = models.BigIntegerField(null=True, blank=True)
	persist_attempts = models.PositiveIntegerField(default=0)
	last_error = models.TextField(blank=True, default="")
	created_at = models.DateTimeField(default=timezone.now)
	updated_at = models.DateTimeField(default=timezone.now)

	class Meta:
		ordering = ["created_at", "id"]
		constraints = [
			# At most one burn per order that is not provably dead
			models.UniqueConstraint(
				fields=["order_id"],
				condition=~models.Q(status="failed"),
				name="one_live_burn_attempt_per_order",
			),
		]

	def as_dict(self) -> dict:
		return {
			"attempt_id": str(self.attempt_id),
			"order_id": self.order_id,
			"stage": self.stage,
			"status": self.status,
			"transaction_id": self.transaction_id,
			"persist_attempts": self.persist_attempts,
			"last_error": self.last_error,
			"created_at": self.created_at.isoformat(),
			"updated_at": self.updated_at.isoformat(),
		}
