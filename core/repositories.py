"""Swappable storage behind the redemption services.

Each repository has two backends:
- Django*Repository: the ORM, with select_for_update row locks and conditional UPDATEs
- InMemory*Repository: process-local dicts guarded by locks (tests, embedding)

Both hand out copies, so a caller mutating a returned object never changes
stored state until it calls save().
"""

import copy
import itertools
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager

from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from .exceptions import ConcurrentUpdateError, DuplicateKeyError, PersistenceError
from .models import BurnAttempt, BurnAttemptStatus, ItemVariantStock, ItemVariation, RedemptionOrder


ORDER_FIELDS = [f.name for f in RedemptionOrder._meta.concrete_fields if f.name != "id"]


class _KeyedLocks:
	"""One re-entrant lock per key, dropped once nobody holds or waits on it."""

	def __init__(self):
		self._guard = threading.Lock()
		self._locks = {}

	@contextmanager
	def hold(self, key):
		with self._guard:
			entry = self._locks.get(key)
			if entry is None:
				entry = self._locks[key] = [threading.RLock(), 0]
			entry[1] += 1
		try:
			with entry[0]:
				yield
		finally:
			with self._guard:
				entry[1] -= 1
				if not entry[1]:
					del self._locks[key]

	def __len__(self):
		return len(self._locks)


# --- Interfaces --------------------------------------------------------------

class OrderRepository(ABC):

	@abstractmethod
	def add(self, order: RedemptionOrder) -> RedemptionOrder:
		"""Insert a new order; DuplicateKeyError if order_id is taken."""

	@abstractmethod
	def get(self, order_id: str) -> RedemptionOrder | None:
		...

	@abstractmethod
	def save(self, order: RedemptionOrder) -> RedemptionOrder:
		"""
		Persist an existing order whose version was bumped by the caller.
		ConcurrentUpdateError when the stored version is not order.version - 1.
		"""

	@abstractmethod
	def list(self, status: str | None = None) -> list[RedemptionOrder]:
		...

	@abstractmethod
	def lock(self, order_id: str):
		"""Context manager giving mutual exclusion per order id."""


class VariantRepository(ABC):

	@abstractmethod
	def list_variations(self, physical_item_id: int) -> list[ItemVariation]:
		...

	@abstractmethod
	def get_variation(self, variation_id: int) -> ItemVariation | None:
		...

	@abstractmethod
	def add_variation(self, variation: ItemVariation) -> ItemVariation:
		"""Insert a variation; DuplicateKeyError if its name or position is taken for the item."""

	@abstractmethod
	def save_variation(self, variation: ItemVariation) -> ItemVariation:
		...

	@abstractmethod
	def delete_variation(self, variation_id: int) -> bool:
		...

	@abstractmethod
	def list_stocks(self, physical_item_id: int, include_inactive: bool = False) -> list[ItemVariantStock]:
		...

	@abstractmethod
	def get_stock(self, stock_id: int) -> ItemVariantStock | None:
		...

	@abstractmethod
	def get_stock_by_combination(self, physical_item_id: int, combination: str) -> ItemVariantStock | None:
		...

	@abstractmethod
	def add_stock(self, stock: ItemVariantStock) -> ItemVariantStock:
		"""Insert a stock row; DuplicateKeyError if the combination exists for the item."""

	@abstractmethod
	def save_stock(self, stock: ItemVariantStock) -> ItemVariantStock:
		...

	@abstractmethod
	def delete_stock(self, stock_id: int) -> bool:
		...

	@abstractmethod
	def decrement_stock(self, stock_id: int, quantity: int) -> bool:
		"""Atomically take `quantity` units if at least that many remain."""

	@abstractmethod
	def increment_stock(self, stock_id: int, quantity: int) -> bool:
		...

	@abstractmethod
	def lock_item(self, physical_item_id: int):
		"""Context manager serialising variation edits for one item."""


class BurnAttemptRepository(ABC):

	@abstractmethod
	def add(self, attempt: BurnAttempt) -> BurnAttempt:
		"""Insert an attempt; DuplicateKeyError if the order already has one that has not failed."""

	@abstractmethod
	def save(self, attempt: BurnAttempt) -> BurnAttempt:
		...

	@abstractmethod
	def latest_for_order(self, order_id: str) -> BurnAttempt | None:
		...

	@abstractmethod
	def list(self, statuses=None) -> list[BurnAttempt]:
		...


# --- In-memory backend -------------------------------------------------------

class InMemoryOrderRepository(OrderRepository):

	def __init__(self):
		self._orders: dict[str, RedemptionOrder] = {}
		self._ids = itertools.count(1)
		self._guard = threading.RLock()
		self._locks = _KeyedLocks()

	def add(self, order):
		with self._guard:
			if order.order_id in self._orders:
				raise DuplicateKeyError(f"Order id {order.order_id} already exists")
			order.id = next(self._ids)
			order.current_status = order.status
			self._orders[order.order_id] = copy.deepcopy(order)
		return copy.deepcopy(order)

	def get(self, order_id):
		with self._guard:
			order = self._orders.get(order_id)
			return copy.deepcopy(order) if order is not None else None

	def save(self, order):
		with self._guard:
			stored = self._orders.get(order.order_id)
			if stored is None:
				raise PersistenceError(f"Order {order.order_id} is not stored")
			if stored.version != order.version - 1:
				raise ConcurrentUpdateError(f"Order {order.order_id} changed concurrently")
			order.current_status = order.status
			self._orders[order.order_id] = copy.deepcopy(order)
		return copy.deepcopy(order)

	def list(self, status=None):
		with self._guard:
			orders = [copy.deepcopy(o) for o in self._orders.values()]
		if status:
			orders = [o for o in orders if o.status == status]
		return sorted(orders, key=lambda o: o.created_at, reverse=True)

	def lock(self, order_id):
		return self._locks.hold(order_id)


class InMemoryVariantRepository(VariantRepository):

	def __init__(self):
		self._variations: dict[int, ItemVariation] = {}
		self._stocks: dict[int, ItemVariantStock] = {}
		self._variation_ids = itertools.count(1)
		self._stock_ids = itertools.count(1)
		self._guard = threading.RLock()
		self._locks = _KeyedLocks()

	def list_variations(self, physical_item_id):
		with self._guard:
			rows = [copy.deepcopy(v) for v in self._variations.values() if v.physical_item_id == physical_item_id]
		return sorted(rows, key=lambda v: (v.position, v.id))

	def get_variation(self, variation_id):
		with self._guard:
			v = self._variations.get(variation_id)
			return copy.deepcopy(v) if v is not None else None

	def add_variation(self, variation):
		with self._guard:
			for v in self._variations.values():
				if v.physical_item_id == variation.physical_item_id and (v.name == variation.name or v.position == variation.position):
					raise DuplicateKeyError(f"Item {variation.physical_item_id} already has variation '{v.name}' at position {v.position}")
			variation.id = next(self._variation_ids)
			self._variations[variation.id] = copy.deepcopy(variation)
		return copy.deepcopy(variation)

	def save_variation(self, variation):
		with self._guard:
			if variation.id not in self._variations:
				raise PersistenceError(f"Variation {variation.id} is not stored")
			self._variations[variation.id] = copy.deepcopy(variation)
		return copy.deepcopy(variation)

	def delete_variation(self, variation_id):
		with self._guard:
			return self._variations.pop(variation_id, None) is not None

	def list_stocks(self, physical_item_id, include_inactive=False):
		with self._guard:
			rows = [
				copy.deepcopy(s) for s in self._stocks.values()
				if s.physical_item_id == physical_item_id and (include_inactive or s.is_active)
			]
		return sorted(rows, key=lambda s: s.id)

	def get_stock(self, stock_id):
		with self._guard:
			s = self._stocks.get(stock_id)
			return copy.deepcopy(s) if s is not None else None

	def get_stock_by_combination(self, physical_item_id, combination):
		with self._guard:
			for s in self._stocks.values():
				if s.physical_item_id == physical_item_id and s.combination == combination:
					return copy.deepcopy(s)
		return None

	def add_stock(self, stock):
		with self._guard:
			if self.get_stock_by_combination(stock.physical_item_id, stock.combination) is not None:
				raise DuplicateKeyError(f"Combination '{stock.combination}' already has a stock entry")
			stock.id = next(self._stock_ids)
			self._stocks[stock.id] = copy.deepcopy(stock)
		return copy.deepcopy(stock)

	def save_stock(self, stock):
		with self._guard:
			if stock.id not in self._stocks:
				raise PersistenceError(f"Variant stock {stock.id} is not stored")
			self._stocks[stock.id] = copy.deepcopy(stock)
		return copy.deepcopy(stock)

	def delete_stock(self, stock_id):
		with self._guard:
			return self._stocks.pop(stock_id, None) is not None

	def decrement_stock(self, stock_id, quantity):
		with self._guard:
			s = self._stocks.get(stock_id)
			if s is None or not s.is_active or s.stock < quantity:
				return False
			s.stock -= quantity
			s.updated_at = timezone.now()
			return True

	def increment_stock(self, stock_id, quantity):
		with self._guard:
			s = self._stocks.get(stock_id)
			if s is None:
				return False
			s.stock += quantity
			s.updated_at = timezone.now()
			return True

	def lock_item(self, physical_item_id):
		return self._locks.hold(physical_item_id)


class InMemoryBurnAttemptRepository(BurnAttemptRepository):

	def __init__(self):
		self._attempts: dict[int, BurnAttempt] = {}
		self._ids = itertools.count(1)
		self._guard = threading.RLock()

	def add(self, attempt):
		with self._guard:
			if any(a.order_id == attempt.order_id and a.status != BurnAttemptStatus.FAILED for a in self._attempts.values()):
				raise DuplicateKeyError(f"Order {attempt.order_id} already has a live burn attempt")
			attempt.id = next(self._ids)
			self._attempts[attempt.id] = copy.deepcopy(attempt)
		return copy.deepcopy(attempt)

	def save(self, attempt):
		with self._guard:
			if attempt.id not in self._attempts:
				raise PersistenceError(f"Burn attempt {attempt.attempt_id} is not stored")
			self._attempts[attempt.id] = copy.deepcopy(attempt)
		return copy.deepcopy(attempt)

	def latest_for_order(self, order_id):
		with self._guard:
			rows = [a for a in self._attempts.values() if a.order_id == order_id]
			if not rows:
				return None
			return copy.deepcopy(max(rows, key=lambda a: a.id))

	def list(self, statuses=None):
		with self._guard:
			rows = [copy.deepcopy(a) for a in self._attempts.values()]
		if statuses:
			rows = [a for a in rows if a.status in statuses]
		return sorted(rows, key=lambda a: a.id)


# --- Django ORM backend ------------------------------------------------------

class DjangoOrderRepository(OrderRepository):

	def add(self, order):
		try:
			with transaction.atomic():
				order.save(force_insert=True)
		except IntegrityError as e:
			raise DuplicateKeyError(f"Order id {order.order_id} already exists") from e
		except DatabaseError as e:
			raise PersistenceError(f"Could not store order {order.order_id}: {e}") from e
		return order

	def get(self, order_id):
		try:
			return RedemptionOrder.objects.filter(order_id=order_id).first()
		except DatabaseError as e:
			raise PersistenceError(f"Could not load order {order_id}: {e}") from e

	def save(self, order):
		values = {name: getattr(order, name) for name in ORDER_FIELDS}
		values["current_status"] = order.status
		try:
			# Conditional UPDATE doubles as the optimistic version check
			updated = RedemptionOrder.objects.filter(
				order_id=order.order_id, version=order.version - 1,
			).update(**values)
		except DatabaseError as e:
			raise PersistenceError(f"Could not update order {order.order_id}: {e}") from e
		if not updated:
			raise ConcurrentUpdateError(f"Order {order.order_id} changed concurrently")
		order.current_status = order.status
		return order

	def list(self, status=None):
		qs = RedemptionOrder.objects.order_by("-created_at")
		if status:
			qs = qs.filter(current_status=status)
		return list(qs)

	@contextmanager
	def lock(self, order_id):
		with transaction.atomic():
			# Lock the row for the duration of the read-modify-write
			list(RedemptionOrder.objects.select_for_update().filter(order_id=order_id).values_list("pk", flat=True))
			yield


class DjangoVariantRepository(VariantRepository):

	def list_variations(self, physical_item_id):
		return list(ItemVariation.objects.filter(physical_item_id=physical_item_id).order_by("position", "id"))

	def get_variation(self, variation_id):
		return ItemVariation.objects.filter(pk=variation_id).first()

	def add_variation(self, variation):
		try:
			with transaction.atomic():
				variation.save(force_insert=True)
		except IntegrityError as e:
			raise DuplicateKeyError(f"Item {variation.physical_item_id} already has variation '{variation.name}' or position {variation.position}") from e
		return variation

	def save_variation(self, variation):
		variation.save()
		return variation

	def delete_variation(self, variation_id):
		deleted, _ = ItemVariation.objects.filter(pk=variation_id).delete()
		return bool(deleted)

	def list_stocks(self, physical_item_id, include_inactive=False):
		qs = ItemVariantStock.objects.filter(physical_item_id=physical_item_id)
		if not include_inactive:
			qs = qs.filter(is_active=True)
		return list(qs.order_by("id"))

	def get_stock(self, stock_id):
		return ItemVariantStock.objects.filter(pk=stock_id).first()

	def get_stock_by_combination(self, physical_item_id, combination):
		return ItemVariantStock.objects.filter(physical_item_id=physical_item_id, combination=combination).first()

	def add_stock(self, stock):
		try:
			with transaction.atomic():
				stock.save(force_insert=True)
		except IntegrityError as e:
			raise DuplicateKeyError(f"Combination '{stock.combination}' already has a stock entry") from e
		return stock

	def save_stock(self, stock):
		stock.save()
		return stock

	def delete_stock(self, stock_id):
		deleted, _ = ItemVariantStock.objects.filter(pk=stock_id).delete()
		return bool(deleted)

	def decrement_stock(self, stock_id, quantity):
		try:
			updated = ItemVariantStock.objects.filter(
				pk=stock_id, is_active=True, stock__gte=quantity,
			).update(stock=F("stock") - quantity, updated_at=timezone.now())
		except DatabaseError as e:
			raise PersistenceError(f"Could not reserve variant stock {stock_id}: {e}") from e
		return bool(updated)

	def increment_stock(self, stock_id, quantity):
		try:
			updated = ItemVariantStock.objects.filter(pk=stock_id).update(
				stock=F("stock") + quantity, updated_at=timezone.now(),
			)
		except DatabaseError as e:
			raise PersistenceError(f"Could not release variant stock {stock_id}: {e}") from e
		return bool(updated)

	@contextmanager
	def lock_item(self, physical_item_id):
		with transaction.atomic():
			# Only existing rows can be locked; the (item, name) and (item, position)
			# unique keys catch two racing first inserts
			list(ItemVariation.objects.select_for_update().filter(physical_item_id=physical_item_id).values_list("pk", flat=True))
			yield


class DjangoBurnAttemptRepository(BurnAttemptRepository):

	def add(self, attempt):
		try:
			with transaction.atomic():
				attempt.save(force_insert=True)
		except IntegrityError as e:
			raise DuplicateKeyError(f"Order {attempt.order_id} already has a live burn attempt") from e
		except DatabaseError as e:
			raise PersistenceError(f"Could not record burn attempt for {attempt.order_id}: {e}") from e
		return attempt

	def save(self, attempt):
		try:
			attempt.save()
		except DatabaseError as e:
			raise PersistenceError(f"Could not update burn attempt {attempt.attempt_id}: {e}") from e
		return attempt

	def latest_for_order(self, order_id):
		return BurnAttempt.objects.filter(order_id=order_id).order_by("-id").first()

	def list(self, statuses=None):
		qs = BurnAttempt.objects.order_by("id")
		if statuses:
			qs = qs.filter(status__in=list(statuses))
		return list(qs)
