"""Variant-combination inventory.

A physical item with variations V1..Vn (k1..kn options) has exactly k1*...*kn live
combinations, each rendered "V1: o1 / V2: o2 / ..." in declaration order, with
the last-declared variation varying fastest. Every edit to an item's variations
re-syncs its stock rows:
- missing combinations get a new row with stock 0
- rows whose combination is no longer live are archived (is_active=False), stock kept
- archived rows whose combination comes back are re-activated
"""

import logging

from django.utils import timezone

from .constants import COMBINATION_NAME_SEPARATOR, COMBINATION_SEPARATOR, format_combination
from .exceptions import ConcurrentUpdateError, DuplicateKeyError, NotFoundError, OutOfStockError, ValidationError
from .models import ItemVariantStock, ItemVariation

logger = logging.getLogger(__name__)


def generate_combinations(variations) -> list[str]:
	"""
	Depth-first cartesian product over `variations` (objects with .name and
	.options), first variation outermost.
	"""
	if not variations:
		return []
	result = []

	def walk(level, chosen):
		if level == len(variations):
			result.append(format_combination(chosen))
			return
		variation = variations[level]
		for option in variation.options:
			walk(level + 1, chosen + [(variation.name, option)])

	walk(0, [])
	return result


def _clean_name(name) -> str:
	if not isinstance(name, str) or not name.strip():
		raise ValidationError({"name": ["Variation name is required"]})
	name = name.strip()
	if COMBINATION_SEPARATOR.strip() in name or COMBINATION_NAME_SEPARATOR.strip() in name:
		raise ValidationError({"name": ["Variation name may not contain '/' or ':'"]})
	return name


def _clean_options(options) -> list[str]:
	if not isinstance(options, (list, tuple)) or not options:
		raise ValidationError({"options": ["At least one option is required"]})
	cleaned = []
	for option in options:
		if not isinstance(option, str) or not option.strip():
			raise ValidationError({"options": ["Option labels may not be empty"]})
		option = option.strip()
		if COMBINATION_SEPARATOR in option:
			raise ValidationError({"options": [f"Option '{option}' may not contain '{COMBINATION_SEPARATOR}'"]})
		if option in cleaned:
			raise ValidationError({"options": [f"Duplicate option '{option}'"]})
		cleaned.append(option)
	return cleaned


def _clean_stock(value) -> int:
	if isinstance(value, bool) or not isinstance(value, int):
		raise ValidationError({"stock": ["Stock must be a whole number"]})
	if value < 0:
		raise ValidationError({"stock": ["Stock must be a non-negative number"]})
	return value


class VariationCombinator:

	def __init__(self, repository, clock=timezone.now):
		self.repository = repository
		self.clock = clock

	# --- variations ---------------------------------------------------------

	def list_variations(self, physical_item_id: int) -> list[ItemVariation]:
		return self.repository.list_variations(physical_item_id)

	def has_variations(self, physical_item_id: int) -> bool:
		return bool(self.repository.list_variations(physical_item_id))

	def get_variation(self, variation_id: int) -> ItemVariation:
		variation = self.repository.get_variation(variation_id)
		if variation is None:
			raise NotFoundError(f"Item variation {variation_id} not found")
		return variation

	def add_variation(self, physical_item_id: int, name: str, options) -> ItemVariation:
		name = _clean_name(name)
		options = _clean_options(options)
		with self.repository.lock_item(physical_item_id):
			existing = self.repository.list_variations(physical_item_id)
			if any(v.name == name for v in existing):
				raise ValidationError({"name": [f"Item already has a '{name}' variation"]})
			now = self.clock()
			try:
				variation = self.repository.add_variation(ItemVariation(
					physical_item_id=physical_item_id,
					name=name,
					options=options,
					position=max((v.position for v in existing), default=-1) + 1,
					created_at=now,
					updated_at=now,
				))
			except DuplicateKeyError as e:
				raise ConcurrentUpdateError(f"Variations of item {physical_item_id} changed concurrently; reload and retry") from e
			self._sync(physical_item_id)
		logger.info("Added variation %s (%s) to item %s", variation.id, name, physical_item_id)
		return variation

	def update_variation(self, variation_id: int, name: str | None = None, options=None) -> ItemVariation:
		variation = self.get_variation(variation_id)
		with self.repository.lock_item(variation.physical_item_id):
			variation = self.get_variation(variation_id)
			if name is not None:
				name = _clean_name(name)
				siblings = self.repository.list_variations(variation.physical_item_id)
				if any(v.name == name and v.id != variation.id for v in siblings):
					raise ValidationError({"name": [f"Item already has a '{name}' variation"]})
				variation.name = name
			if options is not None:
				variation.options = _clean_options(options)
			variation.updated_at = self.clock()
			variation = self.repository.save_variation(variation)
			self._sync(variation.physical_item_id)
		return variation

	def remove_variation(self, variation_id: int) -> None:
		"""
		Delete the variation. Stock rows are never deleted here: the re-sync
		archives the combinations that stopped being live.
		"""
		variation = self.get_variation(variation_id)
		with self.repository.lock_item(variation.physical_item_id):
			if not self.repository.delete_variation(variation_id):
				raise NotFoundError(f"Item variation {variation_id} not found")
			self._sync(variation.physical_item_id)
		logger.info("Removed variation %s from item %s", variation_id, variation.physical_item_id)

	def sync_combinations(self, physical_item_id: int) -> list[ItemVariantStock]:
		"""Recompute the live combination set; safe to call any number of times."""
		with self.repository.lock_item(physical_item_id):
			return self._sync(physical_item_id)

	def _sync(self, physical_item_id):
		variations = self.repository.list_variations(physical_item_id)
		live = generate_combinations(variations)
		live_set = set(live)
		rows = {s.combination: s for s in self.repository.list_stocks(physical_item_id, include_inactive=True)}
		now = self.clock()

		for combination, row in rows.items():
			if row.is_active and combination not in live_set:
				row.is_active = False
				row.updated_at = now
				self.repository.save_stock(row)
				logger.info("Archived variant stock %s (%s), stock %s kept", row.id, combination, row.stock)

		for combination in live:
			row = rows.get(combination)
			if row is None:
				self.repository.add_stock(ItemVariantStock(
					physical_item_id=physical_item_id,
					combination=combination,
					stock=0,
					created_at=now,
					updated_at=now,
				))
			elif not row.is_active:
				row.is_active = True
				row.updated_at = now
				self.repository.save_stock(row)

		return self.repository.list_stocks(physical_item_id)

	# --- stock --------------------------------------------------------------

	def list_stocks(self, physical_item_id: int, include_archived: bool = False) -> list[ItemVariantStock]:
		return self.repository.list_stocks(physical_item_id, include_inactive=include_archived)

	def get_stock(self, stock_id: int) -> ItemVariantStock:
		stock = self.repository.get_stock(stock_id)
		if stock is None:
			raise NotFoundError(f"Variant stock {stock_id} not found")
		return stock

	def create_stock(self, physical_item_id: int, combination: str, stock: int = 0) -> ItemVariantStock:
		"""Manual admin entry for a combination; the generated rows normally cover this."""
		if not isinstance(combination, str) or not combination.strip():
			raise ValidationError({"combination": ["Combination is required"]})
		stock = _clean_stock(stock)
		now = self.clock()
		try:
			return self.repository.add_stock(ItemVariantStock(
				physical_item_id=physical_item_id,
				combination=combination.strip(),
				stock=stock,
				created_at=now,
				updated_at=now,
			))
		except DuplicateKeyError as e:
			raise ValidationError({"combination": ["A stock entry for this combination already exists"]}) from e

	def set_stock(self, variant_stock_id: int, new_stock: int) -> ItemVariantStock:
		new_stock = _clean_stock(new_stock)
		stock = self.get_stock(variant_stock_id)
		stock.stock = new_stock
		stock.updated_at = self.clock()
		return self.repository.save_stock(stock)

	def delete_stock(self, variant_stock_id: int) -> None:
		if not self.repository.delete_stock(variant_stock_id):
			raise NotFoundError(f"Variant stock {variant_stock_id} not found")

	def get_stock_for_combination(self, physical_item_id: int, combination: str) -> ItemVariantStock:
		stock = self.repository.get_stock_by_combination(physical_item_id, combination)
		if stock is None or not stock.is_active:
			raise NotFoundError(f"No stock entry for '{combination}' on item {physical_item_id}")
		return stock

	def reserve(self, physical_item_id: int, combination: str, quantity: int = 1) -> ItemVariantStock:
		"""Take `quantity` units of a combination, or raise OutOfStockError."""
		stock = self.get_stock_for_combination(physical_item_id, combination)
		if not self.repository.decrement_stock(stock.id, quantity):
			raise OutOfStockError({"combination": [f"'{combination}' is out of stock"]})
		return self.get_stock(stock.id)

	def release(self, variant_stock_id: int, quantity: int = 1) -> None:
		if not self.repository.increment_stock(variant_stock_id, quantity):
			logger.warning("Could not release %s unit(s) of variant stock %s (row gone)", quantity, variant_stock_id)
