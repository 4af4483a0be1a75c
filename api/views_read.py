"""Read-only endpoints: order lookup by id and an item's variant catalogue."""

from django.http import JsonResponse

from core.services import build_services

from .http import json_view


@json_view("GET")
def redemption_detail(request, order_id):
	"""
	GET: One order; knowing the order id is what grants access
	"""
	order = build_services().orders.get_order(order_id)
	return JsonResponse(order.as_dict())


@json_view("GET")
def item_variations(request, item_id):
	variations = build_services().variations.list_variations(item_id)
	return JsonResponse([v.as_dict() for v in variations], safe=False)


@json_view("GET")
def item_variant_stocks(request, item_id):
	"""
	GET: Live combinations with their stock (archived rows are hidden)
	"""
	stocks = build_services().variations.list_stocks(item_id)
	return JsonResponse([s.as_dict() for s in stocks], safe=False)
