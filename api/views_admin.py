"""Staff endpoints: order fulfillment, variant catalogue upkeep and reconciliation."""

import logging

from django.http import HttpResponse, JsonResponse

from core.exceptions import NotFoundError, ValidationError
from core.services import build_services

from .http import json_view, parse_json, staff_required

logger = logging.getLogger(__name__)

CORRECTION_PERMISSION = "core.correct_fulfillment_history"


@json_view("GET")
@staff_required
def redemptions(request):
	"""
	GET: All orders, newest first; ?status= filters on the current status
	"""
	orders = build_services().orders.list_orders(status=request.GET.get("status") or None)
	return JsonResponse([o.as_dict() for o in orders], safe=False)


@json_view("GET", "PATCH")
@staff_required
def redemption_detail(request, order_id):
	"""
	PATCH: Tracking fields, one fulfillment step, or (with the correction
	permission) a full replacement of the fulfillment history
	"""
	orders = build_services().orders
	if request.method == "GET":
		return JsonResponse(orders.get_order(order_id).as_dict())

	patch = parse_json(request)
	update = patch.get("fulfillment_update")
	if isinstance(update, dict) and not update.get("performed_by"):
		patch["fulfillment_update"] = dict(update, performed_by=request.user.get_username())
	elif update is None and patch.get("status") and patch["status"] != orders.get_order(order_id).status:
		patch["fulfillment_update"] = {"status": patch.pop("status"), "performed_by": request.user.get_username()}

	order = orders.update_order(
		order_id,
		patch,
		allow_history_rewrite=request.user.has_perm(CORRECTION_PERMISSION),
	)
	logger.info("Order %s updated by %s", order_id, request.user.get_username())
	return JsonResponse(order.as_dict())


@json_view("GET", "POST")
@staff_required
def item_variations(request, item_id):
	variations = build_services().variations
	if request.method == "GET":
		return JsonResponse([v.as_dict() for v in variations.list_variations(item_id)], safe=False)
	body = parse_json(request)
	variation = variations.add_variation(item_id, body.get("name"), body.get("options"))
	return JsonResponse(variation.as_dict(), status=201)


@json_view("PATCH", "DELETE")
@staff_required
def item_variation_detail(request, item_id, variation_id):
	variations = build_services().variations
	variation = variations.get_variation(variation_id)
	if variation.physical_item_id != item_id:
		raise NotFoundError(f"Item variation {variation_id} not found on item {item_id}")
	if request.method == "DELETE":
		variations.remove_variation(variation_id)
		return HttpResponse(status=204)
	body = parse_json(request)
	variation = variations.update_variation(variation_id, name=body.get("name"), options=body.get("options"))
	return JsonResponse(variation.as_dict())


@json_view("GET", "POST")
@staff_required
def item_variant_stocks(request, item_id):
	"""
	GET: Every stock row, ?archived=1 includes combinations no longer offered
	POST: Manual entry for one combination
	"""
	variations = build_services().variations
	if request.method == "GET":
		include_archived = request.GET.get("archived") in ("1", "true", "yes")
		stocks = variations.list_stocks(item_id, include_archived=include_archived)
		return JsonResponse([s.as_dict() for s in stocks], safe=False)
	body = parse_json(request)
	stock = variations.create_stock(item_id, body.get("combination"), body.get("stock", 0))
	return JsonResponse(stock.as_dict(), status=201)


@json_view("PATCH", "DELETE")
@staff_required
def item_variant_stock_detail(request, item_id, stock_id):
	variations = build_services().variations
	stock = variations.get_stock(stock_id)
	if stock.physical_item_id != item_id:
		raise NotFoundError(f"Variant stock {stock_id} not found on item {item_id}")
	if request.method == "DELETE":
		variations.delete_stock(stock_id)
		return HttpResponse(status=204)
	body = parse_json(request)
	if "stock" not in body:
		raise ValidationError({"stock": ["This field is required."]})
	stock = variations.set_stock(stock_id, body["stock"])
	return JsonResponse(stock.as_dict())


@json_view("GET")
@staff_required
def reconciliation(request):
	"""
	GET: Burn attempts still waiting on the ledger or on their order update
	"""
	pending = build_services().reconciler.pending()
	return JsonResponse([a.as_dict() for a in pending], safe=False)


@json_view("POST")
@staff_required
def reconciliation_run(request):
	body = parse_json(request)
	reconciler = build_services().reconciler
	order_id = body.get("order_id")
	if order_id:
		attempt = reconciler.reconcile_order(order_id)
		if attempt is None:
			raise NotFoundError(f"No burn attempts for order {order_id}")
		return JsonResponse(attempt.as_dict())
	return JsonResponse(reconciler.run_pending())
