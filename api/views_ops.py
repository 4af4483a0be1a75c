"""Endpoints that move a redemption forward: open the order, then burn for it."""

from django.conf import settings
from django.http import JsonResponse
from django.middleware.csrf import get_token

from core.burn import BurnOutcome
from core.exceptions import NotFoundError
from core.services import build_services

from .http import json_view, parse_json


def health(request):
	return JsonResponse({"ok": True, "ledger_network": settings.LEDGER_NETWORK})


def csrf(request):
	# Forces creation/rotation of the CSRF token AND sets 'csrftoken' cookie
	return JsonResponse({"csrftoken": get_token(request)})


@json_view("POST")
def create_redemption(request):
	"""
	POST: Open a pending redemption order. No tokens move here; the client burns next.
	"""
	body = parse_json(request)
	services = build_services()
	order = services.open_redemption(
		account_id=body.get("account_id"),
		token_id=body.get("token_id"),
		physical_item_id=body.get("physical_item_id"),
		amount=body.get("amount"),
		shipping_info=body.get("shipping_info"),
		combination=body.get("combination"),
	)
	return JsonResponse(order.as_dict(), status=201)


@json_view("GET", "POST")
def burn(request, order_id):
	"""
	POST: Burn the order's tokens and settle it. Safe to repeat: a confirmed burn is
	never sent twice, an unresolved one answers 409 until reconciled.
	GET: Latest burn attempt for polling.
	"""
	services = build_services()
	if request.method == "GET":
		services.orders.get_order(order_id)
		attempt = services.orchestrator.attempts.latest_for_order(order_id)
		if attempt is None:
			raise NotFoundError(f"No burn attempts for order {order_id}")
		return JsonResponse(attempt.as_dict())

	result = services.orchestrator.run(order_id)
	payload = result.as_dict()
	if result.outcome == BurnOutcome.COMPLETED:
		if result.recorded:
			return JsonResponse(payload)
		payload["message"] = "Burn confirmed; the order record is catching up"
		return JsonResponse(payload, status=202)
	if result.outcome == BurnOutcome.UNKNOWN:
		payload["message"] = "Burn outcome is being confirmed; do not retry"
		return JsonResponse(payload, status=202)
	payload["message"] = "No tokens were burned"
	return JsonResponse(payload, status=502)
