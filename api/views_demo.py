"""Demo helper: fund a stub-ledger account so a redemption can run locally."""

from django.conf import settings
from django.http import Http404, JsonResponse

from core.exceptions import ValidationError
from core.services import DemoServices

from .http import json_view, parse_json


@json_view("POST")
def seed(request):
	"""
	POST: Register a stub wallet and credit it with tokens
	"""
	if not getattr(settings, "ENABLE_DEMO_ENDPOINTS", False):
		raise Http404("Demo endpoints are disabled")
	body = parse_json(request)
	amount_units = body.get("amount_units", 1000)
	if isinstance(amount_units, bool) or not isinstance(amount_units, int) or amount_units <= 0:
		raise ValidationError({"amount_units": ["Must be a positive whole number"]})
	result = DemoServices.seed(
		wallet_kind=body.get("wallet_kind", "hashpack"),
		account_id=body.get("account_id", settings.DEMO_ACCOUNT_ID),
		token_id=body.get("token_id", settings.DEMO_TOKEN_ID),
		amount_units=amount_units,
	)
	return JsonResponse(result, status=201)
