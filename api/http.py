"""JSON plumbing shared by the api views: body parsing, error mapping, access checks."""

import json
import logging
from functools import wraps

from django.http import HttpResponseNotAllowed, JsonResponse

from core.adapters.ledger_adapter import LedgerError
from core.exceptions import (
	BurnInProgressError, ConcurrentUpdateError, CorrectionNotPermittedError, ExternalCallError,
	InvalidTransitionError, NotFoundError, PersistenceError, ReconciliationRequiredError, ValidationError,
)

logger = logging.getLogger(__name__)

# Checked in order; subclasses before their bases
ERROR_STATUS = (
	(ValidationError, 400),
	(NotFoundError, 404),
	(CorrectionNotPermittedError, 403),
	(InvalidTransitionError, 409),
	(BurnInProgressError, 409),
	(ReconciliationRequiredError, 409),
	(ConcurrentUpdateError, 409),
	(ExternalCallError, 502),
	(LedgerError, 502),
	(PersistenceError, 503),
)


def parse_json(request) -> dict:
	try:
		body = json.loads(request.body or b"{}")
	except (ValueError, UnicodeDecodeError) as e:
		raise ValidationError("Request body is not valid JSON", code="invalid_json") from e
	if not isinstance(body, dict):
		raise ValidationError("Request body must be a JSON object", code="invalid_json")
	return body


def error_payload(e) -> dict:
	if isinstance(e, ValidationError):
		if hasattr(e, "error_dict"):
			return {"error": "validation_error", "details": e.message_dict}
		return {"error": "validation_error", "message": "; ".join(e.messages)}
	payload = {"error": e.__class__.__name__, "message": str(e)}
	if isinstance(e, InvalidTransitionError):
		payload.update(from_status=e.from_status, to_status=e.to_status)
	if isinstance(e, ReconciliationRequiredError):
		payload.update(order_id=e.order_id, attempt_id=e.attempt_id)
	return payload


def error_response(e):
	for exc_type, status in ERROR_STATUS:
		if isinstance(e, exc_type):
			if status >= 500:
				logger.error("Request failed with %s: %s", e.__class__.__name__, e)
			return JsonResponse(error_payload(e), status=status)
	raise e


def json_view(*methods):
	"""Restrict methods and turn domain errors into JSON error responses."""
	def decorator(view):
		@wraps(view)
		def wrapper(request, *args, **kwargs):
			if request.method not in methods:
				return HttpResponseNotAllowed(methods)
			try:
				return view(request, *args, **kwargs)
			except tuple(t for t, _ in ERROR_STATUS) as e:
				return error_response(e)
		return wrapper
	return decorator


def staff_required(view):
	@wraps(view)
	def wrapper(request, *args, **kwargs):
		user = request.user
		if not user.is_authenticated:
			return JsonResponse({"error": "authentication_required"}, status=403)
		if not user.is_staff:
			return JsonResponse({"error": "staff_only"}, status=403)
		return view(request, *args, **kwargs)
	return wrapper
