"""HTTP endpoints for the ledger stub mirroring a balance/receipt RPC surface.

The adapter talks to the ORM directly for determinism; these endpoints exist so the
stub can be inspected (and seeded) the way a real ledger's mirror API would be.
"""

import json
from django.http import JsonResponse, HttpResponseBadRequest
from .models import LedgerStubBalance, LedgerStubTx


def get_balance(request, account_id: str, token_id: str):
	"""
	GET: Return the simulated on-ledger balance for an account and token
	"""
	obj = LedgerStubBalance.objects.filter(account_id=account_id, token_id=token_id).first()
	return JsonResponse({"account_id": account_id, "token_id": token_id, "balance_units": str(obj.balance_units if obj else 0)})


def credit(request):
	"""
	POST: Credit an account with tokens; return the transaction id
	"""
	if request.method != "POST":
		return HttpResponseBadRequest("POST only")
	from core.adapters.ledger_adapter import StubLedgerClient

	body = json.loads(request.body or b"{}")
	account_id = body.get("account_id")
	token_id = body.get("token_id")
	try:
		amount_units = int(body.get("amount_units", 0))
	except (TypeError, ValueError):
		return HttpResponseBadRequest("amount_units must be an integer")
	if not account_id or not token_id or amount_units <= 0:
		return HttpResponseBadRequest("account_id, token_id and a positive amount_units are required")
	tx_id = StubLedgerClient().credit(account_id, token_id, amount_units)
	return JsonResponse({"transaction_id": tx_id, "status": "SUCCESS"}, status=201)


def transaction_status(request, transaction_id: str):
	"""
	GET: Receipt status of a transaction id (SUCCESS | FAILED | NOT_FOUND)
	"""
	tx = LedgerStubTx.objects.filter(transaction_id=transaction_id).first()
	if tx is None:
		return JsonResponse({"transaction_id": transaction_id, "status": "NOT_FOUND"}, status=404)
	return JsonResponse({
		"transaction_id": tx.transaction_id,
		"kind": tx.kind,
		"status": tx.status,
		"failure_reason": tx.failure_reason,
		"amount_units": str(tx.amount_units),
		"occurred_at": tx.occurred_at.isoformat(),
	})
