from django.urls import path
from .views import get_balance, credit, transaction_status


urlpatterns = [
	path("balance/<str:account_id>/<str:token_id>", get_balance),
	path("credit", credit),
	path("transactions/<str:transaction_id>", transaction_status),
]
