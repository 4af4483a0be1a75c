"""URL routing for the redemption API + the local ledger stub.


The /api/ namespace exposes redemption, fulfillment and variant-stock operations;
/stub/ledger/ exposes the deterministic ledger used by the default ledger client.
In production, the stub is replaced by a real ledger client.
"""

from django.contrib import admin
from django.urls import path, include


urlpatterns = [
	path("admin/", admin.site.urls),
	path("api/", include("api.urls")),
	path("stub/ledger/", include("ledger_stub.urls")),
]
