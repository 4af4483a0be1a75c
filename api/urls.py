"""JSON API for token redemptions.

- /redemptions: open an order, look it up, burn for it
- /items/<id>/*: public variant catalogue
- /admin/*: staff-only fulfillment, catalogue and reconciliation
- /demo/seed: fund a stub-ledger account (dev only)
"""

from django.urls import path

from . import views_admin
from .views_demo import seed
from .views_ops import burn, create_redemption, csrf, health
from .views_read import item_variant_stocks, item_variations, redemption_detail


urlpatterns = [
	path("health", health),
	path("csrf", csrf),
	path("redemptions", create_redemption),
	path("redemptions/<str:order_id>", redemption_detail),
	path("redemptions/<str:order_id>/burn", burn),
	path("items/<int:item_id>/variations", item_variations),
	path("items/<int:item_id>/variant-stocks", item_variant_stocks),
	path("admin/redemptions", views_admin.redemptions),
	path("admin/redemptions/<str:order_id>", views_admin.redemption_detail),
	path("admin/items/<int:item_id>/variations", views_admin.item_variations),
	path("admin/items/<int:item_id>/variations/<int:variation_id>", views_admin.item_variation_detail),
	path("admin/items/<int:item_id>/variant-stocks", views_admin.item_variant_stocks),
	path("admin/items/<int:item_id>/variant-stocks/<int:stock_id>", views_admin.item_variant_stock_detail),
	path("admin/reconciliation", views_admin.reconciliation),
	path("admin/reconciliation/run", views_admin.reconciliation_run),
	path("demo/seed", seed),
]
