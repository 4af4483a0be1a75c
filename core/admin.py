from django.contrib import admin

from .models import BurnAttempt, ItemVariantStock, ItemVariation, RedemptionOrder


@admin.register(RedemptionOrder)
class RedemptionOrderAdmin(admin.ModelAdmin):
	list_display = ("order_id", "account_id", "token_id", "amount", "current_status", "transaction_id", "created_at")
	list_filter = ("current_status",)
	search_fields = ("order_id", "account_id", "transaction_id", "tracking_number")
	readonly_fields = ("order_id", "current_status", "version", "created_at", "updated_at")


@admin.register(ItemVariation)
class ItemVariationAdmin(admin.ModelAdmin):
	list_display = ("physical_item_id", "name", "position")
	list_filter = ("physical_item_id",)


@admin.register(ItemVariantStock)
class ItemVariantStockAdmin(admin.ModelAdmin):
	list_display = ("physical_item_id", "combination", "stock", "is_active")
	list_filter = ("is_active",)


@admin.register(BurnAttempt)
class BurnAttemptAdmin(admin.ModelAdmin):
	list_display = ("attempt_id", "order_id", "stage", "status", "transaction_id", "updated_at")
	list_filter = ("status", "stage")
	search_fields = ("order_id", "transaction_id")
