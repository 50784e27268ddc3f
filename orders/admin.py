from django.conf import settings
from django.contrib import admin, messages

from .exceptions import ReconciliationError
from .models import City, Order, OrderItem, Product
from .reconciliation import repair
from .storage import DjangoOrderStore


class OrderItemInline(admin.TabularInline):
    """Inline admin for OrderItems within Order admin."""

    model = OrderItem
    extra = 0
    fields = ("product", "quantity", "unit_price", "line_total")
    readonly_fields = ("line_total",)


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    """Admin interface for Order model."""

    list_display = (
        "order_number",
        "customer_name",
        "customer_phone",
        "city",
        "subtotal",
        "delivery_fee",
        "total",
        "call_center_status",
        "delivery_status",
        "created_at",
    )
    list_filter = ("call_center_status", "delivery_status", "delivery_type", "created_at")
    search_fields = ("order_number", "customer_name", "customer_phone", "tracking_number")
    readonly_fields = ("subtotal", "total", "version", "created_at", "updated_at")
    inlines = [OrderItemInline]
    actions = ["repair_totals"]

    fieldsets = (
        (
            "Order Information",
            {
                "fields": ("order_number", "delivery_fee", "subtotal", "total", "version", "created_at", "updated_at"),
            },
        ),
        (
            "Customer Information",
            {
                "fields": ("customer_name", "customer_phone", "customer_email", "city", "delivery_type", "delivery_address", "notes"),
            },
        ),
        (
            "Fulfilment",
            {
                "fields": ("call_center_status", "delivery_status", "tracking_number", "yalidine_shipment_id"),
            },
        ),
    )

    def save_model(self, request, obj, form, change):
        """Save only the edited fields; totals and version are owned by the reconciler."""
        if not change:
            super().save_model(request, obj, form, change)
            return
        obj.save(update_fields=[*form.changed_data, "updated_at"])

    def save_related(self, request, form, formsets, change):
        """Recompute cached totals once edited items have been saved."""
        super().save_related(request, form, formsets, change)
        form.instance.recalculate_totals()

    @admin.action(description="Repair totals of selected orders")
    def repair_totals(self, request, queryset):
        store = DjangoOrderStore()
        fixed = 0
        for order_id in queryset.values_list("pk", flat=True):
            try:
                if repair(store, order_id, settings.ORDER_TOTALS_TOLERANCE).applied:
                    fixed += 1
            except ReconciliationError as e:
                self.message_user(request, f"Order {order_id}: {e}", level=messages.ERROR)
        self.message_user(request, f"Repaired {fixed} orders", level=messages.SUCCESS)


@admin.register(City)
class CityAdmin(admin.ModelAdmin):
    list_display = ("code", "name", "name_ar", "delivery_fee", "is_active")
    list_filter = ("is_active",)
    search_fields = ("name", "name_ar", "code")


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ("name", "price", "stock", "is_active")
    list_filter = ("is_active",)
    search_fields = ("name", "slug")
    prepopulated_fields = {"slug": ("name",)}
