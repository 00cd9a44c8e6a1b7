from django.contrib import admin, messages

from payments.exceptions import PaymentError
from payments.reconciliation import get_engine

from .models import Order, OrderItem
from .services import advance_order_status


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    can_delete = False
    readonly_fields = ("name", "sku", "quantity", "unit_price")

    def has_add_permission(self, request, obj=None):
        return False


def _run(modeladmin, request, queryset, action, done: str):
    for order in queryset:
        try:
            action(order.order_number)
        except PaymentError as e:
            modeladmin.message_user(request, f"{order.order_number}: {e.message}", level=messages.WARNING)
        else:
            modeladmin.message_user(request, f"{order.order_number}: {done}")


@admin.action(description="Advance fulfillment status")
def advance_status(modeladmin, request, queryset):
    _run(modeladmin, request, queryset, advance_order_status, "advanced")


@admin.action(description="Cancel as admin")
def cancel_as_admin(modeladmin, request, queryset):
    engine = get_engine()
    _run(
        modeladmin, request, queryset,
        lambda number: engine.cancel_confirmed_order(number, by_admin=True, reason="admin"),
        "cancelled",
    )


@admin.action(description="Process Pesapal refund")
def process_refund(modeladmin, request, queryset):
    engine = get_engine()
    _run(
        modeladmin, request, queryset,
        lambda number: engine.process_refund(number, username=request.user.get_username() or None),
        "refund requested",
    )


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = (
        "order_number", "customer_name", "amount", "currency", "payment_method",
        "payment_status", "order_status", "refund_status", "created_at",
    )
    search_fields = ("order_number", "customer_name", "customer_email", "order_tracking_id", "confirmation_code")
    list_filter = ("order_status", "payment_status", "payment_method", "refund_status", "created_at")
    inlines = [OrderItemInline]
    actions = [advance_status, cancel_as_admin, process_refund]

    # Read-only: status fields move through the actions above.
    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False
