from django.contrib import admin

from .models import Donation, RecurringPayment


class RecurringPaymentInline(admin.TabularInline):
    model = RecurringPayment
    extra = 0
    can_delete = False
    readonly_fields = (
        "payment_date", "amount", "gateway_tracking_id", "confirmation_code",
        "status", "gateway_payment_method", "is_initial_payment",
    )

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Donation)
class DonationAdmin(admin.ModelAdmin):
    list_display = ("donation_id", "donation_type", "donor_name", "amount", "currency", "payment_status", "created_at")
    search_fields = ("donation_id", "email", "first_name", "last_name", "order_tracking_id", "confirmation_code")
    list_filter = ("payment_status", "donation_type", "currency", "created_at")
    readonly_fields = (
        "order_tracking_id", "payment_status", "transaction_id", "confirmation_code", "gateway_payment_method",
        "gateway_payload", "total_donations", "total_amount", "version", "created_at", "updated_at", "paid_at",
    )
    inlines = [RecurringPaymentInline]

    # Read-only: rows are written by checkout and reconciliation only.
    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False
