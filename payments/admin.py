from django.contrib import admin

from .models import GatewayNotification


@admin.register(GatewayNotification)
class GatewayNotificationAdmin(admin.ModelAdmin):
    list_display = ("merchant_reference", "tracking_id", "notification_type", "outcome", "source_ip", "received_at")
    search_fields = ("merchant_reference", "tracking_id")
    list_filter = ("outcome", "notification_type", "received_at")
    readonly_fields = [f.name for f in GatewayNotification._meta.fields]
