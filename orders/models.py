from django.db import models

from payments.models import Payable, PaymentMethod, PaymentStatus


class OrderStatus(models.TextChoices):
    PENDING_PAYMENT = "pending_payment", "Pending payment"
    CONFIRMED = "confirmed", "Confirmed"
    PROCESSING = "processing", "Processing"
    READY_FOR_DELIVERY = "ready_for_delivery", "Ready for delivery"
    OUT_FOR_DELIVERY = "out_for_delivery", "Out for delivery"
    DELIVERED = "delivered", "Delivered"
    CANCELLED_BY_USER = "cancelled_by_user", "Cancelled by user"
    CANCELLED_BY_ADMIN = "cancelled_by_admin", "Cancelled by admin"


CANCELLED_STATUSES = frozenset({OrderStatus.CANCELLED_BY_USER, OrderStatus.CANCELLED_BY_ADMIN})
TERMINAL_ORDER_STATUSES = CANCELLED_STATUSES | {OrderStatus.DELIVERED}
CANCELLABLE_AFTER_CONFIRMATION = frozenset({OrderStatus.PROCESSING, OrderStatus.READY_FOR_DELIVERY})

# Forward-only fulfillment path; cancellation is handled separately.
FULFILLMENT_FLOW = [
    OrderStatus.PENDING_PAYMENT,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.READY_FOR_DELIVERY,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
]


class RefundStatus(models.TextChoices):
    NOT_APPLICABLE = "not_applicable", "Not applicable"
    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"


class DeliveryMethod(models.TextChoices):
    PICKUP = "pickup", "Pickup"
    LOCAL_DELIVERY = "local_delivery", "Local delivery"


class Order(Payable):
    REFERENCE_FIELD = "order_number"

    order_number = models.CharField(max_length=32, unique=True, db_index=True)  # KAPC-YYYY-NNNNNN
    order_status = models.CharField(
        max_length=32, choices=OrderStatus.choices, default=OrderStatus.PENDING_PAYMENT, db_index=True
    )

    customer_name = models.CharField(max_length=128)
    customer_email = models.EmailField()
    customer_phone = models.CharField(max_length=20, blank=True, default="")
    shipping_address = models.CharField(max_length=255, blank=True, default="")
    city = models.CharField(max_length=64, blank=True, default="")
    delivery_method = models.CharField(max_length=32, choices=DeliveryMethod.choices, default=DeliveryMethod.PICKUP)

    subtotal = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    shipping_cost = models.DecimalField(max_digits=12, decimal_places=2, default=0)

    cancellation_reason = models.CharField(max_length=64, blank=True, default="")
    cancellation_notes = models.TextField(blank=True, default="")
    cancelled_at = models.DateTimeField(null=True, blank=True)

    refund_status = models.CharField(max_length=16, choices=RefundStatus.choices, default=RefundStatus.NOT_APPLICABLE)
    refund_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    refund_initiated_at = models.DateTimeField(null=True, blank=True)

    delivered_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ("-created_at",)

    @property
    def is_cancelled(self) -> bool:
        return self.order_status in CANCELLED_STATUSES

    @property
    def stock_taken(self) -> bool:
        """Stock leaves inventory at creation for COD and on payment for gateway orders."""
        if self.payment_method == PaymentMethod.GATEWAY:
            return self.payment_status == PaymentStatus.PAID
        return True

    def __str__(self):
        return f"{self.order_number} ({self.order_status}/{self.payment_status})"


class OrderItem(models.Model):
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="items")
    name = models.CharField(max_length=255)
    sku = models.CharField(max_length=64, blank=True, default="")
    quantity = models.PositiveIntegerField(default=1)
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)

    @property
    def line_total(self):
        return self.unit_price * self.quantity

    def __str__(self):
        return f"{self.quantity} x {self.name}"
