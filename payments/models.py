from django.db import models

from .exceptions import InvariantViolation


class PaymentStatus(models.TextChoices):
    NOT_INITIATED = "not_initiated", "Not initiated"
    PENDING = "pending", "Pending"
    PAID = "paid", "Paid"
    FAILED = "failed", "Failed"
    REFUNDED = "refunded", "Refunded"


class PaymentMethod(models.TextChoices):
    GATEWAY = "gateway", "Pesapal"
    CASH_ON_DELIVERY = "cash_on_delivery", "Cash on delivery"
    BANK_TRANSFER = "bank_transfer", "Bank transfer"


# failed -> pending only happens through an explicit retry.
PAYMENT_TRANSITIONS = {
    PaymentStatus.NOT_INITIATED: {PaymentStatus.PENDING, PaymentStatus.PAID, PaymentStatus.FAILED},
    PaymentStatus.PENDING: {PaymentStatus.PAID, PaymentStatus.FAILED},
    PaymentStatus.FAILED: {PaymentStatus.PENDING, PaymentStatus.PAID},
    PaymentStatus.PAID: {PaymentStatus.REFUNDED},
    PaymentStatus.REFUNDED: set(),
}

TERMINAL_SUCCESS = frozenset({PaymentStatus.PAID, PaymentStatus.REFUNDED})


def check_transition(current: str, target: str) -> None:
    if current == target:
        return
    if target not in PAYMENT_TRANSITIONS.get(current, set()):
        raise InvariantViolation(f"payment_status {current} -> {target} is not allowed")


class Payable(models.Model):
    """Anything with a payment_status lifecycle driven by the gateway."""

    REFERENCE_FIELD = None

    order_tracking_id = models.CharField(max_length=64, unique=True, null=True, blank=True)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=8)
    payment_method = models.CharField(max_length=32, choices=PaymentMethod.choices, default=PaymentMethod.GATEWAY)
    payment_status = models.CharField(
        max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.NOT_INITIATED, db_index=True
    )

    transaction_id = models.CharField(max_length=64, blank=True, default="")
    confirmation_code = models.CharField(max_length=64, blank=True, default="")
    gateway_payment_method = models.CharField(max_length=64, blank=True, default="")
    gateway_payload = models.JSONField(blank=True, null=True)
    failure_reason = models.CharField(max_length=255, blank=True, default="")

    version = models.PositiveIntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    paid_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        abstract = True

    @property
    def reference(self) -> str:
        return getattr(self, self.REFERENCE_FIELD)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID

    @property
    def uses_gateway(self) -> bool:
        return self.payment_method == PaymentMethod.GATEWAY


class GatewayNotification(models.Model):
    OUTCOME_PROCESSED = "processed"
    OUTCOME_REJECTED = "rejected"
    OUTCOME_FAILED = "failed"
    OUTCOMES = [
        (OUTCOME_PROCESSED, "Processed"),
        (OUTCOME_REJECTED, "Rejected"),
        (OUTCOME_FAILED, "Failed"),
    ]

    tracking_id = models.CharField(max_length=64, db_index=True)
    notification_type = models.CharField(max_length=32)
    merchant_reference = models.CharField(max_length=64, db_index=True)
    http_method = models.CharField(max_length=8)
    source_ip = models.GenericIPAddressField(null=True, blank=True)
    outcome = models.CharField(max_length=16, choices=OUTCOMES)
    detail = models.CharField(max_length=255, blank=True, default="")
    received_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("-received_at",)

    def __str__(self):
        return f"{self.merchant_reference} {self.notification_type} ({self.outcome})"
