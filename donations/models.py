from django.core.validators import MinValueValidator, RegexValidator
from django.db import models

from payments.models import Payable, PaymentStatus


class DonationType(models.TextChoices):
    ONE_TIME = "one_time", "One-time"
    MONTHLY = "monthly", "Monthly"


class Donation(Payable):
    REFERENCE_FIELD = "donation_id"

    donation_id = models.CharField(max_length=32, unique=True, db_index=True)  # DON-YYYY-NNNNNN
    donation_type = models.CharField(max_length=16, choices=DonationType.choices, default=DonationType.ONE_TIME)

    first_name = models.CharField(max_length=50)
    last_name = models.CharField(max_length=50)
    email = models.EmailField()
    phone = models.CharField(
        max_length=20, blank=True, default="",
        validators=[RegexValidator(r"^[+]?[0-9\s\-\(\)]{7,15}$")],
    )
    message = models.TextField(blank=True, default="")
    thank_you_sent = models.BooleanField(default=False)

    # monthly donations only
    recurring_start = models.DateTimeField(null=True, blank=True)
    recurring_end = models.DateTimeField(null=True, blank=True)
    recurring_active = models.BooleanField(default=False)
    total_donations = models.PositiveIntegerField(default=0)
    total_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    last_donation_date = models.DateTimeField(null=True, blank=True)
    next_donation_date = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ("-created_at",)

    @property
    def is_monthly(self) -> bool:
        return self.donation_type == DonationType.MONTHLY

    @property
    def donor_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def __str__(self):
        return f"{self.donation_id} {self.payment_status} {self.currency} {self.amount}"


class RecurringPayment(models.Model):
    """One billing cycle of a monthly donation. Rows are only ever inserted."""

    donation = models.ForeignKey(Donation, on_delete=models.CASCADE, related_name="recurring_payments")
    payment_date = models.DateTimeField()
    amount = models.DecimalField(max_digits=12, decimal_places=2, validators=[MinValueValidator(0)])
    gateway_tracking_id = models.CharField(max_length=64)
    confirmation_code = models.CharField(max_length=64, blank=True, default="")
    status = models.CharField(max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.PAID)
    gateway_payment_method = models.CharField(max_length=64, blank=True, default="")
    is_initial_payment = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("payment_date", "id")

    def __str__(self):
        return f"{self.donation.donation_id} {self.payment_date:%Y-%m-%d} {self.amount}"
