import logging
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.core.exceptions import ValidationError as ModelValidationError
from django.db import IntegrityError, transaction
from django.utils import timezone
from django.utils.crypto import get_random_string
from django.utils.dateparse import parse_datetime

from payments.exceptions import ValidationError
from payments.models import PaymentMethod, PaymentStatus

from .models import Donation, DonationType

logger = logging.getLogger(__name__)

MIN_AMOUNT = Decimal("1")
ID_ATTEMPTS = 5


def generate_donation_id(now=None) -> str:
    year = (now or timezone.now()).year
    return f"DON-{year}-{get_random_string(6, allowed_chars='0123456789')}"


def _amount(value) -> Decimal:
    try:
        amount = Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError("amount must be a number")
    if amount < MIN_AMOUNT:
        raise ValidationError(f"amount must be at least {MIN_AMOUNT}")
    return amount


def _when(value, field: str):
    if value in (None, ""):
        return None
    dt = value if hasattr(value, "tzinfo") else parse_datetime(str(value))
    if dt is None:
        raise ValidationError(f"{field} must be an ISO 8601 datetime")
    if timezone.is_naive(dt):
        dt = timezone.make_aware(dt)
    return dt


def create_donation(*, amount, donation_type, first_name, last_name, email, phone="", message="",
                    recurring_start=None, recurring_end=None, currency=None) -> Donation:
    """Record a donation waiting for its first Pesapal attempt."""
    if donation_type not in DonationType.values:
        raise ValidationError(f"donation_type must be one of {', '.join(DonationType.values)}")

    donation = Donation(
        amount=_amount(amount),
        currency=currency or settings.DONATION_CURRENCY,
        donation_type=donation_type,
        payment_method=PaymentMethod.GATEWAY,
        payment_status=PaymentStatus.NOT_INITIATED,
        first_name=(first_name or "").strip(),
        last_name=(last_name or "").strip(),
        email=(email or "").strip(),
        phone=(phone or "").strip(),
        message=message or "",
    )
    if donation_type == DonationType.MONTHLY:
        donation.recurring_start = _when(recurring_start, "recurring_start") or timezone.now()
        donation.recurring_end = _when(recurring_end, "recurring_end")
        if donation.recurring_end and donation.recurring_end <= donation.recurring_start:
            raise ValidationError("recurring_end must be after recurring_start")

    for _ in range(ID_ATTEMPTS):
        donation.donation_id = generate_donation_id()
        try:
            donation.full_clean(exclude=["order_tracking_id"])
        except ModelValidationError as e:
            if "donation_id" in e.message_dict:
                continue
            raise ValidationError("; ".join(f"{k}: {' '.join(v)}" for k, v in e.message_dict.items()))
        try:
            with transaction.atomic():
                donation.save()
        except IntegrityError:
            logger.warning("Donation id %s taken, drawing another", donation.donation_id)
            donation.pk = None
            continue
        logger.info("Created %s donation %s (%s %s)", donation_type, donation.donation_id, donation.currency, donation.amount)
        return donation
    raise ValidationError("Could not allocate a donation id, try again")
