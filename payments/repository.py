"""Optimistic-concurrency access to payables.

Every write is a single conditional ``UPDATE ... WHERE pk = %s AND version = %s``
that bumps ``version``. Zero affected rows means somebody else wrote first and
the caller has to re-read and redo its whole step.
"""
import logging
from decimal import Decimal

from django.db import transaction
from django.db.models import Count, F, Sum
from django.utils import timezone

from donations.models import Donation, RecurringPayment
from orders.models import Order

from .exceptions import Conflict, NotFound
from .models import check_transition

logger = logging.getLogger(__name__)

DONATION_PREFIX = "DON-"


class PayableRepository:
    def __init__(self, model):
        self.model = model
        self.reference_field = model.REFERENCE_FIELD

    def __repr__(self):
        return f"PayableRepository({self.model.__name__})"

    def get_by_reference(self, reference: str):
        try:
            return self.model.objects.get(**{self.reference_field: reference})
        except self.model.DoesNotExist:
            raise NotFound(f"{self.model.__name__} {reference} not found")

    def get_by_tracking_id(self, tracking_id: str):
        if not tracking_id:
            raise NotFound("Empty tracking id")
        try:
            return self.model.objects.get(order_tracking_id=tracking_id)
        except self.model.DoesNotExist:
            raise NotFound(f"No {self.model.__name__} with tracking id {tracking_id}")

    def update(self, payable, **changes):
        """Write ``changes`` if ``payable`` is still at the version it was read at."""
        if "payment_status" in changes:
            check_transition(payable.payment_status, changes["payment_status"])
        changes.setdefault("updated_at", timezone.now())
        rows = self.model.objects.filter(pk=payable.pk, version=payable.version).update(
            version=F("version") + 1, **changes
        )
        if rows == 0:
            self._raise_missing_or_conflict(payable)
        return self.model.objects.get(pk=payable.pk)

    def append_ledger_entry(self, donation, entry: dict, **changes):
        """Insert a ledger row and rewrite the aggregates in one transaction."""
        with transaction.atomic():
            RecurringPayment.objects.create(donation=donation, **entry)
            totals = RecurringPayment.objects.filter(donation=donation).aggregate(
                count=Count("id"), total=Sum("amount")
            )
            changes["total_donations"] = totals["count"]
            changes["total_amount"] = totals["total"] or Decimal("0")
            return self.update(donation, **changes)

    def delete(self, payable) -> None:
        deleted, _ = self.model.objects.filter(pk=payable.pk, version=payable.version).delete()
        if not deleted:
            self._raise_missing_or_conflict(payable)
        logger.info("Deleted %s %s", self.model.__name__, payable.reference)

    def pending_with_tracking_id(self, older_than=None):
        qs = self.model.objects.filter(payment_status="pending").exclude(order_tracking_id__isnull=True)
        qs = qs.exclude(order_tracking_id="")
        if older_than is not None:
            qs = qs.filter(updated_at__lt=older_than)
        return qs.order_by("updated_at")

    def _raise_missing_or_conflict(self, payable):
        if not self.model.objects.filter(pk=payable.pk).exists():
            raise NotFound(f"{self.model.__name__} {payable.reference} no longer exists")
        raise Conflict(f"{self.model.__name__} {payable.reference} changed since version {payable.version}")


donations = PayableRepository(Donation)
orders = PayableRepository(Order)


def repository_for_reference(reference: str) -> PayableRepository:
    if (reference or "").startswith(DONATION_PREFIX):
        return donations
    return orders
