"""Payment state machine shared by orders and donations.

The gateway is the only source of truth: IPN and callback parameters are used
to find the payable, never to decide its status. Every write goes through the
optimistic repository and side effects (emails, stock signals, cleanup) run
only after the write that won.
"""
import logging
import time
from dataclasses import dataclass
from datetime import timedelta

from django.conf import settings
from django.utils import timezone

from donations.emails import send_donation_thank_you
from donations.models import Donation, DonationType
from orders import emails as order_emails
from orders.models import CANCELLABLE_AFTER_CONFIRMATION, Order, OrderStatus, RefundStatus
from orders.signals import order_paid, send_quietly, stock_release_requested

from . import repository
from .exceptions import Conflict, DeadlineExceeded, GatewayUnavailable, TransitionNotAllowed, ValidationError
from .integrations.pesapal import get_client
from .models import TERMINAL_SUCCESS, PaymentStatus

logger = logging.getLogger(__name__)

RECURRING_INTERVAL = timedelta(days=30)
SUBSCRIPTION_LENGTH = timedelta(days=365)


class Deadline:
    """Wall-clock budget for one request, measured on the monotonic clock."""

    def __init__(self, seconds: float):
        self.expires_at = time.monotonic() + seconds

    @classmethod
    def for_webhook(cls) -> "Deadline":
        return cls(settings.PAYMENTS_WEBHOOK_TIMEOUT)

    def remaining(self) -> float:
        return self.expires_at - time.monotonic()

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0


@dataclass(frozen=True)
class ReconciliationResult:
    reference: str
    payment_status: str
    changed: bool = False
    deleted: bool = False


@dataclass(frozen=True)
class SubmissionResult:
    reference: str
    tracking_id: str
    redirect_url: str


def _pesapal_date(value) -> str:
    if timezone.is_aware(value):
        value = timezone.localtime(value)
    return value.strftime("%d-%m-%Y")


def _split_name(full_name: str):
    first, _, last = (full_name or "").strip().partition(" ")
    return first, last.strip()


class OrderKind:
    def check_submittable(self, order: Order) -> None:
        if order.order_status != OrderStatus.PENDING_PAYMENT:
            raise TransitionNotAllowed(f"Order {order.order_number} is {order.get_order_status_display().lower()}")

    def submission_payload(self, order: Order) -> dict:
        first_name, last_name = _split_name(order.customer_name)
        return {
            "id": order.order_number,
            "currency": order.currency,
            "amount": order.amount,
            "description": f"Order {order.order_number}",
            "billing_address": {
                "email_address": order.customer_email,
                "phone_number": order.customer_phone,
                "country_code": settings.PESAPAL_COUNTRY_CODE,
                "first_name": first_name,
                "last_name": last_name,
                "line_1": order.shipping_address,
                "city": order.city,
            },
        }

    def paid_changes(self, order: Order) -> dict:
        return {}

    def after_paid(self, order: Order) -> None:
        if order.uses_gateway:
            send_quietly(order_paid, order)
        order_emails.send_order_confirmation(order)

    def deletable_after_failure(self, order: Order) -> bool:
        return False


class DonationKind:
    def check_submittable(self, donation: Donation) -> None:
        pass

    def submission_payload(self, donation: Donation) -> dict:
        payload = {
            "id": donation.donation_id,
            "currency": donation.currency,
            "amount": donation.amount,
            "description": f"{donation.get_donation_type_display()} donation {donation.donation_id}",
            "billing_address": {
                "email_address": donation.email,
                "phone_number": donation.phone,
                "country_code": settings.PESAPAL_COUNTRY_CODE,
                "first_name": donation.first_name,
                "last_name": donation.last_name,
            },
        }
        if donation.is_monthly:
            start = donation.recurring_start or timezone.now()
            end = donation.recurring_end or start + SUBSCRIPTION_LENGTH
            payload["account_number"] = donation.donation_id
            payload["subscription_details"] = {
                "start_date": _pesapal_date(start),
                "end_date": _pesapal_date(end),
                "frequency": "MONTHLY",
            }
        return payload

    def paid_changes(self, donation: Donation) -> dict:
        return {} if donation.thank_you_sent else {"thank_you_sent": True}

    def after_paid(self, donation: Donation) -> None:
        send_donation_thank_you(donation)

    def deletable_after_failure(self, donation: Donation) -> bool:
        return donation.donation_type == DonationType.ONE_TIME


KINDS = {Order: OrderKind(), Donation: DonationKind()}


class ReconciliationEngine:
    def __init__(self, gateway=None, max_conflict_retries: int = 2):
        self._gateway = gateway
        self.max_conflict_retries = max_conflict_retries

    @property
    def gateway(self):
        if self._gateway is None:
            self._gateway = get_client()
        return self._gateway

    # ---------- helpers ----------
    def _resolve(self, reference: str):
        repo = repository.repository_for_reference(reference)
        return repo, KINDS[repo.model]

    def _retrying_conflicts(self, step, what: str):
        attempt = 0
        while True:
            try:
                return step()
            except Conflict:
                attempt += 1
                if attempt > self.max_conflict_retries:
                    logger.warning("Giving up on %s after %s conflicting writes", what, attempt)
                    raise
                logger.info("Conflict on %s, re-reading (retry %s/%s)", what, attempt, self.max_conflict_retries)

    @staticmethod
    def _time_left(deadline, what: str):
        if deadline is None:
            return None
        remaining = deadline.remaining()
        if remaining <= 0:
            raise DeadlineExceeded(f"Deadline passed before {what}")
        return remaining

    def _query_status(self, reference: str, tracking_id: str, deadline):
        status = self.gateway.get_transaction_status(
            tracking_id, timeout=self._time_left(deadline, f"status query for {tracking_id}")
        )
        if status.merchant_reference and status.merchant_reference != reference:
            raise ValidationError(
                f"Tracking id {tracking_id} belongs to {status.merchant_reference}, not {reference}"
            )
        return status

    @staticmethod
    def _paid_fields(tracking_id: str, status, now) -> dict:
        return {
            "payment_status": PaymentStatus.PAID,
            "paid_at": now,
            "transaction_id": tracking_id,
            "order_tracking_id": tracking_id,
            "confirmation_code": status.confirmation_code,
            "gateway_payment_method": status.payment_method,
            "gateway_payload": status.raw,
            "failure_reason": "",
        }

    @staticmethod
    def _ledger_entry(tracking_id: str, status, amount, now, initial: bool) -> dict:
        return {
            "payment_date": now,
            "amount": status.amount if status.amount is not None else amount,
            "gateway_tracking_id": tracking_id,
            "confirmation_code": status.confirmation_code,
            "status": PaymentStatus.PAID,
            "gateway_payment_method": status.payment_method,
            "is_initial_payment": initial,
        }

    # ---------- gateway notifications ----------
    def reconcile(self, reference: str, tracking_id: str, deadline=None,
                  final_only: bool = False) -> ReconciliationResult:
        """Bring the payable named by ``reference`` in line with the gateway's view of ``tracking_id``.

        With ``final_only`` only a completed payment is written. Callers that
        ask before Pesapal has notified use it, since an unfinished payment
        and a failed one look the same from the status endpoint.
        """
        repo, kind = self._resolve(reference)
        return self._retrying_conflicts(
            lambda: self._reconcile_once(repo, kind, reference, tracking_id, deadline, final_only),
            f"reconcile {reference}",
        )

    def _reconcile_once(self, repo, kind, reference, tracking_id, deadline, final_only=False):
        payable = repo.get_by_reference(reference)
        if payable.payment_status in TERMINAL_SUCCESS:
            logger.info("%s already %s, ignoring notification for %s", reference, payable.payment_status, tracking_id)
            return ReconciliationResult(reference, payable.payment_status)

        status = self._query_status(reference, tracking_id, deadline)
        superseded = bool(payable.order_tracking_id) and payable.order_tracking_id != tracking_id

        if not status.is_completed:
            if final_only:
                logger.info("%s attempt %s is %r, left as %s", reference, tracking_id,
                            status.status_description, payable.payment_status)
                return ReconciliationResult(reference, payable.payment_status)
            if not payable.order_tracking_id or superseded:
                logger.info(
                    "Ignoring %r for %s: %s is not its current attempt (current %s)",
                    status.status_description, reference, tracking_id, payable.order_tracking_id or "none",
                )
                return ReconciliationResult(reference, payable.payment_status)
            if status.merchant_reference != reference:
                logger.warning(
                    "Ignoring %r for %s: Pesapal does not tie %s to it",
                    status.status_description, reference, tracking_id,
                )
                return ReconciliationResult(reference, payable.payment_status)
            if payable.payment_status == PaymentStatus.FAILED:
                logger.info("%s already failed, nothing to write", reference)
                return ReconciliationResult(reference, payable.payment_status)
            return self._apply_failed(repo, kind, payable, status, deadline)

        if superseded:
            logger.info("Superseded attempt %s of %s completed, applying it", tracking_id, reference)
        return self._apply_paid(repo, kind, payable, tracking_id, status, deadline)

    def _apply_paid(self, repo, kind, payable, tracking_id, status, deadline):
        now = timezone.now()
        changes = self._paid_fields(tracking_id, status, now)
        changes.update(kind.paid_changes(payable))
        self._time_left(deadline, f"persisting payment of {payable.reference}")

        if isinstance(payable, Donation) and payable.is_monthly:
            initial = not payable.recurring_payments.exists()
            changes.update(
                recurring_active=True,
                recurring_start=payable.recurring_start or now,
                last_donation_date=now,
                next_donation_date=now + RECURRING_INTERVAL,
            )
            entry = self._ledger_entry(tracking_id, status, payable.amount, now, initial)
            updated = repo.append_ledger_entry(payable, entry, **changes)
        else:
            updated = repo.update(payable, **changes)

        logger.info(
            "%s %s -> paid (tracking %s, confirmation %s)",
            updated.reference, payable.payment_status, tracking_id, status.confirmation_code or "-",
        )
        kind.after_paid(updated)
        return ReconciliationResult(updated.reference, updated.payment_status, changed=True)

    def _apply_failed(self, repo, kind, payable, status, deadline):
        self._time_left(deadline, f"persisting failure of {payable.reference}")
        reason = status.description or status.status_description or "Payment not completed"
        updated = repo.update(
            payable,
            payment_status=PaymentStatus.FAILED,
            failure_reason=reason[:255],
            gateway_payload=status.raw,
        )
        logger.info("%s %s -> failed (%s)", updated.reference, payable.payment_status, status.status_description)

        deleted = False
        if kind.deletable_after_failure(updated):
            try:
                repo.delete(updated)
                deleted = True
            except Exception:
                logger.exception("Could not delete failed %s", updated.reference)
        return ReconciliationResult(updated.reference, PaymentStatus.FAILED, changed=True, deleted=deleted)

    def reconcile_recurring(self, donation_id: str, tracking_id: str, deadline=None) -> ReconciliationResult:
        """Record one billing cycle of a monthly donation."""
        return self._retrying_conflicts(
            lambda: self._reconcile_recurring_once(donation_id, tracking_id, deadline),
            f"recurring cycle {tracking_id} of {donation_id}",
        )

    def _reconcile_recurring_once(self, donation_id, tracking_id, deadline):
        repo = repository.donations
        donation = repo.get_by_reference(donation_id)
        if not donation.is_monthly:
            raise ValidationError(f"{donation_id} is not a monthly donation")

        status = self._query_status(donation_id, tracking_id, deadline)
        if not status.is_completed:
            logger.info(
                "Recurring cycle %s of %s not completed (%s), nothing recorded",
                tracking_id, donation_id, status.status_description,
            )
            return ReconciliationResult(donation_id, donation.payment_status)

        # No dedupe by tracking id: whether Pesapal reuses it across cycles is unknown.
        now = timezone.now()
        changes = {
            "recurring_active": True,
            "last_donation_date": now,
            "next_donation_date": now + RECURRING_INTERVAL,
        }
        first_payment = donation.payment_status not in TERMINAL_SUCCESS
        if first_payment:
            changes.update(self._paid_fields(tracking_id, status, now))
            changes.update(KINDS[Donation].paid_changes(donation))
            changes["recurring_start"] = donation.recurring_start or now

        self._time_left(deadline, f"persisting recurring cycle of {donation_id}")
        initial = not donation.recurring_payments.exists()
        entry = self._ledger_entry(tracking_id, status, donation.amount, now, initial)
        updated = repo.append_ledger_entry(donation, entry, **changes)
        logger.info(
            "Recorded recurring cycle %s of %s: %s payments, %s total",
            tracking_id, donation_id, updated.total_donations, updated.total_amount,
        )
        if first_payment:
            KINDS[Donation].after_paid(updated)
        return ReconciliationResult(donation_id, updated.payment_status, changed=True)

    # ---------- user and admin actions ----------
    def submit_payment(self, reference: str) -> SubmissionResult:
        """Open the first Pesapal attempt for a gateway payable."""
        repo, kind = self._resolve(reference)
        payable = repo.get_by_reference(reference)
        if not payable.uses_gateway:
            raise TransitionNotAllowed(f"{reference} is not paid through Pesapal")
        if payable.payment_status != PaymentStatus.NOT_INITIATED:
            raise TransitionNotAllowed(f"Payment for {reference} is already {payable.payment_status}")
        kind.check_submittable(payable)
        claimed = repo.update(payable, payment_status=PaymentStatus.PENDING)
        return self._submit(repo, kind, claimed)

    def retry_payment(self, reference: str) -> SubmissionResult:
        """Open a new Pesapal attempt, replacing the current tracking id."""
        repo, kind = self._resolve(reference)
        payable = repo.get_by_reference(reference)
        if not payable.uses_gateway:
            raise TransitionNotAllowed(f"{reference} is not paid through Pesapal")
        if payable.payment_status not in (PaymentStatus.PENDING, PaymentStatus.FAILED):
            raise TransitionNotAllowed(f"Cannot retry payment for {reference}: it is {payable.payment_status}")
        kind.check_submittable(payable)

        previous = payable.order_tracking_id
        claimed = repo.update(payable, payment_status=PaymentStatus.PENDING, failure_reason="")
        if previous and payable.payment_status == PaymentStatus.PENDING:
            self._cancel_quietly(previous, reference)
        return self._submit(repo, kind, claimed)

    def _submit(self, repo, kind, claimed) -> SubmissionResult:
        payload = kind.submission_payload(claimed)
        payload["callback_url"] = f"{settings.PUBLIC_BASE_URL}/payments/pesapal/callback"
        payload["notification_id"] = self.gateway.notification_id()
        submitted = self.gateway.submit_order(payload)

        current = claimed
        while True:
            try:
                current = repo.update(current, order_tracking_id=submitted.tracking_id)
                break
            except Conflict:
                current = repo.get_by_reference(claimed.reference)
                if current.payment_status != PaymentStatus.PENDING:
                    logger.warning(
                        "%s moved to %s while submitting; tracking id %s not recorded",
                        claimed.reference, current.payment_status, submitted.tracking_id,
                    )
                    raise
        logger.info("Submitted %s to Pesapal as %s", claimed.reference, submitted.tracking_id)
        return SubmissionResult(claimed.reference, submitted.tracking_id, submitted.redirect_url)

    def _cancel_quietly(self, tracking_id: str, reference: str) -> None:
        try:
            self.gateway.cancel(tracking_id)
            logger.info("Cancelled Pesapal attempt %s of %s", tracking_id, reference)
        except GatewayUnavailable as e:
            logger.warning("Could not cancel Pesapal attempt %s of %s: %s", tracking_id, reference, e)
        except Exception:
            logger.exception("Cancelling Pesapal attempt %s of %s crashed", tracking_id, reference)

    def cancel_pending_order(self, order_number: str) -> None:
        """Drop an order that was never paid."""

        def step():
            order = repository.orders.get_by_reference(order_number)
            if order.payment_status != PaymentStatus.PENDING or order.order_status != OrderStatus.PENDING_PAYMENT:
                raise TransitionNotAllowed(f"Order {order_number} can no longer be cancelled this way")
            if order.uses_gateway and order.order_tracking_id:
                self._cancel_quietly(order.order_tracking_id, order_number)
            repository.orders.delete(order)
            return order

        order = self._retrying_conflicts(step, f"cancel pending order {order_number}")
        logger.info("Deleted unpaid order %s", order_number)
        if order.stock_taken:
            send_quietly(stock_release_requested, order, reason="cancelled_before_payment")

    def cancel_confirmed_order(self, order_number: str, by_admin: bool = False, reason: str = "", notes: str = ""):
        def step():
            order = repository.orders.get_by_reference(order_number)
            if order.order_status not in CANCELLABLE_AFTER_CONFIRMATION:
                raise TransitionNotAllowed(
                    f"Order {order_number} cannot be cancelled while {order.get_order_status_display().lower()}"
                )
            now = timezone.now()
            changes = {
                "order_status": OrderStatus.CANCELLED_BY_ADMIN if by_admin else OrderStatus.CANCELLED_BY_USER,
                "cancelled_at": now,
                "cancellation_reason": reason or "",
                "cancellation_notes": notes or "",
            }
            if order.is_paid:
                changes.update(
                    refund_status=RefundStatus.PENDING,
                    refund_amount=order.amount,
                    refund_initiated_at=now,
                )
            return repository.orders.update(order, **changes)

        order = self._retrying_conflicts(step, f"cancel order {order_number}")
        logger.info("Order %s %s (refund %s)", order_number, order.order_status, order.refund_status)
        if order.stock_taken:
            send_quietly(stock_release_requested, order, reason=order.order_status)
        order_emails.send_order_cancellation(order)
        return order

    def process_refund(self, order_number: str, remarks: str = "", username: str = None):
        """Ask Pesapal to refund a cancelled, paid order."""
        order = repository.orders.get_by_reference(order_number)
        if not order.is_cancelled or order.payment_status != PaymentStatus.PAID:
            raise TransitionNotAllowed(f"Order {order_number} is not a cancelled, paid order")
        if order.refund_status not in (RefundStatus.PENDING, RefundStatus.FAILED):
            raise TransitionNotAllowed(f"Refund for {order_number} is already {order.refund_status}")
        if not (order.uses_gateway and order.confirmation_code):
            raise TransitionNotAllowed(f"Order {order_number} has no Pesapal payment to refund")

        claimed = repository.orders.update(order, refund_status=RefundStatus.PROCESSING)
        amount = claimed.refund_amount or claimed.amount
        try:
            self.gateway.refund(
                claimed.confirmation_code, amount,
                remarks or claimed.cancellation_reason or f"Refund for order {order_number}",
                username=username,
            )
        except GatewayUnavailable:
            logger.warning("Refund of %s failed at Pesapal", order_number)
            repository.orders.update(claimed, refund_status=RefundStatus.FAILED)
            raise

        refunded = repository.orders.update(
            claimed, payment_status=PaymentStatus.REFUNDED, refund_status=RefundStatus.COMPLETED,
        )
        logger.info("Refund of %s %s for %s accepted by Pesapal", refunded.currency, amount, order_number)
        return refunded


_engine = None


def get_engine() -> ReconciliationEngine:
    global _engine
    if _engine is None:
        _engine = ReconciliationEngine()
    return _engine
