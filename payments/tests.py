from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import Mock, patch

from django.core import mail
from django.db.models import Sum
from django.test import TestCase

from donations.models import DonationType, RecurringPayment
from kapcdam.tests.fakes import FakeGateway, gateway_status, make_donation, make_order
from orders.models import OrderStatus
from orders.signals import order_paid

from . import repository
from .exceptions import (
    Conflict, DeadlineExceeded, GatewayUnavailable, InvariantViolation, NotFound, TransitionNotAllowed,
    ValidationError,
)
from .models import PaymentMethod, PaymentStatus, check_transition
from .reconciliation import Deadline, ReconciliationEngine


class TransitionTableTests(TestCase):
    def test_allowed_transitions(self):
        check_transition(PaymentStatus.NOT_INITIATED, PaymentStatus.PENDING)
        check_transition(PaymentStatus.PENDING, PaymentStatus.PAID)
        check_transition(PaymentStatus.FAILED, PaymentStatus.PAID)
        check_transition(PaymentStatus.PAID, PaymentStatus.REFUNDED)
        check_transition(PaymentStatus.PAID, PaymentStatus.PAID)

    def test_paid_never_goes_back(self):
        for target in (PaymentStatus.NOT_INITIATED, PaymentStatus.PENDING, PaymentStatus.FAILED):
            with self.assertRaises(InvariantViolation):
                check_transition(PaymentStatus.PAID, target)
        with self.assertRaises(InvariantViolation):
            check_transition(PaymentStatus.REFUNDED, PaymentStatus.PAID)


class RepositoryTests(TestCase):
    def test_update_bumps_version(self):
        order = make_order()
        updated = repository.orders.update(order, payment_status=PaymentStatus.PENDING)
        self.assertEqual(updated.version, 1)
        self.assertEqual(updated.payment_status, PaymentStatus.PENDING)

    def test_stale_update_conflicts(self):
        order = make_order()
        repository.orders.update(order, payment_status=PaymentStatus.PENDING)
        with self.assertRaises(Conflict):
            repository.orders.update(order, payment_status=PaymentStatus.FAILED)
        order.refresh_from_db()
        self.assertEqual(order.payment_status, PaymentStatus.PENDING)

    def test_update_rejects_illegal_transition(self):
        order = make_order(payment_status=PaymentStatus.PAID)
        with self.assertRaises(InvariantViolation):
            repository.orders.update(order, payment_status=PaymentStatus.PENDING)

    def test_lookup_by_tracking_id(self):
        order = make_order(order_tracking_id="track-9")
        self.assertEqual(repository.orders.get_by_tracking_id("track-9").pk, order.pk)
        with self.assertRaises(NotFound):
            repository.orders.get_by_tracking_id("nope")

    def test_conflicting_ledger_append_is_rolled_back(self):
        donation = make_donation(donation_type=DonationType.MONTHLY)
        repository.donations.update(donation, recurring_active=True)
        entry = {"payment_date": donation.created_at, "amount": Decimal("50.00"), "gateway_tracking_id": "t"}
        with self.assertRaises(Conflict):
            repository.donations.append_ledger_entry(donation, entry)
        self.assertFalse(RecurringPayment.objects.exists())

    def test_delete_conflicts_when_row_moved(self):
        order = make_order()
        repository.orders.update(order, customer_phone="+256722222222")
        with self.assertRaises(Conflict):
            repository.orders.delete(order)
        repository.orders.delete(repository.orders.get_by_reference(order.order_number))
        with self.assertRaises(NotFound):
            repository.orders.get_by_reference(order.order_number)

    def test_repository_is_chosen_by_prefix(self):
        self.assertIs(repository.repository_for_reference("DON-2026-123456"), repository.donations)
        self.assertIs(repository.repository_for_reference("KAPC-2026-000001"), repository.orders)


class ReconcileOrderTests(TestCase):
    def setUp(self):
        self.order = make_order(payment_status=PaymentStatus.PENDING, order_tracking_id="track-1")
        self.gateway = FakeGateway({
            "track-1": gateway_status(reference=self.order.order_number, amount=Decimal("30000.00")),
        })
        self.engine = ReconciliationEngine(gateway=self.gateway)

    def test_completed_marks_paid(self):
        result = self.engine.reconcile(self.order.order_number, "track-1")

        self.assertTrue(result.changed)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PAID)
        self.assertIsNotNone(self.order.paid_at)
        self.assertEqual(self.order.transaction_id, "track-1")
        self.assertEqual(self.order.confirmation_code, "CONF123")
        self.assertEqual(self.order.gateway_payment_method, "Visa")
        self.assertEqual(self.order.gateway_payload["payment_status_description"], "Completed")
        # fulfillment owns order_status
        self.assertEqual(self.order.order_status, OrderStatus.PENDING_PAYMENT)
        self.assertEqual(len(mail.outbox), 2)
        self.assertIn(self.order.order_number, mail.outbox[0].subject)
        self.assertEqual(mail.outbox[0].to, ["peter@example.com"])
        self.assertEqual(mail.outbox[1].to, ["admin@kapcdam.org"])

    def test_redelivery_is_idempotent(self):
        self.engine.reconcile(self.order.order_number, "track-1")
        self.order.refresh_from_db()
        paid_at, version = self.order.paid_at, self.order.version

        for _ in range(3):
            result = self.engine.reconcile(self.order.order_number, "track-1")
            self.assertFalse(result.changed)

        self.order.refresh_from_db()
        self.assertEqual(self.order.paid_at, paid_at)
        self.assertEqual(self.order.version, version)
        self.assertEqual(self.gateway.status_calls, ["track-1"])
        self.assertEqual(len(mail.outbox), 2)

    def test_order_paid_signal_fires_once(self):
        received = []

        def receiver(sender, order, **kwargs):
            received.append(order.order_number)

        order_paid.connect(receiver, weak=False)
        self.addCleanup(order_paid.disconnect, receiver)
        self.engine.reconcile(self.order.order_number, "track-1")
        self.engine.reconcile(self.order.order_number, "track-1")
        self.assertEqual(received, [self.order.order_number])

    def test_gateway_outage_writes_nothing(self):
        self.gateway.statuses["track-1"] = GatewayUnavailable("timeout")
        with self.assertRaises(GatewayUnavailable):
            self.engine.reconcile(self.order.order_number, "track-1")
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PENDING)
        self.assertEqual(self.order.version, 0)
        self.assertEqual(mail.outbox, [])

    def test_failed_status_marks_failed_and_keeps_order(self):
        self.gateway.statuses["track-1"] = gateway_status("Failed", reference=self.order.order_number)
        result = self.engine.reconcile(self.order.order_number, "track-1")
        self.assertFalse(result.deleted)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.FAILED)
        self.assertEqual(self.order.failure_reason, "Failed")

    def test_repeated_failure_is_not_rewritten(self):
        self.gateway.statuses["track-1"] = gateway_status("Failed", reference=self.order.order_number)
        self.engine.reconcile(self.order.order_number, "track-1")
        self.engine.reconcile(self.order.order_number, "track-1")
        self.order.refresh_from_db()
        self.assertEqual(self.order.version, 1)

    def test_late_completion_after_failure_is_applied(self):
        repository.orders.update(self.order, payment_status=PaymentStatus.FAILED)
        self.engine.reconcile(self.order.order_number, "track-1")
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PAID)

    def test_paid_and_refunded_orders_never_regress(self):
        for number, status in (("KAPC-2026-000010", PaymentStatus.PAID), ("KAPC-2026-000011", PaymentStatus.REFUNDED)):
            order = make_order(order_number=number, payment_status=status, order_tracking_id=f"t-{number}")
            self.gateway.statuses[f"t-{number}"] = gateway_status("Failed", reference=number)
            result = self.engine.reconcile(number, f"t-{number}")
            self.assertEqual(result.payment_status, status)
            order.refresh_from_db()
            self.assertEqual(order.payment_status, status)
            self.assertEqual(order.version, 0)

    def test_unknown_reference(self):
        with self.assertRaises(NotFound):
            self.engine.reconcile("KAPC-2026-999999", "track-1")

    def test_tracking_id_of_another_payable_is_rejected(self):
        self.gateway.statuses["track-x"] = gateway_status(reference="KAPC-2026-000777")
        with self.assertRaises(ValidationError):
            self.engine.reconcile(self.order.order_number, "track-x")
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PENDING)

    def test_failure_of_superseded_attempt_is_ignored(self):
        self.gateway.statuses["old-track"] = gateway_status("Failed", reference=self.order.order_number)
        result = self.engine.reconcile(self.order.order_number, "old-track")
        self.assertFalse(result.changed)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PENDING)
        self.assertEqual(self.order.order_tracking_id, "track-1")

    def test_completion_of_superseded_attempt_is_applied(self):
        self.gateway.statuses["old-track"] = gateway_status(reference=self.order.order_number)
        self.engine.reconcile(self.order.order_number, "old-track")
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PAID)
        self.assertEqual(self.order.order_tracking_id, "old-track")

    def test_expired_deadline_skips_gateway(self):
        deadline = Deadline(-1)
        with self.assertRaises(DeadlineExceeded):
            self.engine.reconcile(self.order.order_number, "track-1", deadline=deadline)
        self.assertEqual(self.gateway.status_calls, [])

    def test_deadline_passing_during_query_prevents_write(self):
        deadline = Mock()
        deadline.remaining.side_effect = [5.0, 0.0]
        with self.assertRaises(DeadlineExceeded):
            self.engine.reconcile(self.order.order_number, "track-1", deadline=deadline)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PENDING)


class ConcurrentDeliveryTests(TestCase):
    """Two deliveries for one tracking id, the second landing while the first waits on Pesapal."""

    def setUp(self):
        self.donation = make_donation(
            donation_type=DonationType.MONTHLY, payment_status=PaymentStatus.PENDING, order_tracking_id="track-1",
        )
        self.completed = gateway_status(reference=self.donation.donation_id, amount=Decimal("50.00"))
        self.gateway = FakeGateway()

    def _racing_status(self, engine):
        calls = []

        def status():
            calls.append(1)
            if len(calls) == 1:
                engine.reconcile(self.donation.donation_id, "track-1")
            return self.completed

        return status

    def test_only_one_delivery_wins(self):
        engine = ReconciliationEngine(gateway=self.gateway)
        self.gateway.statuses["track-1"] = self._racing_status(engine)

        result = engine.reconcile(self.donation.donation_id, "track-1")

        self.assertFalse(result.changed)
        self.donation.refresh_from_db()
        self.assertEqual(self.donation.payment_status, PaymentStatus.PAID)
        self.assertEqual(self.donation.recurring_payments.count(), 1)
        self.assertEqual(self.donation.total_donations, 1)
        self.assertEqual(self.donation.total_amount, Decimal("50.00"))
        self.assertEqual(len(mail.outbox), 1)

    def test_conflict_surfaces_when_retries_are_exhausted(self):
        engine = ReconciliationEngine(gateway=self.gateway, max_conflict_retries=0)
        self.gateway.statuses["track-1"] = self._racing_status(engine)
        with self.assertRaises(Conflict):
            engine.reconcile(self.donation.donation_id, "track-1")
        self.assertEqual(self.donation.recurring_payments.count(), 1)


class ReconcileDonationTests(TestCase):
    def setUp(self):
        self.gateway = FakeGateway()
        self.engine = ReconciliationEngine(gateway=self.gateway)

    def assertLedgerConsistent(self, donation):
        donation.refresh_from_db()
        ledger = donation.recurring_payments.all()
        self.assertEqual(ledger.count(), donation.total_donations)
        self.assertEqual(ledger.aggregate(s=Sum("amount"))["s"] or Decimal("0"), donation.total_amount)

    def test_one_time_paid_sends_thank_you(self):
        donation = make_donation(payment_status=PaymentStatus.PENDING, order_tracking_id="track-1")
        self.gateway.statuses["track-1"] = gateway_status(reference=donation.donation_id)
        self.engine.reconcile(donation.donation_id, "track-1")
        donation.refresh_from_db()
        self.assertEqual(donation.payment_status, PaymentStatus.PAID)
        self.assertTrue(donation.thank_you_sent)
        self.assertFalse(donation.recurring_payments.exists())
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ["amina@example.com"])

    def test_one_time_failure_deletes_donation(self):
        donation = make_donation(payment_status=PaymentStatus.PENDING, order_tracking_id="track-1")
        self.gateway.statuses["track-1"] = gateway_status("Failed", reference=donation.donation_id)
        result = self.engine.reconcile(donation.donation_id, "track-1")
        self.assertEqual(result.payment_status, PaymentStatus.FAILED)
        self.assertTrue(result.deleted)
        with self.assertRaises(NotFound):
            repository.donations.get_by_reference(donation.donation_id)

    def test_monthly_failure_keeps_donation(self):
        donation = make_donation(
            donation_type=DonationType.MONTHLY, payment_status=PaymentStatus.PENDING, order_tracking_id="track-1",
        )
        self.gateway.statuses["track-1"] = gateway_status("Invalid", reference=donation.donation_id)
        result = self.engine.reconcile(donation.donation_id, "track-1")
        self.assertFalse(result.deleted)
        donation.refresh_from_db()
        self.assertEqual(donation.payment_status, PaymentStatus.FAILED)

    def test_failed_cleanup_errors_are_logged(self):
        donation = make_donation(payment_status=PaymentStatus.PENDING, order_tracking_id="track-1")
        self.gateway.statuses["track-1"] = gateway_status("Failed", reference=donation.donation_id)
        with self.assertLogs("payments.reconciliation", level="ERROR"):
            with patch.object(repository.donations, "delete", side_effect=RuntimeError("db down")):
                result = self.engine.reconcile(donation.donation_id, "track-1")
        self.assertFalse(result.deleted)
        donation.refresh_from_db()
        self.assertEqual(donation.payment_status, PaymentStatus.FAILED)

    def test_unsubmitted_donation_ignores_unknown_attempt(self):
        donation = make_donation()
        self.gateway.statuses["bogus"] = gateway_status("INVALID")
        result = self.engine.reconcile(donation.donation_id, "bogus")
        self.assertFalse(result.changed)
        self.assertFalse(result.deleted)
        donation.refresh_from_db()
        self.assertEqual(donation.payment_status, PaymentStatus.NOT_INITIATED)
        self.assertEqual(donation.version, 0)

    def test_failure_must_name_the_donation(self):
        donation = make_donation(payment_status=PaymentStatus.PENDING, order_tracking_id="track-1")
        self.gateway.statuses["track-1"] = gateway_status("INVALID")
        with self.assertLogs("payments.reconciliation", level="WARNING"):
            result = self.engine.reconcile(donation.donation_id, "track-1")
        self.assertFalse(result.changed)
        donation.refresh_from_db()
        self.assertEqual(donation.payment_status, PaymentStatus.PENDING)

    def test_final_only_leaves_unfinished_payment(self):
        donation = make_donation(payment_status=PaymentStatus.PENDING, order_tracking_id="track-1")
        self.gateway.statuses["track-1"] = gateway_status("INVALID", reference=donation.donation_id)
        result = self.engine.reconcile(donation.donation_id, "track-1", final_only=True)
        self.assertFalse(result.changed)
        self.assertEqual(result.payment_status, PaymentStatus.PENDING)
        donation.refresh_from_db()
        self.assertEqual(donation.version, 0)

    def test_final_only_applies_completion(self):
        donation = make_donation(payment_status=PaymentStatus.PENDING, order_tracking_id="track-1")
        self.gateway.statuses["track-1"] = gateway_status(reference=donation.donation_id)
        result = self.engine.reconcile(donation.donation_id, "track-1", final_only=True)
        self.assertTrue(result.changed)
        donation.refresh_from_db()
        self.assertEqual(donation.payment_status, PaymentStatus.PAID)

    def test_monthly_first_payment_starts_ledger(self):
        donation = make_donation(
            donation_type=DonationType.MONTHLY, payment_status=PaymentStatus.PENDING, order_tracking_id="track-1",
        )
        self.gateway.statuses["track-1"] = gateway_status(reference=donation.donation_id, amount=Decimal("50.00"))
        self.engine.reconcile(donation.donation_id, "track-1")

        donation.refresh_from_db()
        self.assertEqual(donation.payment_status, PaymentStatus.PAID)
        self.assertTrue(donation.recurring_active)
        entry = donation.recurring_payments.get()
        self.assertTrue(entry.is_initial_payment)
        self.assertEqual(entry.gateway_tracking_id, "track-1")
        self.assertEqual(donation.next_donation_date - donation.last_donation_date, timedelta(days=30))
        self.assertLedgerConsistent(donation)

    def test_recurring_cycles_extend_ledger(self):
        donation = make_donation(
            donation_type=DonationType.MONTHLY, payment_status=PaymentStatus.PENDING, order_tracking_id="track-1",
        )
        self.gateway.statuses["track-1"] = gateway_status(reference=donation.donation_id, amount=Decimal("50.00"))
        self.engine.reconcile(donation.donation_id, "track-1")

        for n in (2, 3):
            self.gateway.statuses[f"cycle-{n}"] = gateway_status(
                reference=donation.donation_id, amount=Decimal("50.00"), confirmation_code=f"C{n}",
            )
            result = self.engine.reconcile_recurring(donation.donation_id, f"cycle-{n}")
            self.assertTrue(result.changed)
            self.assertLedgerConsistent(donation)

        donation.refresh_from_db()
        self.assertEqual(donation.total_donations, 3)
        self.assertEqual(donation.total_amount, Decimal("150.00"))
        self.assertEqual(donation.recurring_payments.filter(is_initial_payment=True).count(), 1)
        # the thank-you goes out for the first payment only
        self.assertEqual(len(mail.outbox), 1)

    def test_recurring_cycle_not_completed_appends_nothing(self):
        donation = make_donation(donation_type=DonationType.MONTHLY, payment_status=PaymentStatus.PAID)
        self.gateway.statuses["cycle-2"] = gateway_status("Failed", reference=donation.donation_id)
        result = self.engine.reconcile_recurring(donation.donation_id, "cycle-2")
        self.assertFalse(result.changed)
        self.assertLedgerConsistent(donation)
        self.assertEqual(donation.total_donations, 0)
        self.assertEqual(donation.payment_status, PaymentStatus.PAID)

    def test_recurring_before_initial_confirmation_marks_paid(self):
        donation = make_donation(
            donation_type=DonationType.MONTHLY, payment_status=PaymentStatus.PENDING, order_tracking_id="track-1",
        )
        self.gateway.statuses["cycle-1"] = gateway_status(reference=donation.donation_id, amount=Decimal("50.00"))
        self.engine.reconcile_recurring(donation.donation_id, "cycle-1")
        donation.refresh_from_db()
        self.assertEqual(donation.payment_status, PaymentStatus.PAID)
        self.assertTrue(donation.recurring_payments.get().is_initial_payment)
        self.assertLedgerConsistent(donation)

    def test_recurring_for_one_time_donation_is_invalid(self):
        donation = make_donation(payment_status=PaymentStatus.PAID)
        with self.assertRaises(ValidationError):
            self.engine.reconcile_recurring(donation.donation_id, "cycle-2")
        self.assertEqual(self.gateway.status_calls, [])


class SubmitPaymentTests(TestCase):
    def setUp(self):
        self.gateway = FakeGateway()
        self.engine = ReconciliationEngine(gateway=self.gateway)

    def test_submit_claims_and_records_tracking_id(self):
        order = make_order(shipping_address="Plot 4 Kampala Rd", city="Kampala")
        submitted = self.engine.submit_payment(order.order_number)

        self.assertEqual(submitted.tracking_id, "track-1")
        self.assertEqual(submitted.redirect_url, "https://pay.pesapal.test/1")
        order.refresh_from_db()
        self.assertEqual(order.payment_status, PaymentStatus.PENDING)
        self.assertEqual(order.order_tracking_id, "track-1")

        payload = self.gateway.submitted[0]
        self.assertEqual(payload["id"], order.order_number)
        self.assertEqual(payload["notification_id"], "ipn-test")
        self.assertEqual(payload["callback_url"], "https://shop.example.org/payments/pesapal/callback")
        self.assertEqual(payload["billing_address"]["first_name"], "Peter")
        self.assertEqual(payload["billing_address"]["last_name"], "Okello")
        self.assertEqual(payload["billing_address"]["city"], "Kampala")
        self.assertNotIn("subscription_details", payload)

    def test_second_submit_is_refused(self):
        order = make_order()
        self.engine.submit_payment(order.order_number)
        with self.assertRaises(TransitionNotAllowed):
            self.engine.submit_payment(order.order_number)
        self.assertEqual(len(self.gateway.submitted), 1)

    def test_cash_on_delivery_is_not_submitted(self):
        order = make_order(payment_method=PaymentMethod.CASH_ON_DELIVERY, payment_status=PaymentStatus.PENDING)
        with self.assertRaises(TransitionNotAllowed):
            self.engine.submit_payment(order.order_number)
        self.assertEqual(self.gateway.submitted, [])

    def test_gateway_failure_leaves_payable_pending(self):
        order = make_order()
        self.gateway.submit_error = GatewayUnavailable("HTTP 503")
        with self.assertRaises(GatewayUnavailable):
            self.engine.submit_payment(order.order_number)
        order.refresh_from_db()
        self.assertEqual(order.payment_status, PaymentStatus.PENDING)
        self.assertIsNone(order.order_tracking_id)

        self.gateway.submit_error = None
        submitted = self.engine.retry_payment(order.order_number)
        self.assertEqual(self.gateway.cancelled, [])
        order.refresh_from_db()
        self.assertEqual(order.order_tracking_id, submitted.tracking_id)

    def test_monthly_donation_sends_subscription(self):
        donation = make_donation(donation_type=DonationType.MONTHLY)
        self.engine.submit_payment(donation.donation_id)
        payload = self.gateway.submitted[0]
        self.assertEqual(payload["account_number"], donation.donation_id)
        details = payload["subscription_details"]
        self.assertEqual(details["frequency"], "MONTHLY")
        start = datetime.strptime(details["start_date"], "%d-%m-%Y")
        end = datetime.strptime(details["end_date"], "%d-%m-%Y")
        self.assertEqual((end - start).days, 365)


class RetryPaymentTests(TestCase):
    def setUp(self):
        self.gateway = FakeGateway()
        self.engine = ReconciliationEngine(gateway=self.gateway)

    def test_retry_after_failure_replaces_tracking_id(self):
        order = make_order(payment_status=PaymentStatus.FAILED, order_tracking_id="old-track")
        submitted = self.engine.retry_payment(order.order_number)

        self.assertEqual(len(self.gateway.submitted), 1)
        order.refresh_from_db()
        self.assertEqual(order.payment_status, PaymentStatus.PENDING)
        self.assertEqual(order.order_tracking_id, submitted.tracking_id)
        self.assertNotEqual(order.order_tracking_id, "old-track")
        with self.assertRaises(NotFound):
            repository.orders.get_by_tracking_id("old-track")
        # a failed attempt is already closed at Pesapal
        self.assertEqual(self.gateway.cancelled, [])

    def test_retry_while_pending_cancels_open_attempt(self):
        order = make_order(payment_status=PaymentStatus.PENDING, order_tracking_id="old-track")
        self.gateway.cancel_error = GatewayUnavailable("HTTP 500")
        self.engine.retry_payment(order.order_number)
        self.assertEqual(self.gateway.cancelled, ["old-track"])
        order.refresh_from_db()
        self.assertEqual(order.order_tracking_id, "track-1")

    def test_paid_order_cannot_retry(self):
        order = make_order(payment_status=PaymentStatus.PAID, order_tracking_id="t")
        with self.assertRaises(TransitionNotAllowed):
            self.engine.retry_payment(order.order_number)

    def test_cancelled_order_cannot_retry(self):
        order = make_order(payment_status=PaymentStatus.FAILED, order_status=OrderStatus.CANCELLED_BY_USER)
        with self.assertRaises(TransitionNotAllowed):
            self.engine.retry_payment(order.order_number)
