from io import StringIO
from unittest.mock import Mock, patch

from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import TestCase

from kapcdam.tests.fakes import FakeGateway, gateway_status, make_donation, make_order

from .exceptions import GatewayUnavailable
from .models import PaymentStatus
from .reconciliation import ReconciliationEngine


class ReconcilePendingPaymentsTests(TestCase):
    def setUp(self):
        self.gateway = FakeGateway()
        engine_patch = patch(
            "payments.management.commands.reconcile_pending_payments.get_engine",
            return_value=ReconciliationEngine(gateway=self.gateway),
        )
        engine_patch.start()
        self.addCleanup(engine_patch.stop)

    def _call(self, *args):
        out = StringIO()
        call_command("reconcile_pending_payments", "--sleep", "0", *args, stdout=out)
        return out.getvalue()

    def test_recent_payments_are_left_to_the_ipn(self):
        make_order(payment_status=PaymentStatus.PENDING, order_tracking_id="track-1")
        self.assertIn("No pending payments", self._call())
        self.assertEqual(self.gateway.status_calls, [])

    def test_reconciles_orders_and_donations(self):
        order = make_order(payment_status=PaymentStatus.PENDING, order_tracking_id="track-1")
        donation = make_donation(payment_status=PaymentStatus.PENDING, order_tracking_id="track-2")
        make_order(order_number="KAPC-2026-000002")
        self.gateway.statuses["track-1"] = gateway_status(reference=order.order_number)
        self.gateway.statuses["track-2"] = gateway_status("Failed", reference=donation.donation_id)

        out = self._call("--older-than-minutes", "0")

        self.assertIn(f"{order.order_number} -> paid", out)
        self.assertIn(f"{donation.donation_id}: still pending", out)
        self.assertEqual(sorted(self.gateway.status_calls), ["track-1", "track-2"])
        donation.refresh_from_db()
        self.assertEqual(donation.payment_status, PaymentStatus.PENDING)

    def test_payment_in_progress_survives_until_the_ipn(self):
        donation = make_donation(payment_status=PaymentStatus.PENDING, order_tracking_id="track-1")
        self.gateway.statuses["track-1"] = gateway_status("INVALID", reference=donation.donation_id)

        self._call("--older-than-minutes", "0")

        donation.refresh_from_db()
        self.assertEqual(donation.payment_status, PaymentStatus.PENDING)
        self.assertEqual(donation.version, 0)

    def test_gateway_errors_do_not_stop_the_batch(self):
        make_order(payment_status=PaymentStatus.PENDING, order_tracking_id="track-1")
        second = make_order(order_number="KAPC-2026-000002", payment_status=PaymentStatus.PENDING,
                            order_tracking_id="track-2")
        self.gateway.statuses["track-2"] = gateway_status(reference=second.order_number)

        out = self._call("--older-than-minutes", "0", "--kind", "orders")

        self.assertIn("KAPC-2026-000001: no status for track-1", out)
        self.assertIn("KAPC-2026-000002 -> paid", out)

    def test_kind_and_max(self):
        make_order(payment_status=PaymentStatus.PENDING, order_tracking_id="track-1")
        make_order(order_number="KAPC-2026-000002", payment_status=PaymentStatus.PENDING, order_tracking_id="track-2")
        make_donation(payment_status=PaymentStatus.PENDING, order_tracking_id="track-3")

        self._call("--older-than-minutes", "0", "--kind", "donations")
        self.assertEqual(self.gateway.status_calls, ["track-3"])

        self.gateway.status_calls.clear()
        self._call("--older-than-minutes", "0", "--max", "1")
        self.assertEqual(len(self.gateway.status_calls), 1)


class RegisterPesapalIpnTests(TestCase):
    def test_prints_notification_id(self):
        client = Mock()
        client.register_ipn.return_value = "e32182ca-0983"
        out = StringIO()
        with patch("payments.management.commands.register_pesapal_ipn.get_client", return_value=client):
            call_command("register_pesapal_ipn", stdout=out)
        client.register_ipn.assert_called_once_with(
            "https://shop.example.org/payments/pesapal/ipn", notification_type="POST",
        )
        self.assertIn("e32182ca-0983", out.getvalue())

    def test_gateway_failure(self):
        client = Mock()
        client.register_ipn.side_effect = GatewayUnavailable("invalid_consumer_key_or_secret_provided")
        with patch("payments.management.commands.register_pesapal_ipn.get_client", return_value=client):
            with self.assertRaises(CommandError):
                call_command("register_pesapal_ipn", "--url", "https://x.test/ipn", "--method", "GET")
        client.register_ipn.assert_called_once_with("https://x.test/ipn", notification_type="GET")
