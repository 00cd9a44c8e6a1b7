import json
from decimal import Decimal
from unittest.mock import patch

from django.test import TestCase, override_settings
from django.urls import reverse

from donations.models import DonationType
from kapcdam.tests.fakes import FakeGateway, gateway_status, make_donation, make_order

from .exceptions import GatewayUnavailable
from .models import GatewayNotification, PaymentStatus
from .ratelimit import reset_webhook_rate_limiter
from .reconciliation import ReconciliationEngine

PESAPAL_UA = "Pesapal-IPN/3.0"


class PesapalIpnTests(TestCase):
    def setUp(self):
        reset_webhook_rate_limiter()
        self.addCleanup(reset_webhook_rate_limiter)
        self.gateway = FakeGateway()
        engine_patch = patch("payments.webhook.get_engine", return_value=ReconciliationEngine(gateway=self.gateway))
        engine_patch.start()
        self.addCleanup(engine_patch.stop)
        self.order = make_order(payment_status=PaymentStatus.PENDING, order_tracking_id="track-1")

    def _payload(self, tracking_id="track-1", reference=None, kind="IPNCHANGE"):
        return {
            "OrderTrackingId": tracking_id,
            "OrderNotificationType": kind,
            "OrderMerchantReference": reference or self.order.order_number,
        }

    def _post(self, payload, user_agent=PESAPAL_UA, **extra):
        return self.client.post(
            reverse("payments:pesapal_ipn"),
            data=json.dumps(payload),
            content_type="application/json",
            HTTP_USER_AGENT=user_agent,
            **extra,
        )

    def test_completed_notification_marks_order_paid(self):
        self.gateway.statuses["track-1"] = gateway_status(reference=self.order.order_number)
        resp = self._post(self._payload())

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {
            "orderNotificationType": "IPNCHANGE",
            "orderTrackingId": "track-1",
            "orderMerchantReference": self.order.order_number,
            "status": 200,
        })
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PAID)
        note = GatewayNotification.objects.get()
        self.assertEqual(note.outcome, GatewayNotification.OUTCOME_PROCESSED)
        self.assertEqual(note.http_method, "POST")
        self.assertEqual(note.source_ip, "127.0.0.1")

    def test_get_notification_is_accepted(self):
        self.gateway.statuses["track-1"] = gateway_status(reference=self.order.order_number)
        resp = self.client.get(reverse("payments:pesapal_ipn"), self._payload(), HTTP_USER_AGENT=PESAPAL_UA)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], 200)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PAID)

    def test_duplicate_deliveries_are_acknowledged(self):
        self.gateway.statuses["track-1"] = gateway_status(reference=self.order.order_number)
        for _ in range(3):
            self.assertEqual(self._post(self._payload()).status_code, 200)
        self.assertEqual(self.gateway.status_calls, ["track-1"])
        self.assertEqual(GatewayNotification.objects.count(), 3)

    def test_other_methods_not_allowed(self):
        resp = self.client.put(reverse("payments:pesapal_ipn"), HTTP_USER_AGENT=PESAPAL_UA)
        self.assertEqual(resp.status_code, 405)

    def test_unexpected_user_agent(self):
        resp = self._post(self._payload(), user_agent="curl/8.0")
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(self.gateway.status_calls, [])

    def test_user_agent_match_is_case_insensitive(self):
        self.gateway.statuses["track-1"] = gateway_status(reference=self.order.order_number)
        self.assertEqual(self._post(self._payload(), user_agent="PESAPAL").status_code, 200)

    def test_post_requires_json_content_type(self):
        resp = self.client.post(
            reverse("payments:pesapal_ipn"), data="x=1", content_type="text/plain", HTTP_USER_AGENT=PESAPAL_UA,
        )
        self.assertEqual(resp.status_code, 400)

    def test_invalid_json(self):
        resp = self.client.post(
            reverse("payments:pesapal_ipn"), data="{not json", content_type="application/json",
            HTTP_USER_AGENT=PESAPAL_UA,
        )
        self.assertEqual(resp.status_code, 400)
        self.assertFalse(resp.json()["ok"])

    def test_json_body_must_be_object(self):
        resp = self._post(["track-1"])
        self.assertEqual(resp.status_code, 400)

    def test_missing_fields(self):
        payload = self._payload()
        payload["OrderMerchantReference"] = "  "
        resp = self._post(payload)
        self.assertEqual(resp.status_code, 400)
        self.assertIn("OrderMerchantReference", resp.json()["error"])
        self.assertFalse(GatewayNotification.objects.exists())

    def test_made_up_tracking_id_leaves_donation_alone(self):
        donation = make_donation()
        self.gateway.statuses["bogus"] = gateway_status("INVALID")
        resp = self._post(self._payload(tracking_id="bogus", reference=donation.donation_id, kind="CHANGE"))

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], 200)
        donation.refresh_from_db()
        self.assertEqual(donation.payment_status, PaymentStatus.NOT_INITIATED)
        self.assertEqual(donation.version, 0)

    def test_unknown_reference_is_acknowledged_as_404(self):
        resp = self._post(self._payload(reference="KAPC-2026-424242"))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], 404)
        note = GatewayNotification.objects.get()
        self.assertEqual(note.outcome, GatewayNotification.OUTCOME_REJECTED)
        self.assertEqual(note.merchant_reference, "KAPC-2026-424242")

    def test_gateway_outage_asks_for_redelivery(self):
        self.gateway.statuses["track-1"] = GatewayUnavailable("read timeout")
        with self.assertLogs("payments.webhook", level="WARNING"):
            resp = self._post(self._payload())
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json()["status"], 500)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PENDING)
        self.assertEqual(GatewayNotification.objects.get().outcome, GatewayNotification.OUTCOME_FAILED)

    def test_unexpected_error_asks_for_redelivery(self):
        self.gateway.statuses["track-1"] = RuntimeError("boom")
        with self.assertLogs("payments.webhook", level="ERROR"):
            resp = self._post(self._payload())
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json()["status"], 500)

    @override_settings(PAYMENTS_WEBHOOK_TIMEOUT=0)
    def test_deadline_exhausted_asks_for_redelivery(self):
        self.gateway.statuses["track-1"] = gateway_status(reference=self.order.order_number)
        resp = self._post(self._payload())
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(self.gateway.status_calls, [])

    @override_settings(PAYMENTS_WEBHOOK_RATE_LIMIT=2, PAYMENTS_WEBHOOK_RATE_WINDOW=60)
    def test_rate_limit_per_source_ip(self):
        self.gateway.statuses["track-1"] = gateway_status(reference=self.order.order_number)
        self.assertEqual(self._post(self._payload()).status_code, 200)
        self.assertEqual(self._post(self._payload()).status_code, 200)
        self.assertEqual(self._post(self._payload()).status_code, 429)
        self.assertEqual(self._post(self._payload(), REMOTE_ADDR="10.0.0.2").status_code, 200)

    @override_settings(PAYMENTS_WEBHOOK_RATE_LIMIT=1, PAYMENTS_TRUST_X_FORWARDED_FOR=True)
    def test_forwarded_for_is_used_when_trusted(self):
        self.gateway.statuses["track-1"] = gateway_status(reference=self.order.order_number)
        self.assertEqual(self._post(self._payload(), HTTP_X_FORWARDED_FOR="41.210.1.1, 10.0.0.1").status_code, 200)
        self.assertEqual(self._post(self._payload(), HTTP_X_FORWARDED_FOR="41.210.1.2").status_code, 200)
        self.assertTrue(GatewayNotification.objects.filter(source_ip="41.210.1.2").exists())

    def test_donation_reference_goes_to_donation(self):
        donation = make_donation(payment_status=PaymentStatus.PENDING, order_tracking_id="don-track")
        self.gateway.statuses["don-track"] = gateway_status(reference=donation.donation_id)
        resp = self._post(self._payload("don-track", donation.donation_id))
        self.assertEqual(resp.status_code, 200)
        donation.refresh_from_db()
        self.assertEqual(donation.payment_status, PaymentStatus.PAID)

    def test_recurring_notification_appends_cycle(self):
        donation = make_donation(donation_type=DonationType.MONTHLY, payment_status=PaymentStatus.PAID)
        self.gateway.statuses["cycle-5"] = gateway_status(reference=donation.donation_id, amount=Decimal("50.00"))
        resp = self._post(self._payload("cycle-5", donation.donation_id, kind="RECURRING"))
        self.assertEqual(resp.status_code, 200)
        donation.refresh_from_db()
        self.assertEqual(donation.total_donations, 1)
        self.assertEqual(donation.recurring_payments.get().gateway_tracking_id, "cycle-5")

    def test_recurring_notification_for_one_time_donation(self):
        donation = make_donation(payment_status=PaymentStatus.PAID)
        resp = self._post(self._payload("cycle-5", donation.donation_id, kind="RECURRING"))
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["status"], 400)
        self.assertEqual(GatewayNotification.objects.get().outcome, GatewayNotification.OUTCOME_REJECTED)


class PesapalCallbackTests(TestCase):
    def setUp(self):
        self.gateway = FakeGateway()
        engine_patch = patch("payments.views.get_engine", return_value=ReconciliationEngine(gateway=self.gateway))
        engine_patch.start()
        self.addCleanup(engine_patch.stop)

    def _get(self, tracking_id, reference):
        return self.client.get(
            reverse("payments:pesapal_callback"),
            {"OrderTrackingId": tracking_id, "OrderMerchantReference": reference},
        )

    def test_donation_return_reconciles_and_redirects(self):
        donation = make_donation(payment_status=PaymentStatus.PENDING, order_tracking_id="track-1")
        self.gateway.statuses["track-1"] = gateway_status(reference=donation.donation_id)
        resp = self._get("track-1", donation.donation_id)
        self.assertRedirects(resp, f"/donate/status/{donation.donation_id}", fetch_redirect_response=False)
        donation.refresh_from_db()
        self.assertEqual(donation.payment_status, PaymentStatus.PAID)

    def test_order_return_redirects_even_when_gateway_is_down(self):
        order = make_order(payment_status=PaymentStatus.PENDING, order_tracking_id="track-1")
        resp = self._get("track-1", order.order_number)
        self.assertRedirects(resp, f"/checkout/{order.order_number}", fetch_redirect_response=False)
        order.refresh_from_db()
        self.assertEqual(order.payment_status, PaymentStatus.PENDING)

    def test_unfinished_payment_is_left_for_the_ipn(self):
        donation = make_donation(payment_status=PaymentStatus.PENDING, order_tracking_id="track-1")
        self.gateway.statuses["track-1"] = gateway_status("INVALID", reference=donation.donation_id)
        resp = self._get("track-1", donation.donation_id)
        self.assertRedirects(resp, f"/donate/status/{donation.donation_id}", fetch_redirect_response=False)
        donation.refresh_from_db()
        self.assertEqual(donation.payment_status, PaymentStatus.PENDING)
        self.assertEqual(donation.version, 0)

    def test_missing_parameters(self):
        resp = self.client.get(reverse("payments:pesapal_callback"))
        self.assertEqual(resp.status_code, 400)

    def test_unknown_reference(self):
        self.assertEqual(self._get("track-1", "KAPC-2026-555555").status_code, 400)
