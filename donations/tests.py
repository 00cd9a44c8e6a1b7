import json
import re
from datetime import timedelta
from unittest.mock import patch

from django.test import TestCase
from django.urls import reverse
from django.utils import timezone

from kapcdam.tests.fakes import FakeGateway, gateway_status, make_donation
from payments import repository
from payments.exceptions import NotFound, ValidationError
from payments.models import PaymentStatus
from payments.ratelimit import reset_webhook_rate_limiter
from payments.reconciliation import ReconciliationEngine

from .models import Donation, DonationType
from .services import create_donation, generate_donation_id


def _donor(**kwargs):
    data = {"first_name": "Amina", "last_name": "Nakato", "email": "amina@example.com", "phone": "+256700000000"}
    data.update(kwargs)
    return data


class CreateDonationTests(TestCase):
    def test_one_time_donation_waits_for_gateway(self):
        donation = create_donation(amount="50", donation_type=DonationType.ONE_TIME, **_donor())

        self.assertRegex(donation.donation_id, r"^DON-\d{4}-\d{6}$")
        self.assertEqual(donation.payment_status, PaymentStatus.NOT_INITIATED)
        self.assertEqual(donation.currency, "USD")
        self.assertIsNone(donation.order_tracking_id)
        self.assertIsNone(donation.recurring_start)

    def test_monthly_donation_defaults_start_to_now(self):
        before = timezone.now()
        donation = create_donation(amount=25, donation_type=DonationType.MONTHLY, **_donor())
        self.assertGreaterEqual(donation.recurring_start, before)
        self.assertFalse(donation.recurring_active)

    def test_monthly_end_must_follow_start(self):
        start = timezone.now()
        with self.assertRaises(ValidationError):
            create_donation(
                amount=25, donation_type=DonationType.MONTHLY,
                recurring_start=start, recurring_end=start - timedelta(days=1), **_donor(),
            )

    def test_rejects_bad_input(self):
        with self.assertRaises(ValidationError):
            create_donation(amount="0.50", donation_type=DonationType.ONE_TIME, **_donor())
        with self.assertRaises(ValidationError):
            create_donation(amount="lots", donation_type=DonationType.ONE_TIME, **_donor())
        with self.assertRaises(ValidationError):
            create_donation(amount=10, donation_type="weekly", **_donor())
        with self.assertRaises(ValidationError) as ctx:
            create_donation(amount=10, donation_type=DonationType.ONE_TIME, **_donor(email="not-an-email"))
        self.assertIn("email", ctx.exception.message)
        self.assertFalse(Donation.objects.exists())

    def test_taken_id_is_redrawn(self):
        make_donation(donation_id="DON-2026-000001")
        with patch("donations.services.generate_donation_id", side_effect=["DON-2026-000001", "DON-2026-000002"]):
            donation = create_donation(amount=10, donation_type=DonationType.ONE_TIME, **_donor())
        self.assertEqual(donation.donation_id, "DON-2026-000002")

    def test_generated_id_uses_year(self):
        now = timezone.now().replace(year=2031)
        self.assertTrue(re.match(r"^DON-2031-\d{6}$", generate_donation_id(now)))


class OneTimeDonationLifecycleTests(TestCase):
    """A one-time donation whose Pesapal payment fails is removed."""

    def setUp(self):
        reset_webhook_rate_limiter()
        self.addCleanup(reset_webhook_rate_limiter)
        self.gateway = FakeGateway()
        self.engine = ReconciliationEngine(gateway=self.gateway)

    def test_failed_payment_deletes_donation(self):
        donation = create_donation(amount=50, donation_type=DonationType.ONE_TIME, **_donor())

        submitted = self.engine.submit_payment(donation.donation_id)
        self.assertEqual(submitted.tracking_id, "track-1")
        donation.refresh_from_db()
        self.assertEqual(donation.payment_status, PaymentStatus.PENDING)
        self.assertEqual(donation.order_tracking_id, "track-1")

        self.gateway.statuses["track-1"] = gateway_status("Failed", reference=donation.donation_id)
        with patch("payments.webhook.get_engine", return_value=self.engine):
            resp = self.client.post(
                reverse("payments:pesapal_ipn"),
                data=json.dumps({
                    "OrderTrackingId": "track-1",
                    "OrderNotificationType": "IPNCHANGE",
                    "OrderMerchantReference": donation.donation_id,
                }),
                content_type="application/json",
                HTTP_USER_AGENT="Pesapal-IPN/3.0",
            )

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], 200)
        with self.assertRaises(NotFound):
            repository.donations.get_by_reference(donation.donation_id)

    def test_completed_payment_keeps_donation(self):
        donation = create_donation(amount=50, donation_type=DonationType.ONE_TIME, **_donor())
        self.engine.submit_payment(donation.donation_id)
        self.gateway.statuses["track-1"] = gateway_status(reference=donation.donation_id)

        result = self.engine.reconcile(donation.donation_id, "track-1")

        self.assertTrue(result.changed)
        donation.refresh_from_db()
        self.assertEqual(donation.payment_status, PaymentStatus.PAID)
        self.assertTrue(donation.thank_you_sent)


class DonationViewTests(TestCase):
    def setUp(self):
        self.gateway = FakeGateway()
        engine_patch = patch("donations.views.get_engine", return_value=ReconciliationEngine(gateway=self.gateway))
        engine_patch.start()
        self.addCleanup(engine_patch.stop)

    def _post(self, url, payload=None):
        return self.client.post(url, data=json.dumps(payload or {}), content_type="application/json")

    def test_create_with_nested_donor(self):
        resp = self._post(reverse("donations:create"), {
            "amount": "75.00",
            "type": "monthly",
            "donor": _donor(),
            "recurring": {"start_date": "2026-11-01T09:00:00"},
        })
        self.assertEqual(resp.status_code, 201)
        body = resp.json()["donation"]
        self.assertEqual(body["donation_type"], "monthly")
        self.assertEqual(body["payment_status"], "not_initiated")
        self.assertEqual(body["amount"], "75.00")
        self.assertEqual(body["total_donations"], 0)
        donation = Donation.objects.get(donation_id=body["donation_id"])
        self.assertEqual(donation.recurring_start.date().isoformat(), "2026-11-01")

    def test_create_with_flat_fields(self):
        resp = self._post(reverse("donations:create"), dict(amount=10, **_donor()))
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()["donation"]["donation_type"], "one_time")

    def test_create_rejects_invalid_body(self):
        resp = self.client.post(reverse("donations:create"), data="{oops", content_type="application/json")
        self.assertEqual(resp.status_code, 400)
        self.assertFalse(resp.json()["ok"])

    def test_create_rejects_donor_that_is_not_an_object(self):
        resp = self._post(reverse("donations:create"), {"amount": 10, "donor": "Amina Nakato"})
        self.assertEqual(resp.status_code, 400)
        self.assertFalse(resp.json()["ok"])

    def test_pay_returns_redirect_url(self):
        donation = make_donation()
        resp = self._post(reverse("donations:pay", args=[donation.donation_id]))

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["order_tracking_id"], "track-1")
        self.assertEqual(resp.json()["redirect_url"], "https://pay.pesapal.test/1")
        self.assertEqual(self.gateway.submitted[0]["id"], donation.donation_id)

    def test_pay_twice_is_refused(self):
        donation = make_donation()
        self._post(reverse("donations:pay", args=[donation.donation_id]))
        resp = self._post(reverse("donations:pay", args=[donation.donation_id]))
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(len(self.gateway.submitted), 1)

    def test_status(self):
        donation = make_donation(payment_status=PaymentStatus.PAID, confirmation_code="CONF1")
        resp = self.client.get(reverse("donations:status", args=[donation.donation_id]))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["donation"]["confirmation_code"], "CONF1")
        self.assertEqual(resp.json()["donation"]["donor_name"], "Amina Nakato")

    def test_status_of_unknown_donation(self):
        resp = self.client.get(reverse("donations:status", args=["DON-2026-999999"]))
        self.assertEqual(resp.status_code, 404)
