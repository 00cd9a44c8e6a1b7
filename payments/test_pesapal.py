import time
from decimal import Decimal
from unittest.mock import patch

import jwt
from django.core.cache import cache
from django.test import TestCase, override_settings
from requests import ConnectionError as RequestsConnectionError, Timeout

from .exceptions import DeadlineExceeded, GatewayUnavailable
from .integrations.pesapal import PesapalClient, PesapalTokenProvider, TransactionStatus


class FakeResponse:
    def __init__(self, status_code=200, data=None, text=""):
        self.status_code = status_code
        self._data = data
        self.text = text

    def json(self):
        if self._data is None:
            raise ValueError("No JSON object could be decoded")
        return self._data


SIGNING_KEY = "test-signing-key-not-used-by-pesapal-00"


def _token(expires_in=300):
    claims = {"exp": int(time.time()) + expires_in, "sub": "merchant"}
    return jwt.encode(claims, SIGNING_KEY, algorithm="HS256")


STATUS_BODY = {
    "payment_method": "Visa",
    "amount": 50.0,
    "confirmation_code": "7EF9C1",
    "payment_status_description": "Completed",
    "description": "",
    "merchant_reference": "DON-2026-000001",
    "currency": "USD",
    "status": "200",
    "error": {"error_type": None, "code": None, "message": None},
}


class TokenProviderTests(TestCase):
    def setUp(self):
        self.provider = PesapalTokenProvider(base_url="https://pesapal.test/api", consumer_key="k", consumer_secret="s")

    def test_token_is_cached_until_near_expiry(self):
        with patch("payments.integrations.pesapal.requests.post",
                   return_value=FakeResponse(data={"token": _token(300), "status": "200"})) as post:
            first = self.provider()
            second = self.provider()
        self.assertEqual(first, second)
        post.assert_called_once()
        self.assertEqual(post.call_args.args[0], "https://pesapal.test/api/Auth/RequestToken")
        self.assertEqual(post.call_args.kwargs["json"], {"consumer_key": "k", "consumer_secret": "s"})

    def test_token_close_to_expiry_is_refreshed(self):
        with patch("payments.integrations.pesapal.requests.post",
                   return_value=FakeResponse(data={"token": _token(30)})) as post:
            self.provider()
            self.provider()
        self.assertEqual(post.call_count, 2)

    def test_expiry_date_used_for_opaque_tokens(self):
        expiry = PesapalTokenProvider._expiry_of("opaque", "2030-01-01T00:00:00Z")
        self.assertEqual(expiry, 1893456000.0)

    def test_invalidate_forces_new_token(self):
        with patch("payments.integrations.pesapal.requests.post",
                   return_value=FakeResponse(data={"token": _token(300)})) as post:
            self.provider()
            self.provider.invalidate()
            self.provider()
        self.assertEqual(post.call_count, 2)

    def test_token_http_error(self):
        with patch("payments.integrations.pesapal.requests.post", return_value=FakeResponse(500, text="oops")):
            with self.assertRaises(GatewayUnavailable):
                self.provider()

    def test_token_error_object(self):
        body = {"token": None, "error": {"code": "invalid_consumer_key_or_secret_provided", "message": "bad"}}
        with patch("payments.integrations.pesapal.requests.post", return_value=FakeResponse(data=body)):
            with self.assertRaises(GatewayUnavailable):
                self.provider()

    def test_missing_credentials(self):
        provider = PesapalTokenProvider(base_url="https://pesapal.test/api", consumer_key="", consumer_secret="")
        with patch("payments.integrations.pesapal.requests.post") as post:
            with self.assertRaises(GatewayUnavailable):
                provider()
        post.assert_not_called()


class PesapalClientTests(TestCase):
    def setUp(self):
        self.client_api = PesapalClient(
            base_url="https://pesapal.test/api", token_provider=lambda: "tok", status_retries=3, backoff=0.5,
        )
        sleep_patch = patch("payments.integrations.pesapal.time.sleep")
        self.sleep = sleep_patch.start()
        self.addCleanup(sleep_patch.stop)

    def test_status_query(self):
        with patch("payments.integrations.pesapal.requests.request", return_value=FakeResponse(data=STATUS_BODY)) as req:
            status = self.client_api.get_transaction_status("track-1")

        self.assertTrue(status.is_completed)
        self.assertEqual(status.confirmation_code, "7EF9C1")
        self.assertEqual(status.amount, Decimal("50.0"))
        self.assertEqual(status.merchant_reference, "DON-2026-000001")
        method, url = req.call_args.args
        self.assertEqual((method, url), ("GET", "https://pesapal.test/api/Transactions/GetTransactionStatus"))
        self.assertEqual(req.call_args.kwargs["params"], {"orderTrackingId": "track-1"})
        self.assertEqual(req.call_args.kwargs["headers"]["Authorization"], "Bearer tok")

    def test_status_query_retries_transient_errors(self):
        responses = [Timeout("read timed out"), FakeResponse(503, text="busy"), FakeResponse(data=STATUS_BODY)]
        with patch("payments.integrations.pesapal.requests.request", side_effect=responses) as req:
            status = self.client_api.get_transaction_status("track-1")
        self.assertTrue(status.is_completed)
        self.assertEqual(req.call_count, 3)
        self.assertEqual([c.args[0] for c in self.sleep.call_args_list], [0.5, 1.0])

    def test_status_query_gives_up_after_retries(self):
        with patch("payments.integrations.pesapal.requests.request",
                   side_effect=RequestsConnectionError("refused")) as req:
            with self.assertRaises(GatewayUnavailable):
                self.client_api.get_transaction_status("track-1")
        self.assertEqual(req.call_count, 3)

    def test_status_query_stops_at_deadline(self):
        with patch("payments.integrations.pesapal.requests.request",
                   side_effect=RequestsConnectionError("refused")) as req:
            with self.assertRaises(GatewayUnavailable):
                self.client_api.get_transaction_status("track-1", timeout=0.1)
        # the first backoff would run past the deadline
        self.assertEqual(req.call_count, 1)
        self.assertLessEqual(req.call_args.kwargs["timeout"], 0.1)

    def test_status_query_without_time_left(self):
        with patch("payments.integrations.pesapal.requests.request") as req:
            with self.assertRaises(DeadlineExceeded):
                self.client_api.get_transaction_status("track-1", timeout=-1)
        req.assert_not_called()

    def test_non_json_body(self):
        with patch("payments.integrations.pesapal.requests.request", return_value=FakeResponse(200, data=None)):
            with self.assertRaises(GatewayUnavailable):
                PesapalClient(base_url="https://pesapal.test/api", token_provider=lambda: "tok",
                              status_retries=1).get_transaction_status("track-1")

    def test_submit_order_is_never_retried(self):
        with patch("payments.integrations.pesapal.requests.request", side_effect=Timeout("slow")) as req:
            with self.assertRaises(GatewayUnavailable):
                self.client_api.submit_order({"id": "KAPC-2026-000001", "amount": Decimal("10")})
        req.assert_called_once()
        self.sleep.assert_not_called()

    def test_submit_order(self):
        body = {
            "order_tracking_id": "b945e4af-80a5-4ec1-8706-e03f8332fb04",
            "merchant_reference": "KAPC-2026-000001",
            "redirect_url": "https://cybqa.pesapal.com/pesapaliframe/PesapalIframe3/Index/?OrderTrackingId=b945",
            "error": None,
            "status": "200",
        }
        with patch("payments.integrations.pesapal.requests.request", return_value=FakeResponse(data=body)) as req:
            submitted = self.client_api.submit_order({"id": "KAPC-2026-000001", "amount": Decimal("10.5")})
        self.assertEqual(submitted.tracking_id, body["order_tracking_id"])
        self.assertEqual(submitted.redirect_url, body["redirect_url"])
        self.assertEqual(req.call_args.kwargs["json"]["amount"], 10.5)

    def test_error_object_in_200_response(self):
        body = {"error": {"error_type": "api_error", "code": "duplicate_order_reference", "message": "dup"}}
        with patch("payments.integrations.pesapal.requests.request", return_value=FakeResponse(data=body)):
            with self.assertRaises(GatewayUnavailable):
                self.client_api.submit_order({"id": "KAPC-2026-000001", "amount": 10})

    def test_unauthorized_invalidates_token(self):
        provider = PesapalTokenProvider(base_url="https://pesapal.test/api", consumer_key="k", consumer_secret="s")
        api = PesapalClient(base_url="https://pesapal.test/api", token_provider=provider, status_retries=1)
        with patch("payments.integrations.pesapal.requests.post",
                   return_value=FakeResponse(data={"token": _token(300)})) as post, \
                patch("payments.integrations.pesapal.requests.request", return_value=FakeResponse(401, text="expired")):
            with self.assertRaises(GatewayUnavailable):
                api.get_transaction_status("track-1")
            provider()
        self.assertEqual(post.call_count, 2)

    def test_refund(self):
        with patch("payments.integrations.pesapal.requests.request",
                   return_value=FakeResponse(data={"status": "200", "message": "Refund request successfully"})) as req:
            self.client_api.refund("7EF9C1", Decimal("30000"), "Order cancelled", username="ops")
        self.assertEqual(req.call_args.kwargs["json"], {
            "confirmation_code": "7EF9C1", "amount": 30000.0, "username": "ops", "remarks": "Order cancelled",
        })

    def test_refund_rejected(self):
        with patch("payments.integrations.pesapal.requests.request",
                   return_value=FakeResponse(data={"status": "500", "message": "Refund exceeds amount"})):
            with self.assertRaises(GatewayUnavailable):
                self.client_api.refund("7EF9C1", 1, "x")

    def test_cancel(self):
        with patch("payments.integrations.pesapal.requests.request",
                   return_value=FakeResponse(data={"status": "200", "message": "Order Cancellation successful"})) as req:
            self.client_api.cancel("track-1")
        self.assertEqual(req.call_args.kwargs["json"], {"order_tracking_id": "track-1"})


class NotificationIdTests(TestCase):
    def setUp(self):
        cache.clear()
        self.api = PesapalClient(base_url="https://pesapal.test/api", token_provider=lambda: "tok")

    def test_configured_id_wins(self):
        with patch("payments.integrations.pesapal.requests.request") as req:
            self.assertEqual(self.api.notification_id(), "ipn-test")
        req.assert_not_called()

    @override_settings(PESAPAL_IPN_ID="")
    def test_registers_once_and_caches(self):
        body = {"url": "https://shop.example.org/payments/pesapal/ipn", "ipn_id": "e32182ca-0983", "status": "200"}
        with patch("payments.integrations.pesapal.requests.request", return_value=FakeResponse(data=body)) as req:
            self.assertEqual(self.api.notification_id(), "e32182ca-0983")
            self.assertEqual(self.api.notification_id(), "e32182ca-0983")
        req.assert_called_once()
        self.assertEqual(req.call_args.kwargs["json"], {
            "url": "https://shop.example.org/payments/pesapal/ipn", "ipn_notification_type": "POST",
        })


class TransactionStatusTests(TestCase):
    def test_completed_is_case_insensitive(self):
        self.assertTrue(TransactionStatus.from_response({"payment_status_description": "COMPLETED"}).is_completed)
        self.assertTrue(TransactionStatus.from_response({"payment_status_description": " completed "}).is_completed)
        self.assertFalse(TransactionStatus.from_response({"payment_status_description": "Reversed"}).is_completed)
        self.assertFalse(TransactionStatus.from_response({}).is_completed)

    def test_bad_amount_is_dropped(self):
        self.assertIsNone(TransactionStatus.from_response({"amount": "n/a"}).amount)
