"""Pesapal API v3 client.

Every failure to get a definitive answer from Pesapal is raised as
``GatewayUnavailable``. Callers must read that as "status unknown", not as a
failed payment.
"""
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

import jwt
import requests
from django.conf import settings
from django.core.cache import cache
from requests import RequestException

from payments.exceptions import DeadlineExceeded, GatewayUnavailable

logger = logging.getLogger(__name__)

COMMON_HEADERS = {"Accept": "application/json", "Content-Type": "application/json"}
COMPLETED = "completed"
IPN_CACHE_KEY = "payments:pesapal:ipn_id"
# refresh this many seconds before the token actually expires
TOKEN_EXPIRY_MARGIN = 60


@dataclass(frozen=True)
class SubmittedOrder:
    tracking_id: str
    redirect_url: str
    merchant_reference: str = ""


@dataclass(frozen=True)
class TransactionStatus:
    status_description: str
    confirmation_code: str = ""
    amount: Decimal = None
    payment_method: str = ""
    currency: str = ""
    merchant_reference: str = ""
    description: str = ""
    raw: dict = field(default_factory=dict)

    @property
    def is_completed(self) -> bool:
        return (self.status_description or "").strip().lower() == COMPLETED

    @classmethod
    def from_response(cls, data: dict) -> "TransactionStatus":
        try:
            amount = Decimal(str(data["amount"])) if data.get("amount") is not None else None
        except (InvalidOperation, ValueError):
            amount = None
        return cls(
            status_description=str(data.get("payment_status_description") or ""),
            confirmation_code=str(data.get("confirmation_code") or ""),
            amount=amount,
            payment_method=str(data.get("payment_method") or ""),
            currency=str(data.get("currency") or ""),
            merchant_reference=str(data.get("merchant_reference") or ""),
            description=str(data.get("description") or ""),
            raw=data,
        )


def _parse_json(resp) -> dict:
    try:
        data = resp.json()
    except ValueError:
        raise GatewayUnavailable(f"Pesapal returned non-JSON body (HTTP {resp.status_code})")
    if not isinstance(data, dict):
        raise GatewayUnavailable("Pesapal returned an unexpected body")
    return data


def _raise_for_error(data: dict, what: str) -> None:
    # Pesapal reports some failures as HTTP 200 with an "error" object.
    error = data.get("error")
    if error and (not isinstance(error, dict) or any(error.values())):
        raise GatewayUnavailable(f"{what} failed: {json.dumps(error)[:300]}")


class PesapalTokenProvider:
    """Fetches and caches the bearer token from /Auth/RequestToken."""

    def __init__(self, base_url=None, consumer_key=None, consumer_secret=None, timeout=None):
        self.base_url = (base_url or settings.PESAPAL_API_URL).rstrip("/")
        self.consumer_key = consumer_key if consumer_key is not None else settings.PESAPAL_CONSUMER_KEY
        self.consumer_secret = consumer_secret if consumer_secret is not None else settings.PESAPAL_CONSUMER_SECRET
        self.timeout = timeout or settings.PESAPAL_TIMEOUT
        self._token = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    def __call__(self) -> str:
        with self._lock:
            if self._token and time.time() < self._expires_at - TOKEN_EXPIRY_MARGIN:
                return self._token
            self._token, self._expires_at = self._request_token()
            return self._token

    def invalidate(self) -> None:
        with self._lock:
            self._token = None
            self._expires_at = 0.0

    def _request_token(self):
        if not (self.consumer_key and self.consumer_secret):
            raise GatewayUnavailable("Missing PESAPAL_CONSUMER_KEY / PESAPAL_CONSUMER_SECRET")
        url = f"{self.base_url}/Auth/RequestToken"
        body = {"consumer_key": self.consumer_key, "consumer_secret": self.consumer_secret}
        try:
            resp = requests.post(url, json=body, headers=COMMON_HEADERS, timeout=self.timeout)
        except RequestException as e:
            raise GatewayUnavailable(f"Token request failed: {e}")
        if resp.status_code != 200:
            raise GatewayUnavailable(f"Token request failed: HTTP {resp.status_code}")
        data = _parse_json(resp)
        _raise_for_error(data, "Token request")
        token = data.get("token")
        if not token:
            raise GatewayUnavailable("Token request returned no token")
        return token, self._expiry_of(token, data.get("expiryDate"))

    @staticmethod
    def _expiry_of(token: str, expiry_date=None) -> float:
        try:
            claims = jwt.decode(token, options={"verify_signature": False})
            if claims.get("exp"):
                return float(claims["exp"])
        except jwt.PyJWTError:
            pass
        if expiry_date:
            try:
                dt = datetime.fromisoformat(str(expiry_date).replace("Z", "+00:00"))
                if dt.tzinfo is None:
                    dt = dt.replace(tzinfo=timezone.utc)
                return dt.timestamp()
            except ValueError:
                logger.warning("Unparseable Pesapal token expiryDate %r", expiry_date)
        # Pesapal tokens live five minutes.
        return time.time() + 300


class PesapalClient:
    def __init__(self, base_url=None, token_provider=None, timeout=None, status_retries=None, backoff=None):
        self.base_url = (base_url or settings.PESAPAL_API_URL).rstrip("/")
        self.token_provider = token_provider or PesapalTokenProvider(base_url=self.base_url)
        self.timeout = timeout or settings.PESAPAL_TIMEOUT
        self.status_retries = max(1, status_retries if status_retries is not None else settings.PESAPAL_STATUS_RETRIES)
        self.backoff = backoff if backoff is not None else settings.PESAPAL_RETRY_BACKOFF

    def _headers(self) -> dict:
        return {**COMMON_HEADERS, "Authorization": f"Bearer {self.token_provider()}"}

    def _timeout(self, timeout=None) -> float:
        return min(self.timeout, timeout) if timeout else self.timeout

    def _request(self, method: str, path: str, what: str, timeout=None, **kwargs) -> dict:
        url = f"{self.base_url}{path}"
        try:
            resp = requests.request(method, url, headers=self._headers(), timeout=self._timeout(timeout), **kwargs)
        except RequestException as e:
            raise GatewayUnavailable(f"{what} request failed: {e}")
        if resp.status_code == 401:
            invalidate = getattr(self.token_provider, "invalidate", None)
            if invalidate:
                invalidate()
        if not 200 <= resp.status_code < 300:
            raise GatewayUnavailable(f"{what} failed: HTTP {resp.status_code}. Response: {resp.text[:300]}")
        data = _parse_json(resp)
        _raise_for_error(data, what)
        return data

    # ---------- API calls ----------
    def register_ipn(self, url: str, notification_type: str = "POST", timeout=None) -> str:
        data = self._request(
            "POST",
            "/URLSetup/RegisterIPN",
            "Register IPN",
            timeout=timeout,
            json={"url": url, "ipn_notification_type": notification_type},
        )
        ipn_id = data.get("ipn_id")
        if not ipn_id:
            raise GatewayUnavailable("Register IPN returned no ipn_id")
        logger.info("Registered Pesapal IPN %s for %s", ipn_id, url)
        return ipn_id

    def notification_id(self, timeout=None) -> str:
        """Return the IPN id to attach to orders, registering the endpoint once."""
        configured = getattr(settings, "PESAPAL_IPN_ID", "")
        if configured:
            return configured
        ipn_id = cache.get(IPN_CACHE_KEY)
        if ipn_id:
            return ipn_id
        ipn_id = self.register_ipn(f"{settings.PUBLIC_BASE_URL}/payments/pesapal/ipn", timeout=timeout)
        cache.set(IPN_CACHE_KEY, ipn_id, None)
        return ipn_id

    def submit_order(self, payload: dict, timeout=None) -> SubmittedOrder:
        """Create a payment attempt. Not idempotent at Pesapal, never retried here."""
        body = dict(payload)
        if "amount" in body:
            body["amount"] = float(Decimal(str(body["amount"])).quantize(Decimal("0.01")))
        data = self._request("POST", "/Transactions/SubmitOrderRequest", "Submit order", timeout=timeout, json=body)
        tracking_id = data.get("order_tracking_id")
        redirect_url = data.get("redirect_url")
        if not tracking_id or not redirect_url:
            raise GatewayUnavailable("Submit order response is missing order_tracking_id/redirect_url")
        return SubmittedOrder(
            tracking_id=tracking_id,
            redirect_url=redirect_url,
            merchant_reference=data.get("merchant_reference") or body.get("id", ""),
        )

    def get_transaction_status(self, tracking_id: str, timeout=None) -> TransactionStatus:
        deadline = time.monotonic() + timeout if timeout else None
        attempt = 0
        while True:
            attempt += 1
            remaining = deadline - time.monotonic() if deadline else None
            if remaining is not None and remaining <= 0:
                raise DeadlineExceeded(f"No time left to query status of {tracking_id}")
            try:
                data = self._request(
                    "GET",
                    "/Transactions/GetTransactionStatus",
                    "Transaction status",
                    timeout=remaining,
                    params={"orderTrackingId": tracking_id},
                )
                return TransactionStatus.from_response(data)
            except GatewayUnavailable as e:
                delay = self.backoff * (2 ** (attempt - 1))
                out_of_time = deadline is not None and time.monotonic() + delay >= deadline
                if attempt >= self.status_retries or out_of_time:
                    raise
                logger.warning(
                    "Pesapal status query for %s failed (attempt %s/%s): %s",
                    tracking_id, attempt, self.status_retries, e,
                )
                time.sleep(delay)

    def refund(self, confirmation_code: str, amount, remarks: str, username: str = None, timeout=None) -> dict:
        body = {
            "confirmation_code": confirmation_code,
            "amount": float(Decimal(str(amount)).quantize(Decimal("0.01"))),
            "username": username or settings.PESAPAL_REFUND_USERNAME,
            "remarks": remarks,
        }
        data = self._request("POST", "/Transactions/RefundRequest", "Refund", timeout=timeout, json=body)
        if str(data.get("status", "200")) != "200":
            raise GatewayUnavailable(f"Refund rejected: {data.get('message') or data}")
        return data

    def cancel(self, tracking_id: str, timeout=None) -> dict:
        data = self._request(
            "POST", "/Transactions/CancelOrder", "Cancel order", timeout=timeout,
            json={"order_tracking_id": tracking_id},
        )
        if str(data.get("status", "200")) != "200":
            raise GatewayUnavailable(f"Cancel rejected: {data.get('message') or data}")
        return data


_client = None
_client_lock = threading.Lock()


def get_client() -> PesapalClient:
    global _client
    with _client_lock:
        if _client is None:
            _client = PesapalClient()
        return _client
