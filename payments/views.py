import json
import logging

from django.conf import settings
from django.http import JsonResponse, HttpResponseBadRequest
from django.shortcuts import redirect
from django.views.decorators.http import require_GET

from .exceptions import PaymentError, ValidationError
from .reconciliation import get_engine

logger = logging.getLogger(__name__)


def json_body(request) -> dict:
    if not request.body:
        return {}
    try:
        body = json.loads(request.body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise ValidationError("Invalid JSON body")
    if not isinstance(body, dict):
        raise ValidationError("JSON body must be an object")
    return body


def error_response(exc: PaymentError) -> JsonResponse:
    if exc.status_code >= 500:
        logger.error("%s: %s", type(exc).__name__, exc.message)
    return JsonResponse({"ok": False, "error": exc.message}, status=exc.status_code)


def payment_meta(payable) -> dict:
    return {
        "reference": payable.reference,
        "payment_status": payable.payment_status,
        "payment_method": payable.payment_method,
        "amount": str(payable.amount),
        "currency": payable.currency,
        "order_tracking_id": payable.order_tracking_id,
        "confirmation_code": payable.confirmation_code,
        "gateway_payment_method": payable.gateway_payment_method,
        "paid_at": payable.paid_at.isoformat() if payable.paid_at else None,
        "failure_reason": payable.failure_reason,
    }


def status_url(reference: str) -> str:
    template = settings.DONATION_STATUS_URL if reference.startswith("DON-") else settings.ORDER_STATUS_URL
    return template.format(reference=reference)


@require_GET
def pesapal_callback(request):
    """Browser return from Pesapal: reconcile right away, then show the status page.

    The IPN may not have arrived yet, so this is the fast path for the user.
    Only a completed payment is written here. Failing to reach Pesapal, or
    any other answer, changes nothing and is left to the IPN.
    """
    tracking_id = (request.GET.get("OrderTrackingId") or "").strip()
    reference = (request.GET.get("OrderMerchantReference") or "").strip()
    if not tracking_id or not reference:
        return HttpResponseBadRequest("OrderTrackingId and OrderMerchantReference are required")

    try:
        result = get_engine().reconcile(reference, tracking_id, final_only=True)
        logger.info("Callback for %s: %s", reference, result.payment_status)
    except PaymentError as e:
        if e.status_code == 404:
            return HttpResponseBadRequest("Unknown payment reference")
        logger.warning("Callback reconcile of %s failed: %s", reference, e.message)
    return redirect(status_url(reference))
