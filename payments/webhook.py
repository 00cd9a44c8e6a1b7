import json
import logging

from django.conf import settings
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt

from .exceptions import NotFound, PaymentError, RateLimited, Unauthorized, ValidationError
from .models import GatewayNotification
from .ratelimit import get_webhook_rate_limiter
from .reconciliation import Deadline, get_engine

logger = logging.getLogger(__name__)

FIELDS = ("OrderTrackingId", "OrderNotificationType", "OrderMerchantReference")
RECURRING = "RECURRING"


def client_ip(request) -> str:
    if getattr(settings, "PAYMENTS_TRUST_X_FORWARDED_FOR", False):
        forwarded = request.META.get("HTTP_X_FORWARDED_FOR", "")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.META.get("REMOTE_ADDR", "") or "unknown"


def _check_user_agent(request) -> None:
    marker = (getattr(settings, "PESAPAL_WEBHOOK_USER_AGENT", "") or "").lower()
    if marker and marker not in request.headers.get("User-Agent", "").lower():
        raise Unauthorized("Unexpected user agent")


def _read_payload(request) -> dict:
    if request.method == "GET":
        return {k: request.GET.get(k) for k in FIELDS}
    content_type = (request.content_type or "").lower()
    if content_type != "application/json":
        raise ValidationError("Content-Type must be application/json")
    try:
        payload = json.loads(request.body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise ValidationError("Invalid JSON")
    if not isinstance(payload, dict):
        raise ValidationError("JSON body must be an object")
    return payload


def _validate(payload: dict) -> dict:
    missing = [k for k in FIELDS if not isinstance(payload.get(k), str) or not payload[k].strip()]
    if missing:
        raise ValidationError(f"Missing fields: {', '.join(missing)}")
    return {k: payload[k].strip() for k in FIELDS}


def _echo(fields: dict, status: int) -> dict:
    return {
        "orderNotificationType": fields["OrderNotificationType"],
        "orderTrackingId": fields["OrderTrackingId"],
        "orderMerchantReference": fields["OrderMerchantReference"],
        "status": status,
    }


def _record(request, fields: dict, outcome: str, detail: str = "") -> None:
    ip = client_ip(request)
    try:
        GatewayNotification.objects.create(
            tracking_id=fields["OrderTrackingId"][:64],
            notification_type=fields["OrderNotificationType"][:32],
            merchant_reference=fields["OrderMerchantReference"][:64],
            http_method=request.method,
            source_ip=None if ip == "unknown" else ip,
            outcome=outcome,
            detail=(detail or "")[:255],
        )
    except Exception:
        logger.exception("Could not record notification for %s", fields.get("OrderTrackingId"))


def dispatch(fields: dict, deadline=None):
    engine = get_engine()
    tracking_id = fields["OrderTrackingId"]
    reference = fields["OrderMerchantReference"]
    if fields["OrderNotificationType"].upper() == RECURRING:
        return engine.reconcile_recurring(reference, tracking_id, deadline=deadline)
    return engine.reconcile(reference, tracking_id, deadline=deadline)


@csrf_exempt
def pesapal_ipn(request):
    """Pesapal IPN endpoint.

    Pesapal redelivers anything that is not answered with HTTP 200, so only
    failures that might succeed later (gateway outage, write conflicts) get a
    500. Unknown references are acknowledged with ``"status": 404`` in the body.
    """
    if request.method not in ("GET", "POST"):
        return JsonResponse({"ok": False, "error": "Method not allowed"}, status=405)

    ip = client_ip(request)
    try:
        if not get_webhook_rate_limiter().allow(ip):
            raise RateLimited()
        _check_user_agent(request)
        fields = _validate(_read_payload(request))
    except PaymentError as e:
        logger.warning("Rejected Pesapal IPN from %s: %s", ip, e.message)
        return JsonResponse({"ok": False, "error": e.message}, status=e.status_code)

    deadline = Deadline.for_webhook()
    try:
        result = dispatch(fields, deadline)
    except NotFound as e:
        logger.warning("IPN for unknown reference %s (%s)", fields["OrderMerchantReference"], e.message)
        _record(request, fields, GatewayNotification.OUTCOME_REJECTED, e.message)
        return JsonResponse(_echo(fields, 404))
    except ValidationError as e:
        logger.warning("Invalid IPN %s: %s", fields["OrderTrackingId"], e.message)
        _record(request, fields, GatewayNotification.OUTCOME_REJECTED, e.message)
        return JsonResponse(_echo(fields, 400), status=400)
    except PaymentError as e:
        log = logger.error if e.status_code == 500 else logger.warning
        log("IPN %s for %s not processed: %s", fields["OrderTrackingId"], fields["OrderMerchantReference"], e.message)
        _record(request, fields, GatewayNotification.OUTCOME_FAILED, e.message)
        return JsonResponse(_echo(fields, 500), status=500)
    except Exception as e:
        logger.exception("IPN %s crashed", fields["OrderTrackingId"])
        _record(request, fields, GatewayNotification.OUTCOME_FAILED, f"{type(e).__name__}: {e}")
        return JsonResponse(_echo(fields, 500), status=500)

    detail = f"{result.payment_status}{' (changed)' if result.changed else ''}{' (deleted)' if result.deleted else ''}"
    _record(request, fields, GatewayNotification.OUTCOME_PROCESSED, detail)
    return JsonResponse(_echo(fields, 200))
