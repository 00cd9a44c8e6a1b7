import logging

from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from payments import repository
from payments.exceptions import PaymentError
from payments.reconciliation import get_engine
from payments.views import error_response, json_body, payment_meta

from .services import create_order

logger = logging.getLogger(__name__)


def order_meta(order) -> dict:
    meta = payment_meta(order)
    meta.update(
        order_number=order.order_number,
        order_status=order.order_status,
        delivery_method=order.delivery_method,
        subtotal=str(order.subtotal),
        shipping_cost=str(order.shipping_cost),
        refund_status=order.refund_status,
        items=[
            {"name": i.name, "sku": i.sku, "quantity": i.quantity, "unit_price": str(i.unit_price)}
            for i in order.items.all()
        ],
    )
    return meta


def _submission(submitted) -> JsonResponse:
    return JsonResponse({
        "ok": True,
        "order_number": submitted.reference,
        "order_tracking_id": submitted.tracking_id,
        "redirect_url": submitted.redirect_url,
    })


@csrf_exempt
@require_POST
def order_create_view(request):
    try:
        body = json_body(request)
        order = create_order(
            customer_name=body.get("customer_name"),
            customer_email=body.get("customer_email"),
            customer_phone=body.get("customer_phone") or "",
            shipping_address=body.get("shipping_address") or "",
            city=body.get("city") or "",
            delivery_method=body.get("delivery_method") or "pickup",
            payment_method=body.get("payment_method") or "gateway",
            shipping_cost=body.get("shipping_cost") or 0,
            items=body.get("items") or [],
        )
    except PaymentError as e:
        return error_response(e)
    return JsonResponse({"ok": True, "order": order_meta(order)}, status=201)


@csrf_exempt
@require_POST
def order_pay_view(request, order_number: str):
    try:
        return _submission(get_engine().submit_payment(order_number))
    except PaymentError as e:
        return error_response(e)


@csrf_exempt
@require_POST
def order_retry_view(request, order_number: str):
    try:
        return _submission(get_engine().retry_payment(order_number))
    except PaymentError as e:
        return error_response(e)


@csrf_exempt
@require_POST
def order_cancel_pending_view(request, order_number: str):
    try:
        get_engine().cancel_pending_order(order_number)
    except PaymentError as e:
        return error_response(e)
    return JsonResponse({"ok": True, "order_number": order_number, "deleted": True})


@csrf_exempt
@require_POST
def order_cancel_view(request, order_number: str):
    try:
        body = json_body(request)
        order = get_engine().cancel_confirmed_order(
            order_number,
            by_admin=False,
            reason=(body.get("reason") or "")[:64],
            notes=body.get("notes") or "",
        )
    except PaymentError as e:
        return error_response(e)
    return JsonResponse({"ok": True, "order": order_meta(order)})


@require_GET
def order_status_view(request, order_number: str):
    try:
        order = repository.orders.get_by_reference(order_number)
    except PaymentError as e:
        return error_response(e)
    return JsonResponse({"ok": True, "order": order_meta(order)})
