import logging
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.core.exceptions import ValidationError as ModelValidationError
from django.db import IntegrityError, transaction
from django.utils import timezone

from payments import repository
from payments.exceptions import TransitionNotAllowed, ValidationError
from payments.models import PaymentMethod, PaymentStatus

from .models import DeliveryMethod, FULFILLMENT_FLOW, TERMINAL_ORDER_STATUSES, Order, OrderItem, OrderStatus
from .signals import order_placed, send_quietly

logger = logging.getLogger(__name__)

NUMBER_ATTEMPTS = 5


def generate_order_number(now=None) -> str:
    """Next ``KAPC-YYYY-NNNNNN`` for the current year."""
    prefix = f"KAPC-{(now or timezone.now()).year}-"
    last = (
        Order.objects.filter(order_number__startswith=prefix)
        .order_by("-order_number")
        .values_list("order_number", flat=True)
        .first()
    )
    seq = int(last.rsplit("-", 1)[1]) + 1 if last else 1
    return f"{prefix}{seq:06d}"


def _money(value, field: str) -> Decimal:
    try:
        amount = Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{field} must be a number")
    if amount < 0:
        raise ValidationError(f"{field} cannot be negative")
    return amount


def _items(raw_items) -> list:
    if not raw_items:
        raise ValidationError("An order needs at least one item")
    if not isinstance(raw_items, list):
        raise ValidationError("items must be a list")
    items = []
    for i, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{i}] must be an object")
        name = str(raw.get("name") or "").strip()
        if not name:
            raise ValidationError(f"items[{i}].name is required")
        try:
            quantity = int(raw.get("quantity", 1))
        except (TypeError, ValueError):
            raise ValidationError(f"items[{i}].quantity must be an integer")
        if quantity < 1:
            raise ValidationError(f"items[{i}].quantity must be at least 1")
        items.append(OrderItem(
            name=name,
            sku=str(raw.get("sku") or "").strip(),
            quantity=quantity,
            unit_price=_money(raw.get("unit_price"), f"items[{i}].unit_price"),
        ))
    return items


def create_order(*, customer_name, customer_email, items, payment_method=PaymentMethod.GATEWAY,
                 delivery_method=DeliveryMethod.PICKUP, customer_phone="", shipping_address="", city="",
                 shipping_cost=0, currency=None) -> Order:
    """Create an order and its items.

    Gateway orders wait for Pesapal with ``payment_status=not_initiated``.
    Cash-on-delivery orders are ``pending`` until delivered, and their stock
    is taken right away.
    """
    if payment_method not in PaymentMethod.values:
        raise ValidationError(f"payment_method must be one of {', '.join(PaymentMethod.values)}")
    if delivery_method not in DeliveryMethod.values:
        raise ValidationError(f"delivery_method must be one of {', '.join(DeliveryMethod.values)}")
    if delivery_method == DeliveryMethod.LOCAL_DELIVERY and not (shipping_address or "").strip():
        raise ValidationError("shipping_address is required for local delivery")

    order_items = _items(items)
    subtotal = sum((item.line_total for item in order_items), Decimal("0"))
    shipping = _money(shipping_cost, "shipping_cost")

    order = Order(
        customer_name=(customer_name or "").strip(),
        customer_email=(customer_email or "").strip(),
        customer_phone=(customer_phone or "").strip(),
        shipping_address=(shipping_address or "").strip(),
        city=(city or "").strip(),
        delivery_method=delivery_method,
        payment_method=payment_method,
        payment_status=PaymentStatus.NOT_INITIATED if payment_method == PaymentMethod.GATEWAY else PaymentStatus.PENDING,
        subtotal=subtotal,
        shipping_cost=shipping,
        amount=subtotal + shipping,
        currency=currency or settings.ORDER_CURRENCY,
    )
    try:
        order.full_clean(exclude=["order_number", "order_tracking_id"])
    except ModelValidationError as e:
        raise ValidationError("; ".join(f"{k}: {' '.join(v)}" for k, v in e.message_dict.items()))

    for _ in range(NUMBER_ATTEMPTS):
        order.order_number = generate_order_number()
        try:
            with transaction.atomic():
                order.save()
                for item in order_items:
                    item.order = order
                OrderItem.objects.bulk_create(order_items)
        except IntegrityError:
            logger.warning("Order number %s taken, trying the next one", order.order_number)
            order.pk = None
            continue
        logger.info("Created order %s (%s %s, %s)", order.order_number, order.currency, order.amount, payment_method)
        if order.stock_taken:
            send_quietly(order_placed, order)
        return order
    raise ValidationError("Could not allocate an order number, try again")


def advance_order_status(order_number: str) -> Order:
    """Move an order one step along the fulfillment flow.

    Gateway orders cannot be confirmed before they are paid. Cash-on-delivery
    orders become paid when they are delivered.
    """
    order = repository.orders.get_by_reference(order_number)
    if order.order_status in TERMINAL_ORDER_STATUSES:
        raise TransitionNotAllowed(f"Order {order_number} is {order.get_order_status_display().lower()}")
    if order.order_status == OrderStatus.PENDING_PAYMENT and order.uses_gateway and not order.is_paid:
        raise TransitionNotAllowed(f"Order {order_number} has not been paid")

    target = FULFILLMENT_FLOW[FULFILLMENT_FLOW.index(order.order_status) + 1]
    changes = {"order_status": target}
    if target == OrderStatus.DELIVERED:
        now = timezone.now()
        changes["delivered_at"] = now
        if order.payment_method == PaymentMethod.CASH_ON_DELIVERY and order.payment_status == PaymentStatus.PENDING:
            changes.update(payment_status=PaymentStatus.PAID, paid_at=now)
    updated = repository.orders.update(order, **changes)
    logger.info("Order %s %s -> %s", order_number, order.order_status, target)
    return updated
