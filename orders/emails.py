import logging

from payments.emails import admin_recipients, send_templated

logger = logging.getLogger(__name__)


def _context(order) -> dict:
    return {
        "order": order,
        "items": list(order.items.all()),
        "amount": order.amount,
        "currency": order.currency,
    }


def send_order_confirmation(order) -> None:
    """Receipt to the customer and a heads-up to admins once an order is paid.

    Never raises: a failed email must not undo a recorded payment.
    """
    try:
        context = _context(order)
    except Exception:
        logger.exception("Could not build confirmation context for order %s", order.order_number)
        return

    try:
        send_templated(
            f"Order confirmed: {order.order_number} - {order.currency} {order.amount}",
            "emails/order_confirmation",
            context,
            [order.customer_email],
        )
    except Exception:
        logger.exception("Failed to send order confirmation to %s", order.customer_email)

    try:
        send_templated(
            f"New paid order: {order.order_number} - {order.currency} {order.amount}",
            "emails/order_notification_admin",
            context,
            admin_recipients(),
        )
    except Exception:
        logger.exception("Failed to send admin notification for order %s", order.order_number)


def send_order_cancellation(order) -> None:
    try:
        send_templated(
            f"Order cancelled: {order.order_number}",
            "emails/order_cancelled",
            _context(order),
            [order.customer_email],
        )
    except Exception:
        logger.exception("Failed to send cancellation email for order %s", order.order_number)

    if order.refund_status == "pending":
        try:
            send_templated(
                f"Refund needed: {order.order_number} - {order.currency} {order.refund_amount}",
                "emails/order_refund_admin",
                _context(order),
                admin_recipients(),
            )
        except Exception:
            logger.exception("Failed to send refund notification for order %s", order.order_number)
