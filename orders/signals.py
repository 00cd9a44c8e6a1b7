"""Hooks for the inventory side of an order.

Receivers get ``order`` (the Order instance as it was written) and, for
``stock_release_requested``, a ``reason`` string.
"""
import logging

from django.dispatch import Signal

logger = logging.getLogger(__name__)

# Cash-on-delivery order created: its items leave inventory now.
order_placed = Signal()

# Gateway order paid: its items leave inventory now.
order_paid = Signal()

# Items that had left inventory must go back.
stock_release_requested = Signal()


def send_quietly(signal, order, **kwargs) -> None:
    """Send ``signal`` and log receiver failures instead of raising them."""
    for receiver, result in signal.send_robust(sender=order.__class__, order=order, **kwargs):
        if isinstance(result, Exception):
            logger.error(
                "Receiver %r failed for order %s: %s", receiver, order.order_number, result,
                exc_info=(type(result), result, result.__traceback__),
            )
