"""Fakes and factories shared by the app test modules."""
from decimal import Decimal

from donations.models import Donation, DonationType
from orders.models import Order, OrderItem, OrderStatus
from payments.exceptions import GatewayUnavailable
from payments.integrations.pesapal import SubmittedOrder, TransactionStatus
from payments.models import PaymentMethod, PaymentStatus


def gateway_status(description="Completed", reference="", amount=None, confirmation_code="CONF123",
                   payment_method="Visa"):
    raw = {
        "payment_status_description": description,
        "confirmation_code": confirmation_code,
        "payment_method": payment_method,
        "merchant_reference": reference,
        "amount": str(amount) if amount is not None else None,
        "status_code": 1 if description == "Completed" else 2,
    }
    return TransactionStatus.from_response(raw)


class FakeGateway:
    """Stands in for PesapalClient.

    ``statuses`` maps tracking id to a TransactionStatus, an exception to
    raise, or a callable returning either. Unknown ids raise
    GatewayUnavailable.
    """

    def __init__(self, statuses=None):
        self.statuses = dict(statuses or {})
        self.status_calls = []
        self.submitted = []
        self.cancelled = []
        self.refunds = []
        self.submit_error = None
        self.cancel_error = None
        self.refund_error = None
        self._seq = 0

    def get_transaction_status(self, tracking_id, timeout=None):
        self.status_calls.append(tracking_id)
        result = self.statuses.get(tracking_id)
        if callable(result) and not isinstance(result, TransactionStatus):
            result = result()
        if result is None:
            raise GatewayUnavailable(f"no status for {tracking_id}")
        if isinstance(result, Exception):
            raise result
        return result

    def notification_id(self, timeout=None):
        return "ipn-test"

    def submit_order(self, payload, timeout=None):
        self.submitted.append(payload)
        if self.submit_error:
            raise self.submit_error
        self._seq += 1
        return SubmittedOrder(
            tracking_id=f"track-{self._seq}",
            redirect_url=f"https://pay.pesapal.test/{self._seq}",
            merchant_reference=payload["id"],
        )

    def cancel(self, tracking_id, timeout=None):
        self.cancelled.append(tracking_id)
        if self.cancel_error:
            raise self.cancel_error
        return {"status": "200"}

    def refund(self, confirmation_code, amount, remarks, username=None, timeout=None):
        self.refunds.append((confirmation_code, amount, remarks, username))
        if self.refund_error:
            raise self.refund_error
        return {"status": "200", "message": "Refund accepted"}


def make_donation(**kwargs) -> Donation:
    defaults = {
        "donation_id": "DON-2026-000001",
        "donation_type": DonationType.ONE_TIME,
        "amount": Decimal("50.00"),
        "currency": "USD",
        "first_name": "Amina",
        "last_name": "Nakato",
        "email": "amina@example.com",
        "phone": "+256700000000",
        "payment_status": PaymentStatus.NOT_INITIATED,
    }
    defaults.update(kwargs)
    return Donation.objects.create(**defaults)


def make_order(items=None, **kwargs) -> Order:
    defaults = {
        "order_number": "KAPC-2026-000001",
        "amount": Decimal("30000.00"),
        "subtotal": Decimal("30000.00"),
        "currency": "UGX",
        "customer_name": "Peter Okello",
        "customer_email": "peter@example.com",
        "customer_phone": "+256711111111",
        "payment_method": PaymentMethod.GATEWAY,
        "payment_status": PaymentStatus.NOT_INITIATED,
        "order_status": OrderStatus.PENDING_PAYMENT,
    }
    defaults.update(kwargs)
    order = Order.objects.create(**defaults)
    for item in items or [{"name": "Beaded bracelet", "sku": "BR-1", "quantity": 2, "unit_price": Decimal("15000.00")}]:
        OrderItem.objects.create(order=order, **item)
    return order
