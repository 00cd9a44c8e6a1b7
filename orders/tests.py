import json
from decimal import Decimal
from unittest.mock import Mock, patch

from django.core import mail
from django.test import TestCase
from django.urls import reverse
from django.utils import timezone

from kapcdam.tests.fakes import FakeGateway, make_order
from payments import repository
from payments.exceptions import GatewayUnavailable, NotFound, TransitionNotAllowed, ValidationError
from payments.models import PaymentMethod, PaymentStatus
from payments.reconciliation import ReconciliationEngine

from .admin import advance_status, process_refund
from .models import DeliveryMethod, Order, OrderStatus, RefundStatus
from .services import advance_order_status, create_order, generate_order_number
from .signals import order_placed, stock_release_requested

ITEMS = [
    {"name": "Beaded bracelet", "sku": "BR-1", "quantity": 2, "unit_price": "15000"},
    {"name": "Paper bead necklace", "quantity": 1, "unit_price": "20000"},
]


def _listen(test, signal):
    receiver = Mock()
    signal.connect(receiver, weak=False)
    test.addCleanup(signal.disconnect, receiver)
    return receiver


class CreateOrderTests(TestCase):
    def test_gateway_order_waits_for_payment(self):
        placed = _listen(self, order_placed)
        order = create_order(customer_name="Peter Okello", customer_email="peter@example.com", items=ITEMS)

        self.assertRegex(order.order_number, r"^KAPC-\d{4}-\d{6}$")
        self.assertEqual(order.payment_status, PaymentStatus.NOT_INITIATED)
        self.assertEqual(order.order_status, OrderStatus.PENDING_PAYMENT)
        self.assertEqual(order.subtotal, Decimal("50000.00"))
        self.assertEqual(order.amount, Decimal("50000.00"))
        self.assertEqual(order.currency, "UGX")
        self.assertEqual(order.items.count(), 2)
        placed.assert_not_called()

    def test_cash_on_delivery_order_takes_stock(self):
        placed = _listen(self, order_placed)
        order = create_order(
            customer_name="Peter Okello", customer_email="peter@example.com", items=ITEMS,
            payment_method=PaymentMethod.CASH_ON_DELIVERY, delivery_method=DeliveryMethod.LOCAL_DELIVERY,
            shipping_address="Plot 4, Kanjokya Street", city="Kampala", shipping_cost="5000",
        )
        self.assertEqual(order.payment_status, PaymentStatus.PENDING)
        self.assertEqual(order.amount, Decimal("55000.00"))
        placed.assert_called_once()
        self.assertEqual(placed.call_args.kwargs["order"].pk, order.pk)

    def test_local_delivery_needs_address(self):
        with self.assertRaises(ValidationError):
            create_order(
                customer_name="Peter Okello", customer_email="peter@example.com", items=ITEMS,
                delivery_method=DeliveryMethod.LOCAL_DELIVERY,
            )

    def test_rejects_bad_items(self):
        for items in ([], [{"name": "", "unit_price": 1}], [{"name": "Mat", "quantity": 0, "unit_price": 1}],
                      [{"name": "Mat", "unit_price": "-5"}], [{"name": "Mat", "quantity": "two", "unit_price": 1}],
                      ["Mat"], [None], "Mat", {"name": "Mat", "unit_price": 1}):
            with self.assertRaises(ValidationError):
                create_order(customer_name="Peter Okello", customer_email="peter@example.com", items=items)
        self.assertFalse(Order.objects.exists())

    def test_rejects_bad_email(self):
        with self.assertRaises(ValidationError) as ctx:
            create_order(customer_name="Peter Okello", customer_email="peter", items=ITEMS)
        self.assertIn("customer_email", ctx.exception.message)

    def test_order_numbers_are_sequential_per_year(self):
        year = timezone.now().year
        make_order(order_number=f"KAPC-{year}-000007")
        make_order(order_number=f"KAPC-{year - 1}-000042")
        self.assertEqual(generate_order_number(), f"KAPC-{year}-000008")


class CashOnDeliveryLifecycleTests(TestCase):
    """A cash-on-delivery order is paid when it is handed over."""

    def test_advance_to_delivered_marks_paid(self):
        order = create_order(
            customer_name="Peter Okello", customer_email="peter@example.com", items=ITEMS,
            payment_method=PaymentMethod.CASH_ON_DELIVERY,
        )
        seen = []
        for _ in range(5):
            order = advance_order_status(order.order_number)
            seen.append(order.order_status)

        self.assertEqual(seen, [
            OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.READY_FOR_DELIVERY,
            OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED,
        ])
        self.assertEqual(order.payment_status, PaymentStatus.PAID)
        self.assertIsNotNone(order.paid_at)
        self.assertIsNotNone(order.delivered_at)

        with self.assertRaises(TransitionNotAllowed):
            advance_order_status(order.order_number)

    def test_unpaid_gateway_order_cannot_be_confirmed(self):
        order = make_order(payment_status=PaymentStatus.PENDING, order_tracking_id="track-1")
        with self.assertRaises(TransitionNotAllowed):
            advance_order_status(order.order_number)

    def test_paid_gateway_order_is_confirmed(self):
        order = make_order(payment_status=PaymentStatus.PAID)
        self.assertEqual(advance_order_status(order.order_number).order_status, OrderStatus.CONFIRMED)

    def test_cancelled_order_does_not_move(self):
        order = make_order(payment_status=PaymentStatus.PAID, order_status=OrderStatus.CANCELLED_BY_USER)
        with self.assertRaises(TransitionNotAllowed):
            advance_order_status(order.order_number)


class CancelPendingOrderTests(TestCase):
    def setUp(self):
        self.gateway = FakeGateway()
        self.engine = ReconciliationEngine(gateway=self.gateway)
        self.released = _listen(self, stock_release_requested)

    def test_unpaid_gateway_order_is_deleted(self):
        order = make_order(payment_status=PaymentStatus.PENDING, order_tracking_id="track-1")

        self.engine.cancel_pending_order(order.order_number)

        self.assertEqual(self.gateway.cancelled, ["track-1"])
        with self.assertRaises(NotFound):
            repository.orders.get_by_reference(order.order_number)
        self.released.assert_not_called()

    def test_gateway_cancel_failure_still_deletes(self):
        self.gateway.cancel_error = GatewayUnavailable("down")
        order = make_order(payment_status=PaymentStatus.PENDING, order_tracking_id="track-1")
        with self.assertLogs("payments.reconciliation", level="WARNING"):
            self.engine.cancel_pending_order(order.order_number)
        self.assertFalse(Order.objects.filter(pk=order.pk).exists())

    def test_cash_on_delivery_order_releases_stock(self):
        order = make_order(payment_method=PaymentMethod.CASH_ON_DELIVERY, payment_status=PaymentStatus.PENDING)

        self.engine.cancel_pending_order(order.order_number)

        self.assertEqual(self.gateway.cancelled, [])
        self.released.assert_called_once()
        self.assertEqual(self.released.call_args.kwargs["reason"], "cancelled_before_payment")

    def test_paid_order_is_refused(self):
        order = make_order(payment_status=PaymentStatus.PAID, order_tracking_id="track-1")
        with self.assertRaises(TransitionNotAllowed):
            self.engine.cancel_pending_order(order.order_number)
        self.assertTrue(Order.objects.filter(pk=order.pk).exists())


class CancelConfirmedOrderTests(TestCase):
    def setUp(self):
        self.engine = ReconciliationEngine(gateway=FakeGateway())
        self.released = _listen(self, stock_release_requested)

    def test_paid_order_awaits_refund(self):
        order = make_order(payment_status=PaymentStatus.PAID, order_status=OrderStatus.PROCESSING)

        cancelled = self.engine.cancel_confirmed_order(order.order_number, reason="changed_mind", notes="Wrong size")

        self.assertEqual(cancelled.order_status, OrderStatus.CANCELLED_BY_USER)
        self.assertEqual(cancelled.refund_status, RefundStatus.PENDING)
        self.assertEqual(cancelled.refund_amount, Decimal("30000.00"))
        self.assertIsNotNone(cancelled.refund_initiated_at)
        self.assertEqual(cancelled.cancellation_notes, "Wrong size")
        self.assertEqual(cancelled.payment_status, PaymentStatus.PAID)
        self.released.assert_called_once()
        self.assertEqual([m.to for m in mail.outbox], [["peter@example.com"], ["admin@kapcdam.org"]])

    def test_unpaid_order_needs_no_refund(self):
        order = make_order(
            payment_method=PaymentMethod.CASH_ON_DELIVERY, payment_status=PaymentStatus.PENDING,
            order_status=OrderStatus.READY_FOR_DELIVERY,
        )
        cancelled = self.engine.cancel_confirmed_order(order.order_number, by_admin=True)
        self.assertEqual(cancelled.order_status, OrderStatus.CANCELLED_BY_ADMIN)
        self.assertEqual(cancelled.refund_status, RefundStatus.NOT_APPLICABLE)
        self.assertEqual(len(mail.outbox), 1)

    def test_only_processing_or_ready_orders(self):
        statuses = (OrderStatus.CONFIRMED, OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED)
        for n, status in enumerate(statuses, start=1):
            order = make_order(
                order_number=f"KAPC-2026-{n:06d}", payment_status=PaymentStatus.PAID, order_status=status,
            )
            with self.assertRaises(TransitionNotAllowed):
                self.engine.cancel_confirmed_order(order.order_number)
        self.released.assert_not_called()


class ProcessRefundTests(TestCase):
    def setUp(self):
        self.gateway = FakeGateway()
        self.engine = ReconciliationEngine(gateway=self.gateway)
        self.order = make_order(
            payment_status=PaymentStatus.PAID, order_status=OrderStatus.CANCELLED_BY_USER,
            refund_status=RefundStatus.PENDING, refund_amount=Decimal("30000.00"),
            confirmation_code="CONF123", cancellation_reason="changed_mind",
        )

    def test_refund_accepted(self):
        refunded = self.engine.process_refund(self.order.order_number, remarks="Order cancelled", username="ops")

        self.assertEqual(self.gateway.refunds, [("CONF123", Decimal("30000.00"), "Order cancelled", "ops")])
        self.assertEqual(refunded.payment_status, PaymentStatus.REFUNDED)
        self.assertEqual(refunded.refund_status, RefundStatus.COMPLETED)

    def test_cancellation_reason_is_default_remark(self):
        self.engine.process_refund(self.order.order_number)
        self.assertEqual(self.gateway.refunds[0][2], "changed_mind")

    def test_refund_failure_can_be_retried(self):
        self.gateway.refund_error = GatewayUnavailable("Refund exceeds amount")
        with self.assertRaises(GatewayUnavailable):
            self.engine.process_refund(self.order.order_number)
        self.order.refresh_from_db()
        self.assertEqual(self.order.refund_status, RefundStatus.FAILED)
        self.assertEqual(self.order.payment_status, PaymentStatus.PAID)

        self.gateway.refund_error = None
        self.assertEqual(self.engine.process_refund(self.order.order_number).refund_status, RefundStatus.COMPLETED)

    def test_refund_only_once(self):
        self.engine.process_refund(self.order.order_number)
        with self.assertRaises(TransitionNotAllowed):
            self.engine.process_refund(self.order.order_number)
        self.assertEqual(len(self.gateway.refunds), 1)

    def test_needs_gateway_confirmation(self):
        order = make_order(
            order_number="KAPC-2026-000002", payment_status=PaymentStatus.PAID,
            order_status=OrderStatus.CANCELLED_BY_ADMIN, refund_status=RefundStatus.PENDING,
        )
        with self.assertRaises(TransitionNotAllowed):
            self.engine.process_refund(order.order_number)

    def test_order_must_be_cancelled(self):
        order = make_order(order_number="KAPC-2026-000003", payment_status=PaymentStatus.PAID)
        with self.assertRaises(TransitionNotAllowed):
            self.engine.process_refund(order.order_number)
        self.assertEqual(self.gateway.refunds, [])


class OrderAdminActionTests(TestCase):
    def test_advance_reports_each_order(self):
        make_order(payment_status=PaymentStatus.PAID)
        make_order(order_number="KAPC-2026-000002", payment_status=PaymentStatus.PENDING)
        modeladmin = Mock()

        advance_status(modeladmin, Mock(), Order.objects.order_by("order_number"))

        messages = [c.args[1] for c in modeladmin.message_user.call_args_list]
        self.assertEqual(messages, [
            "KAPC-2026-000001: advanced",
            "KAPC-2026-000002: Order KAPC-2026-000002 has not been paid",
        ])

    def test_refund_passes_admin_username(self):
        gateway = FakeGateway()
        make_order(
            payment_status=PaymentStatus.PAID, order_status=OrderStatus.CANCELLED_BY_ADMIN,
            refund_status=RefundStatus.PENDING, confirmation_code="CONF123",
        )
        request = Mock()
        request.user.get_username.return_value = "ops"
        with patch("orders.admin.get_engine", return_value=ReconciliationEngine(gateway=gateway)):
            process_refund(Mock(), request, Order.objects.all())
        self.assertEqual(gateway.refunds[0][3], "ops")


class OrderViewTests(TestCase):
    def setUp(self):
        self.gateway = FakeGateway()
        engine_patch = patch("orders.views.get_engine", return_value=ReconciliationEngine(gateway=self.gateway))
        engine_patch.start()
        self.addCleanup(engine_patch.stop)

    def _post(self, url, payload=None):
        return self.client.post(url, data=json.dumps(payload or {}), content_type="application/json")

    def test_create(self):
        resp = self._post(reverse("orders:create"), {
            "customer_name": "Peter Okello", "customer_email": "peter@example.com", "items": ITEMS,
        })
        self.assertEqual(resp.status_code, 201)
        body = resp.json()["order"]
        self.assertEqual(body["payment_status"], "not_initiated")
        self.assertEqual(body["amount"], "50000.00")
        self.assertEqual(len(body["items"]), 2)

    def test_create_rejects_missing_items(self):
        resp = self._post(reverse("orders:create"), {"customer_name": "Peter", "customer_email": "peter@example.com"})
        self.assertEqual(resp.status_code, 400)

    def test_create_rejects_item_that_is_not_an_object(self):
        resp = self._post(reverse("orders:create"), {
            "customer_name": "Peter", "customer_email": "peter@example.com", "items": ["Beaded bracelet"],
        })
        self.assertEqual(resp.status_code, 400)
        self.assertIn("items[0]", resp.json()["error"])

    def test_pay(self):
        order = make_order()
        resp = self._post(reverse("orders:pay", args=[order.order_number]))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["order_tracking_id"], "track-1")
        self.assertEqual(self.gateway.submitted[0]["billing_address"]["first_name"], "Peter")

    def test_pay_when_gateway_is_down(self):
        self.gateway.submit_error = GatewayUnavailable("down")
        order = make_order()
        with self.assertLogs("payments.views", level="ERROR"):
            resp = self._post(reverse("orders:pay", args=[order.order_number]))
        self.assertEqual(resp.status_code, 502)

    def test_retry_cancels_previous_attempt(self):
        order = make_order(payment_status=PaymentStatus.PENDING, order_tracking_id="track-0")
        resp = self._post(reverse("orders:retry", args=[order.order_number]))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["order_tracking_id"], "track-1")
        self.assertEqual(self.gateway.cancelled, ["track-0"])

    def test_cancel_pending(self):
        order = make_order(payment_status=PaymentStatus.PENDING, order_tracking_id="track-1")
        resp = self._post(reverse("orders:cancel_pending", args=[order.order_number]))
        self.assertEqual(resp.json(), {"ok": True, "order_number": order.order_number, "deleted": True})
        self.assertFalse(Order.objects.exists())

    def test_cancel(self):
        order = make_order(payment_status=PaymentStatus.PAID, order_status=OrderStatus.PROCESSING)
        resp = self._post(reverse("orders:cancel", args=[order.order_number]), {"reason": "x" * 100})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["order"]["refund_status"], "pending")
        order.refresh_from_db()
        self.assertEqual(len(order.cancellation_reason), 64)

    def test_cancel_too_early(self):
        order = make_order(payment_status=PaymentStatus.PAID, order_status=OrderStatus.CONFIRMED)
        resp = self._post(reverse("orders:cancel", args=[order.order_number]))
        self.assertEqual(resp.status_code, 400)

    def test_status(self):
        order = make_order()
        resp = self.client.get(reverse("orders:status", args=[order.order_number]))
        self.assertEqual(resp.json()["order"]["order_status"], "pending_payment")
        self.assertEqual(self.client.get(reverse("orders:status", args=["KAPC-2026-999999"])).status_code, 404)
