from decimal import Decimal

import pytest

from domain.common.exceptions import DomainValidationException, RefundConflictException
from domain.common.money import from_minor_units, quantize, to_minor_units
from domain.order.entity import Order, OrderStatus
from domain.payment.entity import Payment, PaymentStatus
from domain.refund.entity import RefundStatus
from domain.refund.service import map_gateway_refund_status


def make_order(status: OrderStatus = OrderStatus.PAID) -> Order:
    return Order(id="ord_1", customer_id="cus_1", status=status, total_amount=Decimal("1000"), currency="gbp")


def make_payment(status: PaymentStatus = PaymentStatus.SUCCEEDED) -> Payment:
    return Payment(
        id=1,
        order_id="ord_1",
        provider="stripe",
        gateway_payment_reference="pi_1",
        amount=Decimal("1000"),
        currency="GBP",
        status=status,
    )


def test_refunded_statuses_are_derived_only():
    order = make_order()
    with pytest.raises(DomainValidationException):
        order.transition_to(OrderStatus.REFUNDED)
    assert order.status == OrderStatus.PAID


def test_order_lifecycle_transitions():
    order = make_order()
    order.transition_to(OrderStatus.PROCESSING)
    order.transition_to(OrderStatus.SHIPPED)
    with pytest.raises(RefundConflictException):
        order.transition_to(OrderStatus.CANCELLED)
    assert order.status == OrderStatus.SHIPPED


def test_order_settlement_projection():
    order = make_order(OrderStatus.DELIVERED)
    assert order.apply_refund_settlement(Decimal("1000"), Decimal("400"))
    assert order.status == OrderStatus.PARTIALLY_REFUNDED
    assert not order.apply_refund_settlement(Decimal("1000"), Decimal("500"))
    assert order.apply_refund_settlement(Decimal("1000"), Decimal("1000"))
    assert order.status == OrderStatus.REFUNDED
    assert not order.is_refundable()


def test_mark_paid_is_idempotent():
    order = make_order(OrderStatus.PENDING)
    assert order.mark_paid()
    assert not order.mark_paid()
    assert order.status == OrderStatus.PAID


def test_cancelled_order_is_not_refundable():
    order = make_order(OrderStatus.PENDING)
    assert order.mark_cancelled()
    assert order.cancelled_at is not None
    assert not order.is_refundable()


def test_payment_validation():
    with pytest.raises(DomainValidationException):
        Payment(id=None, order_id="o", provider="stripe", gateway_payment_reference=None,
                amount=Decimal("0"), currency="GBP", status=PaymentStatus.PENDING)
    with pytest.raises(DomainValidationException):
        Payment(id=None, order_id="o", provider="stripe", gateway_payment_reference=None,
                amount=Decimal("1"), currency="GB1", status=PaymentStatus.PENDING)


def test_payment_success_is_reported_once():
    payment = make_payment(PaymentStatus.PENDING)
    assert payment.mark_succeeded("pi_2")
    assert payment.gateway_payment_reference == "pi_2"
    assert payment.captured_at is not None
    assert not payment.mark_succeeded()
    with pytest.raises(DomainValidationException):
        payment.mark_failed("too late")


def test_payment_refund_bookkeeping():
    payment = make_payment()
    assert payment.apply_refund_settlement(Decimal("400"))
    assert payment.status == PaymentStatus.PARTIALLY_REFUNDED
    assert payment.apply_refund_settlement(Decimal("1000"))
    assert payment.status == PaymentStatus.REFUNDED
    assert payment.is_captured


def test_dispute_is_recorded_in_metadata():
    payment = make_payment()
    assert payment.record_dispute({"id": "dp_1", "status": "needs_response", "event_id": "evt_1"})
    assert payment.record_dispute({"id": "dp_1", "status": "won", "event_id": "evt_2"})
    assert payment.metadata["disputes"] == {"dp_1": {"id": "dp_1", "status": "won", "event_id": "evt_2"}}


def test_redelivered_gateway_event_does_not_change_payment():
    payment = make_payment()
    assert payment.record_dispute({"id": "dp_1", "status": "won", "event_id": "evt_2"})
    assert not payment.record_dispute({"id": "dp_1", "status": "won", "event_id": "evt_2"})

    assert payment.record_charge_refund("ch_1", 25000, "evt_5")
    assert not payment.record_charge_refund("ch_1", 25000, "evt_5")
    assert payment.record_charge_refund("ch_1", 50000, "evt_6")
    assert payment.metadata["charge_refunds"]["ch_1"] == {"amount_refunded": 50000, "event_id": "evt_6"}


def test_money_helpers():
    assert quantize("10.005") == Decimal("10.01")
    assert to_minor_units(Decimal("400.00"), "GBP") == 40000
    assert to_minor_units(Decimal("400"), "JPY") == 400
    assert from_minor_units(12345, "gbp") == Decimal("123.45")


@pytest.mark.parametrize(
    "gateway_status, expected",
    [
        ("pending", RefundStatus.PROCESSING),
        ("succeeded", RefundStatus.SUCCEEDED),
        ("failed", RefundStatus.FAILED),
        ("canceled", RefundStatus.CANCELLED),
        ("requires_action", RefundStatus.PROCESSING),
        ("something_new", RefundStatus.PROCESSING),
        (None, RefundStatus.PROCESSING),
    ],
)
def test_gateway_refund_status_mapping(gateway_status, expected):
    assert map_gateway_refund_status(gateway_status) == expected
