import hashlib
import hmac
import json
from decimal import Decimal

import pytest

from application.dtos.payments import GatewayRefundRequest
from application.dtos.refunds import CreateRefundCommand
from domain.common.exceptions import (
    PaymentGatewayException,
    PaymentGatewayTimeoutException,
    PaymentGatewayUnavailableException,
    WebhookVerificationException,
)
from domain.order.entity import OrderStatus
from domain.payment.entity import PaymentStatus
from domain.refund.entity import RefundStatus


pytest.importorskip("razorpay")
requests = pytest.importorskip("requests")
razorpay_errors = pytest.importorskip("razorpay.errors")

WEBHOOK_SECRET = "rzp_whsec_test"


def make_client():
    from infrastructure.external.payments.razorpay_client import RazorpayClient

    return RazorpayClient(key_id="rzp_test_key", key_secret="rzp_test_secret", webhook_secret=WEBHOOK_SECRET)


def sign(payload: str, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


def razorpay_event(event: str, **entities) -> str:
    return json.dumps({
        "entity": "event",
        "event": event,
        "contains": list(entities),
        "payload": {kind: {"entity": entity} for kind, entity in entities.items()},
    })


def refund_request(**kwargs) -> GatewayRefundRequest:
    values = dict(
        payment_reference="pay_1",
        amount_minor=40000,
        currency="inr",
        reason="requested_by_customer",
        idempotency_key="refund-7-attempt-0",
        metadata={"refund_id": "7", "order_id": "ord_1", "attempt": "0"},
    )
    values.update(kwargs)
    return GatewayRefundRequest(**values)


def test_parse_webhook_verifies_and_normalizes_refund():
    payload = razorpay_event(
        "refund.processed",
        refund={"id": "rfnd_1", "status": "processed", "amount": 40000, "notes": {"refund_id": "7", "attempt": "0"}},
        payment={"id": "pay_1", "status": "captured", "notes": []},
    )
    headers = {"X-Razorpay-Signature": sign(payload), "X-Razorpay-Event-Id": "evt_rzp_1"}

    event = make_client().parse_webhook(headers, payload.encode())

    assert event.id == "evt_rzp_1"
    assert event.type == "refund.processed"
    assert event.provider == "razorpay"
    obj = event.data["object"]
    assert obj["id"] == "rfnd_1"
    assert obj["metadata"] == {"refund_id": "7", "attempt": "0"}


def test_parse_webhook_maps_payment_errors():
    payload = razorpay_event(
        "payment.failed",
        payment={"id": "pay_1", "status": "failed", "error_code": "BAD_REQUEST_ERROR",
                 "error_description": "Payment declined by bank", "notes": []},
    )
    event = make_client().parse_webhook(
        {"x-razorpay-signature": sign(payload), "x-razorpay-event-id": "evt_rzp_2"}, payload.encode()
    )

    assert event.data["object"]["last_payment_error"]["message"] == "Payment declined by bank"
    assert event.data["object"]["metadata"] == {}


def test_parse_webhook_rejects_bad_or_missing_signature():
    payload = razorpay_event("refund.processed", refund={"id": "rfnd_1"})
    client = make_client()

    with pytest.raises(WebhookVerificationException):
        client.parse_webhook({"X-Razorpay-Signature": sign(payload, "other"), "X-Razorpay-Event-Id": "e"},
                             payload.encode())
    with pytest.raises(WebhookVerificationException):
        client.parse_webhook({"X-Razorpay-Event-Id": "e"}, payload.encode())
    with pytest.raises(WebhookVerificationException):
        # no event id in header or body
        client.parse_webhook({"X-Razorpay-Signature": sign(payload)}, payload.encode())


@pytest.mark.asyncio
async def test_create_refund_sends_receipt_and_notes(monkeypatch):
    client = make_client()
    captured = {}

    def fake_refund(payment_id, data):
        captured.update(data, payment_id=payment_id)
        return {"id": "rfnd_1", "status": "pending", "amount": data["amount"], "currency": "INR",
                "notes": data["notes"]}

    monkeypatch.setattr(client._client.payment, "refund", fake_refund)

    result = await client.create_refund(refund_request())

    assert captured["payment_id"] == "pay_1"
    assert captured["receipt"] == "refund-7-attempt-0"
    assert captured["notes"]["attempt"] == "0"
    assert result.reference == "rfnd_1"
    assert result.status == "pending"
    assert result.metadata["refund_id"] == "7"


@pytest.mark.asyncio
async def test_razorpay_errors_are_classified(monkeypatch):
    client = make_client()

    def rejected(payment_id, data):
        raise razorpay_errors.BadRequestError("The refund amount is invalid")

    def server_error(payment_id, data):
        raise razorpay_errors.ServerError("Internal server error")

    monkeypatch.setattr(client._client.payment, "refund", rejected)
    with pytest.raises(PaymentGatewayException) as exc:
        await client.create_refund(refund_request())
    assert not isinstance(exc.value, PaymentGatewayTimeoutException)

    # a 5xx may have been executed: outcome unknown
    monkeypatch.setattr(client._client.payment, "refund", server_error)
    with pytest.raises(PaymentGatewayUnavailableException):
        await client.create_refund(refund_request())


@pytest.mark.asyncio
async def test_only_connect_timeouts_are_retried(monkeypatch):
    client = make_client()
    calls = []

    def unreachable(payment_id, data):
        calls.append(data["receipt"])
        raise requests.ConnectTimeout("connect timed out")

    monkeypatch.setattr(client._client.payment, "refund", unreachable)

    with pytest.raises(PaymentGatewayTimeoutException):
        await client.create_refund(refund_request())
    assert len(calls) > 1


@pytest.mark.asyncio
async def test_find_refund_matches_notes(monkeypatch):
    client = make_client()

    def fake_list(payment_id, data):
        assert payment_id == "pay_1"
        return {"entity": "collection", "items": [
            {"id": "rfnd_a", "status": "failed", "created_at": 100, "notes": {"refund_id": "7", "attempt": "0"}},
            {"id": "rfnd_b", "status": "pending", "created_at": 200, "notes": {"refund_id": "7", "attempt": "1"}},
            {"id": "rfnd_c", "status": "processed", "created_at": 300, "notes": []},
        ]}

    monkeypatch.setattr(client._client.payment, "fetch_multiple_refund", fake_list)

    found = await client.find_refund("pay_1", 7)
    missing = await client.find_refund("pay_1", 9)

    assert found.reference == "rfnd_b"
    assert missing is None


@pytest.fixture
def razorpay_gateway(monkeypatch):
    from infrastructure.external import payments

    client = make_client()
    monkeypatch.setitem(payments._gateways, "razorpay", client)
    return client


@pytest.mark.asyncio
async def test_razorpay_webhooks_drive_the_ledger(container, seed_order, refund_service, razorpay_gateway, events):
    await seed_order()
    _, pending = await seed_order("ord_2", order_status=OrderStatus.PENDING, payment_status=PaymentStatus.PENDING)
    view = await refund_service.create_refund(
        CreateRefundCommand(order_id="ord_1", amount=Decimal("100.00"), requested_by="agent-1")
    )
    service = container.webhook_service

    refund_body = razorpay_event(
        "refund.processed",
        refund={"id": view.gateway_refund_reference, "status": "processed",
                "notes": {"refund_id": str(view.id), "attempt": "0"}},
    )
    captured_body = razorpay_event(
        "payment.captured",
        payment={"id": "pay_9", "status": "captured", "notes": {"payment_id": str(pending.id)}},
    )
    await service.handle_inbound("razorpay", {"X-Razorpay-Signature": sign(refund_body),
                                              "X-Razorpay-Event-Id": "evt_rzp_10"}, refund_body.encode())
    await service.handle_inbound("razorpay", {"X-Razorpay-Signature": sign(captured_body),
                                              "X-Razorpay-Event-Id": "evt_rzp_11"}, captured_body.encode())

    refund = await refund_service.get_refund(view.id, use_cache=False)
    assert refund.status == RefundStatus.SUCCEEDED
    [paid] = events.of("payment.succeeded")
    assert paid.payload["orderId"] == "ord_2"
