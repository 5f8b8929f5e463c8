import hashlib
import hmac
import json
import time

import pytest

from application.dtos.payments import GatewayRefundRequest
from domain.common.exceptions import (
    PaymentGatewayException,
    PaymentGatewayTimeoutException,
    PaymentGatewayUnavailableException,
    WebhookVerificationException,
)


stripe = pytest.importorskip("stripe")

WEBHOOK_SECRET = "whsec_test_secret"


def make_client():
    from infrastructure.external.payments.stripe_client import StripeClient

    return StripeClient(secret_key="sk_test_123", webhook_secret=WEBHOOK_SECRET)


def sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    ts = timestamp or int(time.time())
    digest = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def refund_request(**kwargs) -> GatewayRefundRequest:
    values = dict(
        payment_reference="pi_1",
        amount_minor=40000,
        currency="gbp",
        reason="product_not_received",
        idempotency_key="refund-7-attempt-0",
        metadata={"refund_id": "7", "order_id": "ord_1", "attempt": "0"},
    )
    values.update(kwargs)
    return GatewayRefundRequest(**values)


def test_parse_webhook_verifies_signature():
    payload = json.dumps({
        "id": "evt_1",
        "type": "refund.updated",
        "data": {"object": {"id": "re_1", "status": "succeeded"}},
    })

    event = make_client().parse_webhook({"Stripe-Signature": sign(payload)}, payload.encode())

    assert event.id == "evt_1"
    assert event.type == "refund.updated"
    assert event.provider == "stripe"
    assert event.data["object"]["status"] == "succeeded"


def test_parse_webhook_rejects_bad_or_missing_signature():
    payload = json.dumps({"id": "evt_1", "type": "refund.updated", "data": {}})
    client = make_client()

    with pytest.raises(WebhookVerificationException):
        client.parse_webhook({"Stripe-Signature": sign(payload, secret="whsec_other")}, payload.encode())
    with pytest.raises(WebhookVerificationException):
        client.parse_webhook({}, payload.encode())
    with pytest.raises(WebhookVerificationException):
        # signed body was altered after signing
        client.parse_webhook({"stripe-signature": sign(payload)}, payload.replace("evt_1", "evt_2").encode())


def test_parse_webhook_rejects_stale_timestamp():
    payload = json.dumps({"id": "evt_1", "type": "refund.updated", "data": {}})
    header = sign(payload, timestamp=int(time.time()) - 3600)
    with pytest.raises(WebhookVerificationException):
        make_client().parse_webhook({"Stripe-Signature": header}, payload.encode())


@pytest.mark.asyncio
async def test_create_refund_sends_idempotency_key_and_maps_reason(monkeypatch):
    captured = {}

    def fake_create(**kwargs):
        captured.update(kwargs)
        return {
            "id": "re_1",
            "status": "pending",
            "amount": kwargs["amount"],
            "currency": "gbp",
            "metadata": kwargs["metadata"],
        }

    monkeypatch.setattr(stripe.Refund, "create", fake_create)

    result = await make_client().create_refund(refund_request())

    assert captured["payment_intent"] == "pi_1"
    assert captured["idempotency_key"] == "refund-7-attempt-0"
    assert captured["reason"] == "requested_by_customer"
    assert captured["api_key"] == "sk_test_123"
    assert result.reference == "re_1"
    assert result.status == "pending"
    assert result.currency == "GBP"
    assert result.metadata["attempt"] == "0"


@pytest.mark.asyncio
async def test_create_refund_translates_stripe_errors(monkeypatch):
    def fake_create(**kwargs):
        raise stripe.InvalidRequestError("No such payment_intent", "payment_intent", code="resource_missing")

    monkeypatch.setattr(stripe.Refund, "create", fake_create)

    with pytest.raises(PaymentGatewayException) as exc:
        await make_client().create_refund(refund_request())

    assert not isinstance(exc.value, PaymentGatewayTimeoutException)
    assert exc.value.gateway_code == "resource_missing"


@pytest.mark.asyncio
async def test_server_errors_leave_the_outcome_unknown(monkeypatch):
    errors = [
        stripe.APIError("internal error", http_status=500),
        stripe.IdempotencyError("keys for idempotent requests can only be used with the same parameters"),
        stripe.InvalidRequestError("bad gateway", None, http_status=502),
    ]

    for error in errors:
        def fake_create(**kwargs):
            raise error

        monkeypatch.setattr(stripe.Refund, "create", fake_create)
        with pytest.raises(PaymentGatewayUnavailableException):
            await make_client().create_refund(refund_request())


@pytest.mark.asyncio
async def test_connection_errors_become_timeouts_after_retries(monkeypatch):
    calls = []

    def fake_create(**kwargs):
        calls.append(kwargs["idempotency_key"])
        raise stripe.APIConnectionError("connection reset")

    monkeypatch.setattr(stripe.Refund, "create", fake_create)

    with pytest.raises(PaymentGatewayTimeoutException):
        await make_client().create_refund(refund_request())

    # every retry reuses the same idempotency key
    assert len(calls) > 1
    assert set(calls) == {"refund-7-attempt-0"}


@pytest.mark.asyncio
async def test_find_refund_matches_metadata_and_picks_latest(monkeypatch):
    def fake_list(**kwargs):
        assert kwargs["payment_intent"] == "pi_1"
        return {"data": [
            {"id": "re_a", "status": "failed", "created": 100, "metadata": {"refund_id": "7", "attempt": "0"}},
            {"id": "re_b", "status": "pending", "created": 200, "metadata": {"refund_id": "7", "attempt": "1"}},
            {"id": "re_c", "status": "succeeded", "created": 300, "metadata": {"refund_id": "8"}},
        ]}

    monkeypatch.setattr(stripe.Refund, "list", fake_list)
    client = make_client()

    found = await client.find_refund("pi_1", 7)
    missing = await client.find_refund("pi_1", 9)

    assert found.reference == "re_b"
    assert found.metadata["attempt"] == "1"
    assert missing is None


def test_gateway_factory_rejects_unknown_provider():
    from infrastructure.external.payments import get_payment_gateway

    with pytest.raises(PaymentGatewayException):
        get_payment_gateway("paypal")
