"""
Razorpay Refunds adapter using the official razorpay-python SDK.

Notes on SDK usage:
- Refunds are created on the payment (``payment.refund``) with the attempt key as
  ``receipt`` and the refund metadata as ``notes``; a lost response is found
  again through ``notes.refund_id``.
- Webhooks are verified with ``utility.verify_webhook_signature`` (HMAC-SHA256
  hex of the raw body) before any JSON parsing.
- Webhook entities are normalized to the object shape the webhook router reads:
  ``notes`` become ``metadata`` and payment errors become ``last_payment_error``.
"""
from __future__ import annotations

import json
from typing import Any, Optional

import razorpay
import requests
from razorpay.errors import (
    BadRequestError,
    GatewayError,
    ServerError,
    SignatureVerificationError,
)

from application.dtos.payments import (
    GatewayRefundRequest,
    GatewayRefundResult,
    WebhookEvent,
)
from domain.common.exceptions import (
    PaymentGatewayException,
    PaymentGatewayTimeoutException,
    PaymentGatewayUnavailableException,
    WebhookVerificationException,
)
from infrastructure.external.payments.base import BasePaymentClient
from core.settings import payment_settings
from core.logging_config import get_logger


logger = get_logger(__name__)

# Order matters: refund events also carry the payment entity
_ENTITY_KEYS = ("refund", "payment", "order")


def _notes(value: Any) -> dict[str, Any]:
    # Razorpay sends empty notes as []
    if not isinstance(value, dict):
        return {}
    return {str(k): v for k, v in value.items()}


def normalize_entity(kind: str, entity: dict[str, Any]) -> dict[str, Any]:
    """Razorpay entity -> object shape shared with the other gateways."""
    obj = dict(entity)
    obj["metadata"] = _notes(entity.get("notes"))
    if kind == "payment" and entity.get("error_description"):
        obj["last_payment_error"] = {
            "code": entity.get("error_code"),
            "message": entity.get("error_description"),
        }
    if kind == "refund" and entity.get("status") == "failed":
        obj.setdefault("failure_reason", entity.get("error_description") or "failed")
    return obj


class RazorpayClient(BasePaymentClient):
    provider = "razorpay"
    # Razorpay does not deduplicate refunds by receipt: only retry calls that never connected
    transient_errors = (requests.ConnectTimeout,)

    def __init__(
        self,
        *,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        webhook_secret: Optional[str] = None,
    ):
        super().__init__(
            timeouts=payment_settings.timeouts.model_dump(),
            retry={"max": payment_settings.retry.max, "base": payment_settings.retry.base_backoff},
        )
        key_id = key_id or payment_settings.razorpay.key_id
        key_secret = key_secret or payment_settings.razorpay.key_secret
        self._webhook_secret = webhook_secret or payment_settings.razorpay.webhook_secret
        if not key_id or not key_secret:
            raise RuntimeError("PAYMENT__RAZORPAY__KEY_ID / KEY_SECRET not configured")
        self._client = razorpay.Client(auth=(key_id, key_secret))

    def _to_result(self, refund: dict[str, Any]) -> GatewayRefundResult:
        currency = refund.get("currency")
        return GatewayRefundResult(
            reference=str(refund.get("id")),
            status=str(refund.get("status") or "pending"),
            provider=self.provider,
            amount_minor=refund.get("amount"),
            currency=currency.upper() if currency else None,
            failure_reason=refund.get("error_description"),
            metadata=_notes(refund.get("notes")),
        )

    async def _invoke(self, operation: str, fn, /, *args: Any) -> Any:
        """Translate SDK errors into gateway exceptions."""

        def _run():
            return fn(*args)

        try:
            return await self._call(operation, _run)
        except (requests.ConnectionError, requests.Timeout) as exc:
            # Retries exhausted: the request may or may not have reached Razorpay
            raise PaymentGatewayTimeoutException(
                f"razorpay {operation} connection failed: {exc}",
                provider=self.provider,
                details={"operation": operation},
            ) from exc
        except (ServerError, GatewayError) as exc:
            raise PaymentGatewayUnavailableException(
                f"razorpay {operation} outcome unknown: {exc}",
                provider=self.provider,
                gateway_code=getattr(exc, "error_code", None),
                details={"operation": operation},
            ) from exc
        except BadRequestError as exc:
            raise PaymentGatewayException(
                str(exc),
                provider=self.provider,
                gateway_code=getattr(exc, "error_code", None),
                details={"operation": operation},
            ) from exc

    async def create_refund(self, req: GatewayRefundRequest) -> GatewayRefundResult:
        self._log(
            "gateway_refund_create_request",
            payment_reference=req.payment_reference,
            amount_minor=req.amount_minor,
            idempotency_key=req.idempotency_key,
        )
        refund = await self._invoke(
            "create_refund",
            self._client.payment.refund,
            req.payment_reference,
            {
                "amount": req.amount_minor,
                "speed": "normal",
                "receipt": req.idempotency_key,
                "notes": {str(k): str(v) for k, v in req.metadata.items()},
            },
        )
        result = self._to_result(refund)
        self._log("gateway_refund_create_response", reference=result.reference, status=result.status)
        return result

    async def retrieve_refund(self, reference: str) -> GatewayRefundResult:
        refund = await self._invoke("retrieve_refund", self._client.refund.fetch, reference)
        return self._to_result(refund)

    async def find_refund(self, payment_reference: str, refund_id: int) -> Optional[GatewayRefundResult]:
        page = await self._invoke(
            "list_refunds",
            self._client.payment.fetch_multiple_refund,
            payment_reference,
            {"count": 100},
        )
        matches = [
            r for r in (page.get("items") or [])
            if str(_notes(r.get("notes")).get("refund_id", "")) == str(refund_id)
        ]
        if not matches:
            return None
        latest = max(matches, key=lambda r: r.get("created_at") or 0)
        return self._to_result(latest)

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:
        if not self._webhook_secret:
            raise WebhookVerificationException("Missing PAYMENT__RAZORPAY__WEBHOOK_SECRET", provider=self.provider)
        lowered = {str(k).lower(): v for k, v in headers.items()}
        sig = lowered.get("x-razorpay-signature")
        if not sig:
            raise WebhookVerificationException("Missing X-Razorpay-Signature header", provider=self.provider)
        try:
            payload = body.decode("utf-8")
            verified = self._client.utility.verify_webhook_signature(payload, sig, self._webhook_secret)
        except (SignatureVerificationError, UnicodeDecodeError) as exc:
            logger.warning("webhook_signature_invalid", provider=self.provider, error=str(exc))
            raise WebhookVerificationException(f"Invalid signature: {exc}", provider=self.provider) from exc
        if verified is False:
            logger.warning("webhook_signature_invalid", provider=self.provider)
            raise WebhookVerificationException("Invalid signature", provider=self.provider)

        try:
            event = json.loads(payload)
        except ValueError as exc:
            raise WebhookVerificationException("Webhook body is not valid JSON", provider=self.provider) from exc

        event_id = lowered.get("x-razorpay-event-id") or event.get("id")
        event_type = event.get("event")
        if not event_id or not event_type:
            raise WebhookVerificationException("Webhook is missing event id or type", provider=self.provider)

        entities = event.get("payload") or {}
        obj: dict[str, Any] = {}
        for kind in _ENTITY_KEYS:
            entity = (entities.get(kind) or {}).get("entity")
            if entity:
                obj = normalize_entity(kind, entity)
                break
        return WebhookEvent(
            id=str(event_id),
            type=str(event_type),
            provider=self.provider,
            data={"object": obj, "payload": entities},
            raw_headers=headers,
            raw_body=body,
        )
