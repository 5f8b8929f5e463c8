"""
Stripe Refunds adapter using the official stripe-python SDK.

Notes on SDK usage:
- Refunds are created against the PaymentIntent with an idempotency key per
  attempt, so a re-submission after a lost response is deduplicated by Stripe.
- The API key is passed per request instead of mutating ``stripe.api_key``.
- Webhooks are verified with ``stripe.WebhookSignature.verify_header`` on the
  raw body before any JSON parsing.
"""
from __future__ import annotations

import json
from typing import Any, Optional

import stripe

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
from shared.codes.payment_codes import (
    DEFAULT_STRIPE_REFUND_REASON,
    STRIPE_REFUND_REASONS,
    PaymentCode,
)
from core.settings import payment_settings
from core.logging_config import get_logger


logger = get_logger(__name__)


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from a StripeObject or plain dict."""
    try:
        value = obj[name]
    except (KeyError, TypeError, IndexError):
        return default
    return default if value is None else value


def _plain_metadata(meta: Any) -> dict[str, Any]:
    if not meta:
        return {}
    return {str(k): meta[k] for k in meta.keys()}


def map_refund_reason(reason: Optional[str]) -> str:
    """Internal refund reason -> one of Stripe's accepted reasons."""
    value = (reason or "").lower()
    return value if value in STRIPE_REFUND_REASONS else DEFAULT_STRIPE_REFUND_REASON


class StripeClient(BasePaymentClient):
    provider = "stripe"
    transient_errors = (stripe.APIConnectionError,)

    def __init__(
        self,
        *,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        api_version: Optional[str] = None,
    ):
        super().__init__(
            timeouts=payment_settings.timeouts.model_dump(),
            retry={"max": payment_settings.retry.max, "base": payment_settings.retry.base_backoff},
        )
        self._secret_key = secret_key or payment_settings.stripe.secret_key
        self._webhook_secret = webhook_secret or payment_settings.stripe.webhook_secret
        self._api_version = api_version or payment_settings.stripe.api_version
        if not self._secret_key:
            raise RuntimeError("PAYMENT__STRIPE__SECRET_KEY not configured")

    def _request_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {"api_key": self._secret_key}
        if self._api_version:
            options["stripe_version"] = self._api_version
        return options

    def _to_result(self, refund: Any) -> GatewayRefundResult:
        currency = _field(refund, "currency")
        return GatewayRefundResult(
            reference=str(_field(refund, "id")),
            status=str(_field(refund, "status", "pending")),
            provider=self.provider,
            amount_minor=_field(refund, "amount"),
            currency=currency.upper() if currency else None,
            failure_reason=_field(refund, "failure_reason"),
            metadata=_plain_metadata(_field(refund, "metadata")),
        )

    async def _invoke(self, operation: str, fn, /, **kwargs: Any) -> Any:
        """Translate SDK errors into gateway exceptions."""
        try:
            return await self._call(operation, fn, **kwargs, **self._request_options())
        except stripe.APIConnectionError as exc:
            # Retries exhausted: the request may or may not have reached Stripe
            raise PaymentGatewayTimeoutException(
                f"stripe {operation} connection failed: {exc.user_message or exc}",
                provider=self.provider,
                details={"operation": operation},
            ) from exc
        except stripe.RateLimitError as exc:
            raise PaymentGatewayException(
                exc.user_message or str(exc),
                provider=self.provider,
                gateway_code=exc.code or "rate_limit",
                code=PaymentCode.RATE_LIMITED,
            ) from exc
        except (stripe.APIError, stripe.IdempotencyError) as exc:
            # Stripe may have executed the request: outcome unknown, not a rejection
            raise self._unavailable(operation, exc) from exc
        except stripe.StripeError as exc:
            if (exc.http_status or 0) >= 500:
                raise self._unavailable(operation, exc) from exc
            raise PaymentGatewayException(
                exc.user_message or str(exc),
                provider=self.provider,
                gateway_code=exc.code,
                details={"http_status": exc.http_status, "operation": operation},
            ) from exc

    def _unavailable(self, operation: str, exc: stripe.StripeError) -> PaymentGatewayUnavailableException:
        return PaymentGatewayUnavailableException(
            f"stripe {operation} outcome unknown: {exc.user_message or exc}",
            provider=self.provider,
            gateway_code=exc.code,
            details={"http_status": exc.http_status, "operation": operation},
        )

    async def create_refund(self, req: GatewayRefundRequest) -> GatewayRefundResult:
        self._log(
            "gateway_refund_create_request",
            payment_reference=req.payment_reference,
            amount_minor=req.amount_minor,
            idempotency_key=req.idempotency_key,
        )
        refund = await self._invoke(
            "create_refund",
            stripe.Refund.create,
            payment_intent=req.payment_reference,
            amount=req.amount_minor,
            reason=map_refund_reason(req.reason),
            metadata=req.metadata,
            idempotency_key=req.idempotency_key,
        )
        result = self._to_result(refund)
        self._log("gateway_refund_create_response", reference=result.reference, status=result.status)
        return result

    async def retrieve_refund(self, reference: str) -> GatewayRefundResult:
        refund = await self._invoke("retrieve_refund", stripe.Refund.retrieve, id=reference)
        return self._to_result(refund)

    async def find_refund(self, payment_reference: str, refund_id: int) -> Optional[GatewayRefundResult]:
        page = await self._invoke(
            "list_refunds",
            stripe.Refund.list,
            payment_intent=payment_reference,
            limit=100,
        )
        matches = [
            r for r in (_field(page, "data", []) or [])
            if str(_field(_field(r, "metadata", {}), "refund_id", "")) == str(refund_id)
        ]
        if not matches:
            return None
        latest = max(matches, key=lambda r: _field(r, "created", 0))
        return self._to_result(latest)

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:
        if not self._webhook_secret:
            raise WebhookVerificationException("Missing PAYMENT__STRIPE__WEBHOOK_SECRET", provider=self.provider)
        lowered = {str(k).lower(): v for k, v in headers.items()}
        sig = lowered.get("stripe-signature")
        if not sig:
            raise WebhookVerificationException("Missing Stripe-Signature header", provider=self.provider)
        try:
            payload = body.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload,
                sig,
                self._webhook_secret,
                payment_settings.webhook.tolerance_seconds,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
            logger.warning("webhook_signature_invalid", provider=self.provider, error=str(exc))
            raise WebhookVerificationException(f"Invalid signature: {exc}", provider=self.provider) from exc

        try:
            event = json.loads(payload)
        except ValueError as exc:
            raise WebhookVerificationException("Webhook body is not valid JSON", provider=self.provider) from exc
        return WebhookEvent(
            id=str(event.get("id")),
            type=str(event.get("type")),
            provider=self.provider,
            data=event.get("data", {}) or {},
            raw_headers=headers,
            raw_body=body,
        )
