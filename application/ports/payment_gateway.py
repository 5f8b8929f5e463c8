"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
"""
from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable

from application.dtos.payments import (
    GatewayRefundRequest,
    GatewayRefundResult,
    WebhookEvent,
)


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for third-party payment providers.

    Implementations are async, bounded by a timeout, and raise
    ``PaymentGatewayTimeoutException`` when the outcome is unknown and
    ``PaymentGatewayException`` when the provider rejected the call.
    """

    provider: str

    async def create_refund(self, req: GatewayRefundRequest) -> GatewayRefundResult: ...

    async def retrieve_refund(self, reference: str) -> GatewayRefundResult: ...

    async def find_refund(
        self, payment_reference: str, refund_id: int
    ) -> Optional[GatewayRefundResult]:
        """Look up an attempt by ``metadata.refund_id`` when no reference was stored."""
        ...

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent: ...
