"""
Payment domain events.

Dataclass events record payment lifecycle facts reported by the gateway for
downstream handling (cache invalidation, notifications). Domain remains free
of infrastructure imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional

from domain.common.events import DomainEvent


@dataclass(kw_only=True)
class PaymentEvent(DomainEvent):
    order_id: str
    payment_id: Optional[int] = None
    provider: str = ""
    gateway_payment_reference: Optional[str] = None


@dataclass(kw_only=True)
class PaymentSucceeded(PaymentEvent):
    event_type: ClassVar[str] = "payment.succeeded"

    amount: str = ""
    currency: str = ""


@dataclass(kw_only=True)
class PaymentFailed(PaymentEvent):
    event_type: ClassVar[str] = "payment.failed"

    reason: Optional[str] = None


@dataclass(kw_only=True)
class OrderCancelled(PaymentEvent):
    event_type: ClassVar[str] = "order.cancelled"

    reason: Optional[str] = None


@dataclass(kw_only=True)
class ChargeRefunded(PaymentEvent):
    event_type: ClassVar[str] = "charge.refunded"

    charge_id: str = ""
    amount_refunded_minor: int = 0
    currency: str = ""


@dataclass(kw_only=True)
class DisputeCreated(PaymentEvent):
    event_type: ClassVar[str] = "dispute.created"

    dispute_id: str = ""
    status: str = ""
    reason: Optional[str] = None
    amount_minor: int = 0
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(kw_only=True)
class DisputeUpdated(DisputeCreated):
    event_type: ClassVar[str] = "dispute.updated"
