"""
Refund domain events.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Optional

from domain.common.events import DomainEvent


@dataclass(kw_only=True)
class RefundEvent(DomainEvent):
    refund_id: int
    order_id: str
    payment_id: int


@dataclass(kw_only=True)
class RefundInitiated(RefundEvent):
    event_type: ClassVar[str] = "refund.initiated"

    amount: str
    currency: str
    status: str
    requested_by: str


@dataclass(kw_only=True)
class RefundStatusUpdated(RefundEvent):
    event_type: ClassVar[str] = "refund.status-updated"

    previous_status: str
    new_status: str
    gateway_refund_reference: Optional[str] = None
    retry_count: int = 0


@dataclass(kw_only=True)
class RefundFailed(RefundEvent):
    event_type: ClassVar[str] = "refund.failed"

    reason: Optional[str] = None
    retry_count: int = 0
    can_retry: bool = False


@dataclass(kw_only=True)
class RefundCancelled(RefundEvent):
    event_type: ClassVar[str] = "refund.cancelled"

    cancelled_by: str
