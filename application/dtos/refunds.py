"""
Refund DTOs (Pydantic v2) used at the API/application boundary.

All models serialize in camelCase (``model_dump(by_alias=True)``) and accept
either camelCase or snake_case on input.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from domain.order.entity import Order
from domain.payment.entity import Payment
from domain.refund.entity import Refund, RefundReason, RefundStatus
from domain.refund.repository import RefundFilters
from domain.refund.service import RefundEligibility, RefundSummary


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


Money = Decimal


# ---- commands ----

class CreateRefundRequest(CamelModel):
    """Body of ``POST /refunds``."""

    order_id: str = Field(min_length=1, max_length=100)
    amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=15, decimal_places=2)
    reason: RefundReason = RefundReason.REQUESTED_BY_CUSTOMER
    notes: Optional[str] = Field(default=None, max_length=1000)
    metadata: Optional[dict[str, Any]] = None

    @field_validator("order_id")
    @classmethod
    def _strip_order_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("orderId must not be blank")
        return v


class CreateRefundCommand(CreateRefundRequest):
    requested_by: str = Field(default="system", min_length=1, max_length=100)
    idempotency_key: Optional[str] = Field(default=None, min_length=1, max_length=255)


def parse_create_refund(data: dict[str, Any]) -> tuple[Optional[CreateRefundCommand], list[dict[str, str]]]:
    """
    Validate raw input into a command.

    Returns ``(command, [])`` on success and ``(None, errors)`` otherwise, where
    each error is ``{"field": ..., "message": ...}``. Never raises for bad input.
    """
    try:
        return CreateRefundCommand.model_validate(data), []
    except ValidationError as exc:
        errors = []
        for err in exc.errors():
            field = ".".join(str(loc) for loc in err.get("loc", ())) or "body"
            errors.append({"field": field, "message": err.get("msg", "invalid value")})
        return None, errors


class CancelRefundRequest(CamelModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class BulkRefundRequest(CamelModel):
    order_ids: list[str] = Field(min_length=1)
    reason: RefundReason = RefundReason.REQUESTED_BY_CUSTOMER
    notes: Optional[str] = Field(default=None, max_length=1000)


class RefundListQuery(CamelModel):
    order_id: Optional[str] = None
    payment_id: Optional[int] = None
    status: Optional[RefundStatus] = None
    requested_by: Optional[str] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    min_amount: Optional[Decimal] = Field(default=None, ge=0)
    max_amount: Optional[Decimal] = Field(default=None, ge=0)
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    sort_by: Literal["created_at", "amount", "status", "createdAt"] = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1)

    def to_filters(self) -> RefundFilters:
        return RefundFilters(
            order_id=self.order_id,
            payment_id=self.payment_id,
            status=self.status,
            requested_by=self.requested_by,
            currency=self.currency,
            min_amount=self.min_amount,
            max_amount=self.max_amount,
            created_from=self.created_from,
            created_to=self.created_to,
            sort_by="created_at" if self.sort_by == "createdAt" else self.sort_by,
            sort_order=self.sort_order,
        )


# ---- views ----

class OrderSnapshot(CamelModel):
    id: str
    status: str
    total_amount: Money
    currency: str

    @classmethod
    def from_entity(cls, order: Order) -> "OrderSnapshot":
        return cls(
            id=order.id,
            status=order.status.value,
            total_amount=order.total_amount,
            currency=order.currency,
        )


class PaymentSnapshot(CamelModel):
    id: int
    status: str
    amount: Money
    currency: str
    provider: str
    gateway_payment_reference: Optional[str] = None

    @classmethod
    def from_entity(cls, payment: Payment) -> "PaymentSnapshot":
        return cls(
            id=payment.id,  # type: ignore[arg-type]
            status=payment.status.value,
            amount=payment.amount,
            currency=payment.currency,
            provider=payment.provider,
            gateway_payment_reference=payment.gateway_payment_reference,
        )


class RefundView(CamelModel):
    id: int
    payment_id: int
    order_id: str
    amount: Money
    currency: str
    status: RefundStatus
    reason: str
    notes: Optional[str] = None
    gateway_refund_reference: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 0
    can_retry: bool = False
    failure_reason: Optional[str] = None
    requested_by: str
    cancelled_by: Optional[str] = None
    last_retried_by: Optional[str] = None
    last_retried_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    order: Optional[OrderSnapshot] = None
    payment: Optional[PaymentSnapshot] = None

    @classmethod
    def from_entity(
        cls,
        refund: Refund,
        *,
        order: Optional[Order] = None,
        payment: Optional[Payment] = None,
    ) -> "RefundView":
        return cls(
            id=refund.id,  # type: ignore[arg-type]
            payment_id=refund.payment_id,
            order_id=refund.order_id,
            amount=refund.amount,
            currency=refund.currency,
            status=refund.status,
            reason=refund.reason,
            notes=refund.notes,
            gateway_refund_reference=refund.gateway_refund_reference,
            retry_count=refund.retry_count,
            max_retries=refund.max_retries,
            can_retry=refund.can_retry,
            failure_reason=refund.failure_reason,
            requested_by=refund.requested_by,
            cancelled_by=refund.cancelled_by,
            last_retried_by=refund.last_retried_by,
            last_retried_at=refund.last_retried_at,
            processed_at=refund.processed_at,
            settled_at=refund.settled_at,
            cancelled_at=refund.cancelled_at,
            created_at=refund.created_at,
            updated_at=refund.updated_at,
            metadata=refund.metadata,
            order=OrderSnapshot.from_entity(order) if order else None,
            payment=PaymentSnapshot.from_entity(payment) if payment else None,
        )


class RefundPage(CamelModel):
    items: list[RefundView]
    total: int
    page: int
    limit: int


class EligibilityView(CamelModel):
    eligible: bool
    reason: Optional[str] = None
    max_refundable_amount: Optional[Money] = None
    currency: Optional[str] = None

    @classmethod
    def from_result(cls, result: RefundEligibility) -> "EligibilityView":
        return cls(
            eligible=result.eligible,
            reason=result.reason,
            max_refundable_amount=result.max_refundable_amount,
            currency=result.currency,
        )


class RefundSummaryView(CamelModel):
    order_id: str
    total_paid: Money
    total_refunded: Money
    pending_refunds: Money
    remaining_refundable: Money
    refund_count: int
    currency: str

    @classmethod
    def from_summary(cls, summary: RefundSummary) -> "RefundSummaryView":
        return cls(
            order_id=summary.order_id,
            total_paid=summary.total_paid,
            total_refunded=summary.total_refunded,
            pending_refunds=summary.pending_refunds,
            remaining_refundable=summary.remaining_refundable,
            refund_count=summary.refund_count,
            currency=summary.currency,
        )


class BulkRefundSuccess(CamelModel):
    order_id: str
    refund_id: int


class BulkRefundFailure(CamelModel):
    order_id: str
    error: str


class BulkRefundResult(CamelModel):
    total: int
    successful: list[BulkRefundSuccess] = Field(default_factory=list)
    failed: list[BulkRefundFailure] = Field(default_factory=list)


class ReconciliationReport(CamelModel):
    scanned: int = 0
    updated: int = 0
    unchanged: int = 0
    resubmitted: int = 0
    errors: int = 0
