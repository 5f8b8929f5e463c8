"""
退款领域实体 - 对一笔支付的一次退款请求及其状态机
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from domain.common.exceptions import DomainValidationException, RefundConflictException
from domain.common.money import quantize
from domain.common.timeutils import ensure_utc, utc_now


class RefundStatus(str, Enum):
    """退款状态枚举"""
    PENDING = "pending"          # 已落库，等待网关受理
    PROCESSING = "processing"    # 网关已受理
    SUCCEEDED = "succeeded"      # 退款成功
    FAILED = "failed"            # 网关拒绝/失败
    CANCELLED = "cancelled"      # 已取消


class RefundReason(str, Enum):
    REQUESTED_BY_CUSTOMER = "requested_by_customer"
    DUPLICATE = "duplicate"
    FRAUDULENT = "fraudulent"
    ORDER_CANCELLED = "order_cancelled"
    PRODUCT_NOT_RECEIVED = "product_not_received"
    PRODUCT_UNACCEPTABLE = "product_unacceptable"
    OTHER = "other"


REFUND_TRANSITIONS: dict[RefundStatus, frozenset[RefundStatus]] = {
    RefundStatus.PENDING: frozenset({
        RefundStatus.PROCESSING,
        RefundStatus.CANCELLED,
        RefundStatus.FAILED,  # 网关同步拒绝
    }),
    RefundStatus.PROCESSING: frozenset({RefundStatus.SUCCEEDED, RefundStatus.FAILED}),
    RefundStatus.FAILED: frozenset({RefundStatus.PENDING}),  # 仅限重试
    RefundStatus.SUCCEEDED: frozenset(),
    RefundStatus.CANCELLED: frozenset(),
}

# 计入"已占用可退额度"的状态
ACTIVE_REFUND_STATUSES = frozenset({
    RefundStatus.PENDING,
    RefundStatus.PROCESSING,
    RefundStatus.SUCCEEDED,
})

IN_FLIGHT_REFUND_STATUSES = frozenset({RefundStatus.PENDING, RefundStatus.PROCESSING})

DEFAULT_MAX_RETRIES = 3


@dataclass
class Refund:
    """
    退款实体

    业务规则：
    1. 金额必须大于0
    2. 状态只能沿 REFUND_TRANSITIONS 流转，非法转换抛出 RefundConflictException 且不修改实体
    3. FAILED 仅在 retry_count < max_retries 时可重试，重试复用同一条记录
    4. SUCCEEDED / CANCELLED 为终态
    """

    id: Optional[int]
    payment_id: int
    order_id: str
    amount: Decimal
    currency: str
    status: RefundStatus
    reason: str
    requested_by: str
    gateway_refund_reference: Optional[str] = None
    notes: Optional[str] = None
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    failure_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    last_retried_by: Optional[str] = None
    last_retried_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.amount = quantize(self.amount)
        if self.amount <= 0:
            raise DomainValidationException(f"退款金额必须大于0: {self.amount}", field="amount")
        self.currency = (self.currency or "").upper()
        self.last_retried_at = ensure_utc(self.last_retried_at)
        self.processed_at = ensure_utc(self.processed_at)
        self.settled_at = ensure_utc(self.settled_at)
        self.cancelled_at = ensure_utc(self.cancelled_at)
        self.created_at = ensure_utc(self.created_at)
        self.updated_at = ensure_utc(self.updated_at)
        if self.metadata is None:
            self.metadata = {}

    # ---- 状态机 ----

    def can_transition_to(self, target: RefundStatus) -> bool:
        return target in REFUND_TRANSITIONS.get(self.status, frozenset())

    def _ensure_transition(self, target: RefundStatus) -> None:
        if not self.can_transition_to(target):
            raise RefundConflictException(
                f"Refund {self.id} cannot move from {self.status.value} to {target.value}",
                current_status=self.status.value,
                target_status=target.value,
            )

    @property
    def is_terminal(self) -> bool:
        if self.status in (RefundStatus.SUCCEEDED, RefundStatus.CANCELLED):
            return True
        return self.status == RefundStatus.FAILED and not self.can_retry

    @property
    def can_retry(self) -> bool:
        return self.status == RefundStatus.FAILED and self.retry_count < self.max_retries

    @property
    def attempt_key(self) -> str:
        """当前网关尝试的幂等键（每次重试一个新键）"""
        return f"refund-{self.id}-attempt-{self.retry_count}"

    def is_superseded_attempt(self, reference: Optional[str], attempt: Optional[Any] = None) -> bool:
        """网关退款对象是否属于已被重试取代的旧尝试"""
        previous = self.metadata.get("previous_gateway_references") or []
        if reference and reference in previous:
            return True
        if reference and self.gateway_refund_reference and reference != self.gateway_refund_reference:
            return True
        return attempt is not None and str(attempt) != str(self.retry_count)

    def mark_processing(self, reference: Optional[str] = None) -> None:
        self._ensure_transition(RefundStatus.PROCESSING)
        self.status = RefundStatus.PROCESSING
        if reference:
            self.gateway_refund_reference = reference
        self.processed_at = utc_now()
        self.updated_at = self.processed_at

    def mark_succeeded(self, reference: Optional[str] = None) -> None:
        self._ensure_transition(RefundStatus.SUCCEEDED)
        self.status = RefundStatus.SUCCEEDED
        if reference:
            self.gateway_refund_reference = reference
        self.settled_at = utc_now()
        self.updated_at = self.settled_at
        self.failure_reason = None

    def mark_failed(self, reason: Optional[str] = None, reference: Optional[str] = None) -> None:
        self._ensure_transition(RefundStatus.FAILED)
        self.status = RefundStatus.FAILED
        if reference:
            self.gateway_refund_reference = reference
        self.failure_reason = reason or "Unknown gateway failure"
        self.updated_at = utc_now()

    def cancel(self, cancelled_by: str) -> None:
        if self.status != RefundStatus.PENDING:
            raise RefundConflictException(
                f"Only PENDING refunds can be cancelled. Current status: {self.status.value}",
                current_status=self.status.value,
                target_status=RefundStatus.CANCELLED.value,
            )
        self.status = RefundStatus.CANCELLED
        self.cancelled_by = cancelled_by
        self.cancelled_at = utc_now()
        self.updated_at = self.cancelled_at

    def ensure_can_retry(self) -> None:
        if self.status != RefundStatus.FAILED:
            raise RefundConflictException(
                f"Only FAILED refunds can be retried. Current status: {self.status.value}",
                current_status=self.status.value,
                target_status=RefundStatus.PENDING.value,
            )
        if self.retry_count >= self.max_retries:
            raise RefundConflictException(
                f"Refund {self.id} reached the retry limit of {self.max_retries}",
                current_status=self.status.value,
                target_status=RefundStatus.PENDING.value,
            )

    def reopen_for_retry(self, requested_by: str) -> None:
        """FAILED -> PENDING，新的网关尝试"""
        self.ensure_can_retry()
        self.status = RefundStatus.PENDING
        self.retry_count += 1
        self.failure_reason = None
        # 新尝试的网关引用由网关重新返回，旧引用保留在 metadata 中备查
        if self.gateway_refund_reference:
            previous = list(self.metadata.get("previous_gateway_references") or [])
            previous.append(self.gateway_refund_reference)
            self.metadata = {**self.metadata, "previous_gateway_references": previous}
        self.gateway_refund_reference = None
        self.processed_at = None
        self.last_retried_by = requested_by
        self.last_retried_at = utc_now()
        self.updated_at = self.last_retried_at
