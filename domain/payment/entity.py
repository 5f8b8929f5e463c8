"""
支付领域实体 - 一次成功扣款及其退款簿记
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from domain.common.exceptions import DomainValidationException
from domain.common.money import quantize
from domain.common.timeutils import ensure_utc, utc_now


class PaymentStatus(str, Enum):
    """支付状态枚举"""
    PENDING = "pending"                        # 待支付
    PROCESSING = "processing"                  # 处理中
    SUCCEEDED = "succeeded"                    # 支付成功
    FAILED = "failed"                          # 支付失败
    VOIDED = "voided"                          # 已作废
    REFUNDED = "refunded"                      # 已全额退款
    PARTIALLY_REFUNDED = "partially_refunded"  # 部分退款


# 已扣款（可退款）的状态
CAPTURED_STATUSES = frozenset({
    PaymentStatus.SUCCEEDED,
    PaymentStatus.PARTIALLY_REFUNDED,
    PaymentStatus.REFUNDED,
})

_OPEN_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.PROCESSING})


@dataclass
class Payment:
    """
    支付聚合根

    业务规则：
    1. 金额必须大于0，货币为3位字母
    2. SUCCEEDED / FAILED 之后只允许退款簿记变更
    3. Σ(PENDING|PROCESSING|SUCCEEDED 退款) ≤ amount（由退款领域服务在锁内保证）
    """

    id: Optional[int]
    order_id: str
    provider: str
    gateway_payment_reference: Optional[str]
    amount: Decimal
    currency: str
    status: PaymentStatus
    captured_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.amount = quantize(self.amount)
        if self.amount <= 0:
            raise DomainValidationException(f"支付金额必须大于0: {self.amount}", field="amount")
        if not self.currency or len(self.currency) != 3 or not self.currency.isalpha():
            raise DomainValidationException(f"无效的货币代码: {self.currency}", field="currency")
        self.currency = self.currency.upper()
        self.captured_at = ensure_utc(self.captured_at)
        self.created_at = ensure_utc(self.created_at)
        self.updated_at = ensure_utc(self.updated_at)
        if self.metadata is None:
            self.metadata = {}

    @property
    def is_captured(self) -> bool:
        return self.status in CAPTURED_STATUSES

    def mark_processing(self) -> bool:
        if self.status == PaymentStatus.PENDING:
            self.status = PaymentStatus.PROCESSING
            self.updated_at = utc_now()
            return True
        return False

    def mark_succeeded(self, reference: Optional[str] = None) -> bool:
        """
        网关确认扣款成功

        重复确认返回 False；只能从 pending / processing 转为 succeeded
        """
        if self.is_captured:
            return False
        if self.status not in _OPEN_STATUSES:
            raise DomainValidationException(
                f"无法从状态 {self.status.value} 转换为 succeeded",
                field="status",
            )
        self.status = PaymentStatus.SUCCEEDED
        if reference:
            self.gateway_payment_reference = reference
        self.captured_at = utc_now()
        self.updated_at = self.captured_at
        self.failure_reason = None
        return True

    def mark_failed(self, reason: Optional[str] = None) -> bool:
        if self.status == PaymentStatus.FAILED:
            return False
        if self.status not in _OPEN_STATUSES:
            raise DomainValidationException(
                f"无法从状态 {self.status.value} 转换为 failed",
                field="status",
            )
        self.status = PaymentStatus.FAILED
        self.failure_reason = reason
        self.updated_at = utc_now()
        return True

    def mark_voided(self) -> bool:
        if self.status == PaymentStatus.VOIDED:
            return False
        if self.status not in _OPEN_STATUSES:
            raise DomainValidationException(
                f"无法作废状态为 {self.status.value} 的支付",
                field="status",
            )
        self.status = PaymentStatus.VOIDED
        self.updated_at = utc_now()
        return True

    def apply_refund_settlement(self, total_refunded: Decimal) -> bool:
        """退款结算后的簿记：SUCCEEDED <-> PARTIALLY_REFUNDED -> REFUNDED"""
        if not self.is_captured or total_refunded <= 0:
            return False
        target = (
            PaymentStatus.REFUNDED
            if total_refunded >= self.amount
            else PaymentStatus.PARTIALLY_REFUNDED
        )
        if self.status == target:
            return False
        self.status = target
        self.updated_at = utc_now()
        return True

    def record_dispute(self, dispute: dict[str, Any]) -> bool:
        """记录争议快照；同一网关事件重复投递时返回 False"""
        disputes = dict(self.metadata.get("disputes") or {})
        key = str(dispute.get("id"))
        if _same_event(disputes.get(key), dispute.get("event_id")):
            return False
        disputes[key] = dispute
        self.metadata = {**self.metadata, "disputes": disputes}
        self.updated_at = utc_now()
        return True

    def record_charge_refund(self, charge_id: str, amount_refunded_minor: int, event_id: Optional[str]) -> bool:
        """记录网关扣款上的累计退款额；同一网关事件重复投递时返回 False"""
        charges = dict(self.metadata.get("charge_refunds") or {})
        if _same_event(charges.get(charge_id), event_id):
            return False
        charges[charge_id] = {"amount_refunded": amount_refunded_minor, "event_id": event_id}
        self.metadata = {**self.metadata, "charge_refunds": charges}
        self.updated_at = utc_now()
        return True


def _same_event(entry: Optional[dict[str, Any]], event_id: Optional[str]) -> bool:
    return bool(entry and event_id and entry.get("event_id") == event_id)
