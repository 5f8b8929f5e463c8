"""
订单领域实体 - 订单聚合根（退款核心只关心状态与金额）
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from domain.common.exceptions import DomainValidationException, RefundConflictException
from domain.common.money import quantize
from domain.common.timeutils import ensure_utc, utc_now


class OrderStatus(str, Enum):
    """订单状态枚举"""
    PENDING = "pending"                        # 待支付
    PAID = "paid"                              # 已支付
    PROCESSING = "processing"                  # 备货中
    SHIPPED = "shipped"                        # 已发货
    DELIVERED = "delivered"                    # 已送达
    PARTIALLY_REFUNDED = "partially_refunded"  # 部分退款
    REFUNDED = "refunded"                      # 全额退款
    CANCELLED = "cancelled"                    # 已取消


ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({
        OrderStatus.PROCESSING,
        OrderStatus.CANCELLED,
        OrderStatus.PARTIALLY_REFUNDED,
        OrderStatus.REFUNDED,
    }),
    OrderStatus.PROCESSING: frozenset({
        OrderStatus.SHIPPED,
        OrderStatus.CANCELLED,
        OrderStatus.PARTIALLY_REFUNDED,
        OrderStatus.REFUNDED,
    }),
    OrderStatus.SHIPPED: frozenset({
        OrderStatus.DELIVERED,
        OrderStatus.PARTIALLY_REFUNDED,
        OrderStatus.REFUNDED,
    }),
    OrderStatus.DELIVERED: frozenset({OrderStatus.PARTIALLY_REFUNDED, OrderStatus.REFUNDED}),
    OrderStatus.PARTIALLY_REFUNDED: frozenset({OrderStatus.PARTIALLY_REFUNDED, OrderStatus.REFUNDED}),
    OrderStatus.REFUNDED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

REFUNDABLE_ORDER_STATUSES = frozenset({
    OrderStatus.PAID,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
    OrderStatus.PARTIALLY_REFUNDED,
})

# 由退款结算推导，不允许客户端直接设置
DERIVED_ORDER_STATUSES = frozenset({OrderStatus.PARTIALLY_REFUNDED, OrderStatus.REFUNDED})


@dataclass
class Order:
    """
    订单聚合根

    业务规则：
    1. 状态只能沿 ORDER_TRANSITIONS 流转
    2. REFUNDED / PARTIALLY_REFUNDED 只能由退款结算推导
    """

    id: str
    customer_id: Optional[str]
    status: OrderStatus
    total_amount: Decimal
    currency: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    def __post_init__(self):
        self.total_amount = quantize(self.total_amount)
        if self.total_amount < 0:
            raise DomainValidationException(
                f"订单金额不能为负: {self.total_amount}",
                field="total_amount",
            )
        self.currency = (self.currency or "").upper()
        self.created_at = ensure_utc(self.created_at)
        self.updated_at = ensure_utc(self.updated_at)
        self.cancelled_at = ensure_utc(self.cancelled_at)

    def can_transition_to(self, target: OrderStatus) -> bool:
        return target in ORDER_TRANSITIONS.get(self.status, frozenset())

    def _transition(self, target: OrderStatus) -> None:
        if not self.can_transition_to(target):
            raise RefundConflictException(
                f"Order {self.id} cannot move from {self.status.value} to {target.value}",
                current_status=self.status.value,
                target_status=target.value,
            )
        self.status = target
        self.updated_at = utc_now()

    def transition_to(self, target: OrderStatus) -> None:
        """订单生命周期流转（退款派生状态除外）"""
        if target in DERIVED_ORDER_STATUSES:
            raise DomainValidationException(
                f"订单状态 {target.value} 只能由退款结算产生",
                field="status",
            )
        self._transition(target)

    def mark_paid(self) -> bool:
        """支付成功回调：PENDING -> PAID；重复回调不重复变更"""
        if self.status == OrderStatus.PAID:
            return False
        if self.status != OrderStatus.PENDING:
            return False
        self._transition(OrderStatus.PAID)
        return True

    def mark_cancelled(self) -> bool:
        if self.status == OrderStatus.CANCELLED or not self.can_transition_to(OrderStatus.CANCELLED):
            return False
        self._transition(OrderStatus.CANCELLED)
        self.cancelled_at = self.updated_at
        return True

    def apply_refund_settlement(self, total_paid: Decimal, total_refunded: Decimal) -> bool:
        """根据已成功退款总额推导订单状态，返回是否发生变更"""
        if total_refunded <= 0:
            return False
        target = (
            OrderStatus.REFUNDED
            if total_refunded >= total_paid
            else OrderStatus.PARTIALLY_REFUNDED
        )
        if self.status == target:
            return False
        self._transition(target)
        return True

    def is_refundable(self) -> bool:
        return self.status in REFUNDABLE_ORDER_STATUSES
