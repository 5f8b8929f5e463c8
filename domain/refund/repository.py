"""
退款仓储接口
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional

from .entity import Refund, RefundStatus


@dataclass
class RefundFilters:
    """退款列表过滤条件"""
    order_id: Optional[str] = None
    payment_id: Optional[int] = None
    status: Optional[RefundStatus] = None
    requested_by: Optional[str] = None
    currency: Optional[str] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    sort_by: str = "created_at"
    sort_order: str = "desc"


class RefundRepository(ABC):
    """退款仓储抽象接口"""

    @abstractmethod
    async def create(self, refund: Refund) -> Refund:
        """创建退款记录"""
        pass

    @abstractmethod
    async def get_by_id(self, refund_id: int) -> Optional[Refund]:
        """根据ID获取退款"""
        pass

    @abstractmethod
    async def get_for_update(self, refund_id: int) -> Optional[Refund]:
        """加行锁读取退款，串行化同一退款的状态变更"""
        pass

    @abstractmethod
    async def get_by_gateway_reference(self, reference: str) -> Optional[Refund]:
        """根据网关退款引用获取退款"""
        pass

    @abstractmethod
    async def list_by_order(self, order_id: str) -> List[Refund]:
        """获取订单的全部退款"""
        pass

    @abstractmethod
    async def list(self, filters: RefundFilters, skip: int = 0, limit: int = 20) -> List[Refund]:
        """按条件分页查询"""
        pass

    @abstractmethod
    async def count(self, filters: RefundFilters) -> int:
        """按条件统计"""
        pass

    @abstractmethod
    async def sum_amount_for_payment(
        self, payment_id: int, statuses: Iterable[RefundStatus]
    ) -> Decimal:
        """统计某支付下指定状态的退款总额"""
        pass

    @abstractmethod
    async def sum_amount_for_order(
        self, order_id: str, statuses: Iterable[RefundStatus]
    ) -> Decimal:
        """统计某订单下指定状态的退款总额"""
        pass

    @abstractmethod
    async def find_stale(
        self,
        statuses: Iterable[RefundStatus],
        older_than: datetime,
        limit: int = 100,
    ) -> List[Refund]:
        """查找停留在处理中状态超过阈值的退款（按最后处理时间）"""
        pass

    @abstractmethod
    async def update(self, refund: Refund) -> Refund:
        """更新退款记录"""
        pass
