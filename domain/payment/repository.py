"""
支付仓储接口 - 定义支付数据访问的抽象接口
"""
from abc import ABC, abstractmethod
from typing import Optional, List

from .entity import Payment


class PaymentRepository(ABC):
    """支付仓储抽象接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def create(self, payment: Payment) -> Payment:
        """创建支付记录"""
        pass

    @abstractmethod
    async def get_by_id(self, payment_id: int) -> Optional[Payment]:
        """根据ID获取支付"""
        pass

    @abstractmethod
    async def get_for_update(self, payment_id: int) -> Optional[Payment]:
        """加行锁读取支付（SELECT ... FOR UPDATE）"""
        pass

    @abstractmethod
    async def get_by_gateway_reference(self, provider: str, reference: str) -> Optional[Payment]:
        """根据网关支付引用获取支付"""
        pass

    @abstractmethod
    async def list_by_order(self, order_id: str) -> List[Payment]:
        """获取订单的全部支付（按创建时间倒序）"""
        pass

    @abstractmethod
    async def get_latest_captured(self, order_id: str) -> Optional[Payment]:
        """获取订单最近一次已扣款的支付"""
        pass

    @abstractmethod
    async def update(self, payment: Payment) -> Payment:
        """更新支付记录"""
        pass
