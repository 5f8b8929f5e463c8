"""
订单仓储接口
"""
from abc import ABC, abstractmethod
from typing import Optional

from .entity import Order


class OrderRepository(ABC):
    """订单仓储抽象接口"""

    @abstractmethod
    async def create(self, order: Order) -> Order:
        """创建订单"""
        pass

    @abstractmethod
    async def get_by_id(self, order_id: str) -> Optional[Order]:
        """根据ID获取订单"""
        pass

    @abstractmethod
    async def get_for_update(self, order_id: str) -> Optional[Order]:
        """加行锁读取订单"""
        pass

    @abstractmethod
    async def update(self, order: Order) -> Order:
        """更新订单"""
        pass
