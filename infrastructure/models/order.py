"""
订单数据库模型 - SQLAlchemy ORM模型
"""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, Numeric, String

from .base import Base


class OrderModel(Base):
    """
    订单数据库模型

    退款核心只持久化订单的状态与金额，业务规则在 domain.order.entity.Order 中
    """
    __tablename__ = "orders"

    # 主键（外部订单号）
    id = Column(String(100), primary_key=True, comment="订单ID")
    customer_id = Column(String(100), nullable=True, index=True, comment="客户ID")

    status = Column(
        String(50),
        nullable=False,
        default="pending",
        index=True,
        comment="订单状态: pending/paid/processing/shipped/delivered/partially_refunded/refunded/cancelled"
    )

    total_amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="订单总额")
    currency = Column(String(3), nullable=False, default="GBP", comment="货币代码 ISO-4217")

    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="创建时间"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="更新时间"
    )
    cancelled_at = Column(DateTime(timezone=True), nullable=True, comment="取消时间")

    __table_args__ = (
        Index("ix_orders_created_at", "created_at"),
    )

    def __repr__(self):
        return f"<OrderModel(id='{self.id}', status='{self.status}', total={self.total_amount})>"
