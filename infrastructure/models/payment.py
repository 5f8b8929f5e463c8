"""
支付与退款数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Text, JSON,
    Index, ForeignKey
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from .base import Base


class PaymentModel(Base):
    """
    支付数据库模型

    这是数据库表的映射，不包含业务逻辑
    所有业务规则都在 domain.payment.entity.Payment 中
    """
    __tablename__ = "payments"

    # 主键
    id = Column(Integer, primary_key=True, index=True)

    # 订单信息（一个订单可有多次支付尝试）
    order_id = Column(
        String(100),
        ForeignKey("orders.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
        comment="订单ID"
    )

    # 支付渠道信息
    provider = Column(String(50), nullable=False, default="stripe", comment="支付提供商")
    gateway_payment_reference = Column(String(200), nullable=True, comment="网关支付引用（Stripe PaymentIntent ID）")

    # 金额信息（使用 Numeric 存储精确金额）
    amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="支付金额")
    currency = Column(String(3), nullable=False, default="GBP", comment="货币代码 ISO-4217")

    # 状态
    status = Column(
        String(50),
        nullable=False,
        default="pending",
        index=True,
        comment="支付状态: pending/processing/succeeded/failed/voided/partially_refunded/refunded"
    )

    # 时间戳
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
    captured_at = Column(DateTime(timezone=True), nullable=True, comment="扣款成功时间")

    # 失败原因
    failure_reason = Column(Text, nullable=True, comment="失败原因")

    # 元数据（JSON格式，使用 extra_metadata 避免与 SQLAlchemy 的 metadata 冲突）
    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据（争议记录等）")

    # 关系
    refunds = relationship("RefundModel", back_populates="payment", lazy="select")

    # 索引
    __table_args__ = (
        Index("ix_payments_provider_ref", "provider", "gateway_payment_reference", unique=True),
        Index("ix_payments_order_status", "order_id", "status"),
    )

    def __repr__(self):
        return (
            f"<PaymentModel(id={self.id}, order_id='{self.order_id}', "
            f"provider='{self.provider}', amount={self.amount}, status='{self.status}')>"
        )


class RefundModel(Base):
    """
    退款数据库模型

    一条记录对应一次退款请求，重试复用同一条记录
    """
    __tablename__ = "refunds"

    # 主键
    id = Column(Integer, primary_key=True, index=True)

    # 关联支付
    payment_id = Column(
        Integer,
        ForeignKey("payments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="关联的支付ID"
    )

    # 订单信息（冗余，便于查询）
    order_id = Column(String(100), index=True, nullable=False, comment="订单ID")

    # 网关退款引用（Stripe Refund ID），每次尝试可能不同
    gateway_refund_reference = Column(String(200), nullable=True, unique=True, comment="网关退款ID")

    # 金额信息
    amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="退款金额")
    currency = Column(String(3), nullable=False, comment="货币代码")

    # 状态
    status = Column(
        String(50),
        nullable=False,
        default="pending",
        index=True,
        comment="退款状态: pending/processing/succeeded/failed/cancelled"
    )

    # 退款原因与备注
    reason = Column(String(50), nullable=False, comment="退款原因")
    notes = Column(Text, nullable=True, comment="备注")

    # 重试
    retry_count = Column(Integer, nullable=False, default=0, comment="已重试次数")
    max_retries = Column(Integer, nullable=False, default=3, comment="最大重试次数")
    failure_reason = Column(Text, nullable=True, comment="失败原因")

    # 审计字段
    requested_by = Column(String(100), nullable=False, comment="发起人")
    cancelled_by = Column(String(100), nullable=True, comment="取消人")
    last_retried_by = Column(String(100), nullable=True, comment="最近重试人")

    # 时间戳
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
        comment="创建时间"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="更新时间"
    )
    processed_at = Column(DateTime(timezone=True), nullable=True, comment="网关受理时间")
    settled_at = Column(DateTime(timezone=True), nullable=True, comment="退款成功时间")
    cancelled_at = Column(DateTime(timezone=True), nullable=True, comment="取消时间")
    last_retried_at = Column(DateTime(timezone=True), nullable=True, comment="最近重试时间")

    # 元数据（使用 extra_metadata 避免与 SQLAlchemy 的 metadata 冲突）
    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据")

    # 关系
    payment = relationship("PaymentModel", back_populates="refunds")

    # 索引
    __table_args__ = (
        Index("ix_refunds_payment_status", "payment_id", "status"),
        Index("ix_refunds_status_updated", "status", "updated_at"),
    )

    def __repr__(self):
        return (
            f"<RefundModel(id={self.id}, payment_id={self.payment_id}, "
            f"amount={self.amount}, status='{self.status}')>"
        )
