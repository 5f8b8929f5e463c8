"""
支付与退款仓储实现 - 使用SQLAlchemy实现数据访问
"""
from datetime import datetime
from typing import Iterable, Optional, List
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func

from domain.common.money import quantize
from domain.payment.entity import CAPTURED_STATUSES, Payment, PaymentStatus
from domain.payment.repository import PaymentRepository
from domain.refund.entity import Refund, RefundStatus
from domain.refund.repository import RefundFilters, RefundRepository
from infrastructure.models.payment import PaymentModel, RefundModel
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyPaymentRepository(PaymentRepository):
    """支付仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentModel) -> Payment:
        """将数据库模型转换为领域实体"""
        return Payment(
            id=model.id,
            order_id=model.order_id,
            provider=model.provider,
            gateway_payment_reference=model.gateway_payment_reference,
            amount=Decimal(str(model.amount)),
            currency=model.currency,
            status=PaymentStatus(model.status),
            captured_at=model.captured_at,
            failure_reason=model.failure_reason,
            created_at=model.created_at,
            updated_at=model.updated_at,
            metadata=dict(model.extra_metadata or {}),
        )

    def _to_model(self, entity: Payment) -> PaymentModel:
        """将领域实体转换为数据库模型"""
        return PaymentModel(
            id=entity.id,
            order_id=entity.order_id,
            provider=entity.provider,
            gateway_payment_reference=entity.gateway_payment_reference,
            amount=entity.amount,
            currency=entity.currency,
            status=entity.status.value,
            captured_at=entity.captured_at,
            failure_reason=entity.failure_reason,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
            extra_metadata=entity.metadata,
        )

    async def create(self, payment: Payment) -> Payment:
        """创建支付记录"""
        db_payment = self._to_model(payment)
        self.session.add(db_payment)
        await self.session.flush()
        await self.session.refresh(db_payment)
        logger.info(
            "payment_created",
            payment_id=db_payment.id,
            order_id=db_payment.order_id,
            provider=db_payment.provider
        )
        return self._to_entity(db_payment)

    async def get_by_id(self, payment_id: int) -> Optional[Payment]:
        """根据ID获取支付"""
        result = await self.session.execute(
            select(PaymentModel).where(PaymentModel.id == payment_id)
        )
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def get_for_update(self, payment_id: int) -> Optional[Payment]:
        """加行锁读取支付"""
        result = await self.session.execute(
            select(PaymentModel).where(PaymentModel.id == payment_id).with_for_update()
        )
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def get_by_gateway_reference(
        self,
        provider: str,
        reference: str
    ) -> Optional[Payment]:
        """根据网关支付引用获取支付"""
        result = await self.session.execute(
            select(PaymentModel).where(
                PaymentModel.provider == provider,
                PaymentModel.gateway_payment_reference == reference
            )
        )
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def list_by_order(self, order_id: str) -> List[Payment]:
        result = await self.session.execute(
            select(PaymentModel)
            .where(PaymentModel.order_id == order_id)
            .order_by(PaymentModel.created_at.asc(), PaymentModel.id.asc())
        )
        return [self._to_entity(p) for p in result.scalars().all()]

    async def get_latest_captured(self, order_id: str) -> Optional[Payment]:
        """订单最近一笔已扣款支付"""
        result = await self.session.execute(
            select(PaymentModel)
            .where(
                PaymentModel.order_id == order_id,
                PaymentModel.status.in_([s.value for s in CAPTURED_STATUSES]),
            )
            .order_by(PaymentModel.created_at.desc(), PaymentModel.id.desc())
            .limit(1)
        )
        db_payment = result.scalars().first()
        return self._to_entity(db_payment) if db_payment else None

    async def update(self, payment: Payment) -> Payment:
        """更新支付记录"""
        result = await self.session.execute(
            select(PaymentModel).where(PaymentModel.id == payment.id)
        )
        db_payment = result.scalar_one_or_none()

        if not db_payment:
            raise ValueError(f"Payment with id {payment.id} not found")

        # 更新字段
        db_payment.gateway_payment_reference = payment.gateway_payment_reference
        db_payment.status = payment.status.value
        db_payment.updated_at = payment.updated_at
        db_payment.captured_at = payment.captured_at
        db_payment.failure_reason = payment.failure_reason
        db_payment.extra_metadata = payment.metadata

        await self.session.flush()
        await self.session.refresh(db_payment)

        logger.info(
            "payment_updated",
            payment_id=db_payment.id,
            order_id=db_payment.order_id,
            status=db_payment.status
        )

        return self._to_entity(db_payment)


class SQLAlchemyRefundRepository(RefundRepository):
    """退款仓储的SQLAlchemy实现"""

    _SORT_COLUMNS = {
        "created_at": RefundModel.created_at,
        "amount": RefundModel.amount,
        "status": RefundModel.status,
    }

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: RefundModel) -> Refund:
        """将数据库模型转换为领域实体"""
        return Refund(
            id=model.id,
            payment_id=model.payment_id,
            order_id=model.order_id,
            amount=Decimal(str(model.amount)),
            currency=model.currency,
            status=RefundStatus(model.status),
            reason=model.reason,
            requested_by=model.requested_by,
            gateway_refund_reference=model.gateway_refund_reference,
            notes=model.notes,
            retry_count=model.retry_count,
            max_retries=model.max_retries,
            failure_reason=model.failure_reason,
            cancelled_by=model.cancelled_by,
            last_retried_by=model.last_retried_by,
            last_retried_at=model.last_retried_at,
            processed_at=model.processed_at,
            settled_at=model.settled_at,
            cancelled_at=model.cancelled_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
            metadata=dict(model.extra_metadata or {}),
        )

    def _apply(self, db_refund: RefundModel, refund: Refund) -> None:
        """把实体的可变字段写回模型"""
        db_refund.gateway_refund_reference = refund.gateway_refund_reference
        db_refund.status = refund.status.value
        db_refund.retry_count = refund.retry_count
        db_refund.max_retries = refund.max_retries
        db_refund.failure_reason = refund.failure_reason
        db_refund.notes = refund.notes
        db_refund.cancelled_by = refund.cancelled_by
        db_refund.last_retried_by = refund.last_retried_by
        db_refund.last_retried_at = refund.last_retried_at
        db_refund.processed_at = refund.processed_at
        db_refund.settled_at = refund.settled_at
        db_refund.cancelled_at = refund.cancelled_at
        db_refund.updated_at = refund.updated_at
        db_refund.extra_metadata = refund.metadata

    async def create(self, refund: Refund) -> Refund:
        """创建退款记录"""
        db_refund = RefundModel(
            payment_id=refund.payment_id,
            order_id=refund.order_id,
            amount=refund.amount,
            currency=refund.currency,
            reason=refund.reason,
            requested_by=refund.requested_by,
            created_at=refund.created_at,
        )
        self._apply(db_refund, refund)
        self.session.add(db_refund)
        await self.session.flush()
        await self.session.refresh(db_refund)

        logger.info(
            "refund_created",
            refund_id=db_refund.id,
            payment_id=db_refund.payment_id,
            order_id=db_refund.order_id,
            amount=str(db_refund.amount)
        )

        return self._to_entity(db_refund)

    async def get_by_id(self, refund_id: int) -> Optional[Refund]:
        """根据ID获取退款"""
        result = await self.session.execute(
            select(RefundModel).where(RefundModel.id == refund_id)
        )
        db_refund = result.scalar_one_or_none()
        return self._to_entity(db_refund) if db_refund else None

    async def get_for_update(self, refund_id: int) -> Optional[Refund]:
        result = await self.session.execute(
            select(RefundModel).where(RefundModel.id == refund_id).with_for_update()
        )
        db_refund = result.scalar_one_or_none()
        return self._to_entity(db_refund) if db_refund else None

    async def get_by_gateway_reference(self, reference: str) -> Optional[Refund]:
        """根据网关退款ID获取退款"""
        result = await self.session.execute(
            select(RefundModel).where(RefundModel.gateway_refund_reference == reference)
        )
        db_refund = result.scalar_one_or_none()
        return self._to_entity(db_refund) if db_refund else None

    async def list_by_order(self, order_id: str) -> List[Refund]:
        """根据订单ID获取退款列表"""
        result = await self.session.execute(
            select(RefundModel)
            .where(RefundModel.order_id == order_id)
            .order_by(RefundModel.created_at.desc(), RefundModel.id.desc())
        )
        return [self._to_entity(r) for r in result.scalars().all()]

    def _filtered(self, query, filters: RefundFilters):
        if filters.order_id:
            query = query.where(RefundModel.order_id == filters.order_id)
        if filters.payment_id is not None:
            query = query.where(RefundModel.payment_id == filters.payment_id)
        if filters.status is not None:
            query = query.where(RefundModel.status == filters.status.value)
        if filters.requested_by:
            query = query.where(RefundModel.requested_by == filters.requested_by)
        if filters.currency:
            query = query.where(RefundModel.currency == filters.currency.upper())
        if filters.min_amount is not None:
            query = query.where(RefundModel.amount >= filters.min_amount)
        if filters.max_amount is not None:
            query = query.where(RefundModel.amount <= filters.max_amount)
        if filters.created_from is not None:
            query = query.where(RefundModel.created_at >= filters.created_from)
        if filters.created_to is not None:
            query = query.where(RefundModel.created_at <= filters.created_to)
        return query

    async def list(self, filters: RefundFilters, skip: int = 0, limit: int = 20) -> List[Refund]:
        column = self._SORT_COLUMNS.get(filters.sort_by, RefundModel.created_at)
        ordering = column.asc() if filters.sort_order.lower() == "asc" else column.desc()
        query = (
            self._filtered(select(RefundModel), filters)
            .order_by(ordering, RefundModel.id.desc())
            .offset(skip)
            .limit(limit)
        )
        result = await self.session.execute(query)
        return [self._to_entity(r) for r in result.scalars().all()]

    async def count(self, filters: RefundFilters) -> int:
        result = await self.session.execute(
            self._filtered(select(func.count(RefundModel.id)), filters)
        )
        return result.scalar_one()

    async def _sum(self, condition, statuses: Iterable[RefundStatus]) -> Decimal:
        values = [s.value for s in statuses]
        result = await self.session.execute(
            select(func.coalesce(func.sum(RefundModel.amount), 0)).where(
                condition,
                RefundModel.status.in_(values),
            )
        )
        total = result.scalar_one()
        return quantize(Decimal(str(total or 0)))

    async def sum_amount_for_payment(
        self, payment_id: int, statuses: Iterable[RefundStatus]
    ) -> Decimal:
        return await self._sum(RefundModel.payment_id == payment_id, statuses)

    async def sum_amount_for_order(
        self, order_id: str, statuses: Iterable[RefundStatus]
    ) -> Decimal:
        return await self._sum(RefundModel.order_id == order_id, statuses)

    async def find_stale(
        self,
        statuses: Iterable[RefundStatus],
        older_than: datetime,
        limit: int = 100,
    ) -> List[Refund]:
        """按最后处理时间（processed_at，缺省 updated_at）查找停滞退款"""
        last_touched = func.coalesce(RefundModel.processed_at, RefundModel.updated_at)
        result = await self.session.execute(
            select(RefundModel)
            .where(
                RefundModel.status.in_([s.value for s in statuses]),
                last_touched < older_than,
            )
            .order_by(last_touched.asc(), RefundModel.id.asc())
            .limit(limit)
        )
        return [self._to_entity(r) for r in result.scalars().all()]

    async def update(self, refund: Refund) -> Refund:
        """更新退款记录"""
        result = await self.session.execute(
            select(RefundModel).where(RefundModel.id == refund.id)
        )
        db_refund = result.scalar_one_or_none()

        if not db_refund:
            raise ValueError(f"Refund with id {refund.id} not found")

        self._apply(db_refund, refund)

        await self.session.flush()
        await self.session.refresh(db_refund)

        logger.info(
            "refund_updated",
            refund_id=db_refund.id,
            order_id=db_refund.order_id,
            status=db_refund.status,
            retry_count=db_refund.retry_count,
        )

        return self._to_entity(db_refund)
