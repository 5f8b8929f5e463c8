"""
退款领域服务 - 退款资格、金额不变量、状态机与订单状态投影

所有方法都假定在同一个 Unit of Work 事务内调用；需要串行化的读取通过
仓储的 get_for_update 加行锁。领域事件收集在 self.events 中，由应用层在
事务提交后发布。
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from domain.common.events import DomainEvent
from domain.common.exceptions import (
    OrderNotFoundException,
    RefundAmountExceededException,
    RefundNotEligibleException,
    RefundNotFoundException,
)
from domain.common.money import quantize
from domain.common.timeutils import utc_now
from domain.order.entity import Order, OrderStatus
from domain.order.repository import OrderRepository
from domain.payment.entity import Payment
from domain.payment.repository import PaymentRepository
from shared.codes.refund_codes import (
    DEFAULT_GATEWAY_REFUND_STATUS,
    GATEWAY_REFUND_STATUS_TO_INTERNAL,
)
from .entity import (
    ACTIVE_REFUND_STATUSES,
    DEFAULT_MAX_RETRIES,
    IN_FLIGHT_REFUND_STATUSES,
    Refund,
    RefundStatus,
)
from .events import RefundCancelled, RefundFailed, RefundStatusUpdated
from .repository import RefundRepository


ZERO = Decimal("0.00")


@dataclass
class RefundEligibility:
    eligible: bool
    reason: Optional[str] = None
    max_refundable_amount: Optional[Decimal] = None
    currency: Optional[str] = None


@dataclass
class RefundSummary:
    order_id: str
    total_paid: Decimal
    total_refunded: Decimal
    pending_refunds: Decimal
    remaining_refundable: Decimal
    refund_count: int
    currency: str


@dataclass
class _Assessment:
    order: Order
    payment: Optional[Payment]
    remaining: Decimal
    blocked_reason: Optional[str]


def map_gateway_refund_status(gateway_status: Optional[str]) -> RefundStatus:
    """网关退款状态 -> 内部状态（未知状态视为仍在处理中）"""
    value = GATEWAY_REFUND_STATUS_TO_INTERNAL.get(
        (gateway_status or "").lower(), DEFAULT_GATEWAY_REFUND_STATUS
    )
    return RefundStatus(value)


class RefundDomainService:
    """
    退款领域服务

    职责：
    1. 退款资格判断与可退金额计算（锁内重算，防止并发超退）
    2. 退款状态机驱动（网关回调、取消、重试）
    3. 退款结算后在同一事务内投影支付与订单状态
    4. 产生领域事件
    """

    def __init__(
        self,
        order_repository: OrderRepository,
        payment_repository: PaymentRepository,
        refund_repository: RefundRepository,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        max_refund_age_days: Optional[int] = None,
    ):
        self.order_repository = order_repository
        self.payment_repository = payment_repository
        self.refund_repository = refund_repository
        self.max_retries = max_retries
        self.max_refund_age_days = max_refund_age_days
        self.events: List[DomainEvent] = []  # 领域事件收集
        # 状态未变但补记了网关引用的退款ID（缓存需要失效）
        self.reference_attached: List[int] = []

    # ---- 资格与金额 ----

    async def _assess(self, order: Order, *, lock: bool, now: Optional[datetime] = None) -> _Assessment:
        if not order.is_refundable():
            return _Assessment(
                order, None, ZERO,
                f'Order with status "{order.status.value}" is not eligible for a refund',
            )

        payment = await self.payment_repository.get_latest_captured(order.id)
        if payment is None:
            return _Assessment(order, None, ZERO, "No successful payment found for this order")
        if lock:
            # 锁住支付行后再重算已占用额度，两个并发请求在此串行
            payment = await self.payment_repository.get_for_update(payment.id)  # type: ignore[arg-type]

        if self.max_refund_age_days and order.created_at is not None:
            now = now or utc_now()
            if now - order.created_at > timedelta(days=self.max_refund_age_days):
                return _Assessment(
                    order, payment, ZERO,
                    f"Refund window of {self.max_refund_age_days} days has expired",
                )

        active = await self.refund_repository.sum_amount_for_payment(
            payment.id, ACTIVE_REFUND_STATUSES  # type: ignore[arg-type]
        )
        return _Assessment(order, payment, quantize(payment.amount - active), None)

    async def check_eligibility(self, order_id: str, now: Optional[datetime] = None) -> RefundEligibility:
        """只读资格检查，不因业务原因抛异常"""
        order = await self.order_repository.get_by_id(order_id)
        if order is None:
            return RefundEligibility(eligible=False, reason=f"Order {order_id} not found")
        assessment = await self._assess(order, lock=False, now=now)
        if assessment.blocked_reason:
            return RefundEligibility(eligible=False, reason=assessment.blocked_reason)
        if assessment.remaining <= 0:
            return RefundEligibility(
                eligible=False,
                reason="Order has already been fully refunded",
                max_refundable_amount=ZERO,
                currency=assessment.payment.currency,  # type: ignore[union-attr]
            )
        return RefundEligibility(
            eligible=True,
            max_refundable_amount=assessment.remaining,
            currency=assessment.payment.currency,  # type: ignore[union-attr]
        )

    async def open_refund(
        self,
        order_id: str,
        amount: Optional[Decimal],
        reason: str,
        requested_by: str,
        *,
        notes: Optional[str] = None,
        metadata: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> Refund:
        """
        创建 PENDING 退款

        业务规则：
        1. 订单状态可退款，且存在已扣款支付
        2. 金额默认为剩余可退金额；0 < amount ≤ remaining
        3. remaining 在支付行锁内重算
        """
        order = await self.order_repository.get_by_id(order_id)
        if order is None:
            raise OrderNotFoundException(order_id)

        assessment = await self._assess(order, lock=True, now=now)
        if assessment.blocked_reason:
            raise RefundNotEligibleException(assessment.blocked_reason, order_id=order_id)
        payment = assessment.payment
        assert payment is not None

        requested = quantize(amount) if amount is not None else assessment.remaining
        if requested <= 0 or requested > assessment.remaining:
            raise RefundAmountExceededException(requested, assessment.remaining, payment.currency)

        refund = Refund(
            id=None,
            payment_id=payment.id,  # type: ignore[arg-type]
            order_id=order.id,
            amount=requested,
            currency=payment.currency,
            status=RefundStatus.PENDING,
            reason=reason,
            requested_by=requested_by,
            notes=notes,
            max_retries=self.max_retries,
            created_at=utc_now(),
            updated_at=utc_now(),
            metadata=metadata or {},
        )
        return await self.refund_repository.create(refund)

    # ---- 状态机 ----

    async def load_for_update(self, refund_id: int) -> Refund:
        refund = await self.refund_repository.get_for_update(refund_id)
        if refund is None:
            raise RefundNotFoundException(refund_id)
        return refund

    async def apply_gateway_status(
        self,
        refund_id: int,
        target: RefundStatus,
        *,
        reference: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> tuple[Refund, bool]:
        """
        应用网关报告的退款状态

        返回 (refund, changed)。重复状态不产生变更；非法转换抛出
        RefundConflictException 且实体保持不变。
        """
        refund = await self.load_for_update(refund_id)
        previous = refund.status

        if target == previous:
            if reference and not refund.gateway_refund_reference:
                refund.gateway_refund_reference = reference
                refund = await self.refund_repository.update(refund)
                self.reference_attached.append(refund.id)  # type: ignore[arg-type]
            return refund, False

        if target == RefundStatus.SUCCEEDED:
            if refund.status == RefundStatus.PENDING:
                # 先校验整条路径，避免实体停在中间状态
                refund._ensure_transition(RefundStatus.PROCESSING)
                refund.mark_processing(reference)
            refund.mark_succeeded(reference)
        elif target == RefundStatus.PROCESSING:
            refund.mark_processing(reference)
        elif target == RefundStatus.FAILED:
            refund.mark_failed(failure_reason, reference)
        elif target == RefundStatus.CANCELLED:
            if refund.status == RefundStatus.PENDING:
                refund.cancel("gateway")
            else:
                refund.mark_failed(failure_reason or "Refund cancelled by gateway", reference)
        else:
            refund._ensure_transition(target)

        refund = await self.refund_repository.update(refund)
        if refund.status == RefundStatus.SUCCEEDED:
            await self._project_settlement(refund)

        self.events.append(RefundStatusUpdated(
            refund_id=refund.id,  # type: ignore[arg-type]
            order_id=refund.order_id,
            payment_id=refund.payment_id,
            previous_status=previous.value,
            new_status=refund.status.value,
            gateway_refund_reference=refund.gateway_refund_reference,
            retry_count=refund.retry_count,
        ))
        if refund.status == RefundStatus.FAILED:
            self.events.append(self._failed_event(refund))
        elif refund.status == RefundStatus.CANCELLED:
            self.events.append(RefundCancelled(
                refund_id=refund.id,  # type: ignore[arg-type]
                order_id=refund.order_id,
                payment_id=refund.payment_id,
                cancelled_by=refund.cancelled_by or "gateway",
            ))
        return refund, True

    async def record_gateway_rejection(self, refund_id: int, reason: str) -> Refund:
        """网关同步拒绝：PENDING -> FAILED"""
        refund = await self.load_for_update(refund_id)
        refund.mark_failed(reason)
        refund = await self.refund_repository.update(refund)
        self.events.append(self._failed_event(refund))
        return refund

    async def cancel(self, refund_id: int, cancelled_by: str) -> Refund:
        """取消退款：仅 PENDING 可取消"""
        refund = await self.load_for_update(refund_id)
        refund.cancel(cancelled_by)
        refund = await self.refund_repository.update(refund)
        self.events.append(RefundCancelled(
            refund_id=refund.id,  # type: ignore[arg-type]
            order_id=refund.order_id,
            payment_id=refund.payment_id,
            cancelled_by=cancelled_by,
        ))
        return refund

    async def reopen_for_retry(self, refund_id: int, requested_by: str) -> Refund:
        """重试：FAILED -> PENDING，retry_count + 1"""
        refund = await self.load_for_update(refund_id)
        refund.reopen_for_retry(requested_by)
        refund = await self.refund_repository.update(refund)
        self.events.append(RefundStatusUpdated(
            refund_id=refund.id,  # type: ignore[arg-type]
            order_id=refund.order_id,
            payment_id=refund.payment_id,
            previous_status=RefundStatus.FAILED.value,
            new_status=refund.status.value,
            retry_count=refund.retry_count,
        ))
        return refund

    async def _project_settlement(self, refund: Refund) -> None:
        """退款成功后重算支付与订单的已退总额，并在同一事务内更新状态"""
        payment = await self.payment_repository.get_for_update(refund.payment_id)
        if payment is not None:
            refunded_for_payment = await self.refund_repository.sum_amount_for_payment(
                payment.id, [RefundStatus.SUCCEEDED]  # type: ignore[arg-type]
            )
            if payment.apply_refund_settlement(refunded_for_payment):
                await self.payment_repository.update(payment)

        order = await self.order_repository.get_for_update(refund.order_id)
        if order is None or order.status == OrderStatus.CANCELLED:
            return
        payments = await self.payment_repository.list_by_order(order.id)
        total_paid = sum((p.amount for p in payments if p.is_captured), ZERO)
        total_refunded = await self.refund_repository.sum_amount_for_order(
            order.id, [RefundStatus.SUCCEEDED]
        )
        if order.apply_refund_settlement(total_paid, total_refunded):
            await self.order_repository.update(order)

    # ---- 查询 ----

    async def summarize(self, order_id: str) -> RefundSummary:
        order = await self.order_repository.get_by_id(order_id)
        if order is None:
            raise OrderNotFoundException(order_id)
        payments = [p for p in await self.payment_repository.list_by_order(order_id) if p.is_captured]
        refunds = await self.refund_repository.list_by_order(order_id)

        total_paid = quantize(sum((p.amount for p in payments), ZERO))
        total_refunded = quantize(sum(
            (r.amount for r in refunds if r.status == RefundStatus.SUCCEEDED), ZERO
        ))
        pending = quantize(sum(
            (r.amount for r in refunds if r.status in IN_FLIGHT_REFUND_STATUSES), ZERO
        ))
        return RefundSummary(
            order_id=order_id,
            total_paid=total_paid,
            total_refunded=total_refunded,
            pending_refunds=pending,
            remaining_refundable=quantize(total_paid - total_refunded - pending),
            refund_count=len(refunds),
            currency=payments[0].currency if payments else order.currency,
        )

    @staticmethod
    def _failed_event(refund: Refund) -> RefundFailed:
        return RefundFailed(
            refund_id=refund.id,  # type: ignore[arg-type]
            order_id=refund.order_id,
            payment_id=refund.payment_id,
            reason=refund.failure_reason,
            retry_count=refund.retry_count,
            can_retry=refund.can_retry,
        )

    def clear_events(self) -> List[DomainEvent]:
        """清空并返回领域事件"""
        events = self.events.copy()
        self.events.clear()
        return events
