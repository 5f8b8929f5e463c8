"""
退款应用服务（application/services）- 编排领域服务、网关调用与事件发布

事务边界：
1. 落库 PENDING 退款并提交，之后才调用网关
2. 网关调用不持有任何数据库锁
3. 网关结果在新的事务中（锁定退款行）写回
4. 领域事件在事务提交后发布
"""
from __future__ import annotations

from typing import Awaitable, Callable, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from application.dtos.payments import GatewayRefundRequest, GatewayRefundResult
from application.dtos.refunds import (
    BulkRefundFailure,
    BulkRefundResult,
    BulkRefundSuccess,
    CreateRefundCommand,
    EligibilityView,
    RefundListQuery,
    RefundSummaryView,
    RefundView,
)
from application.ports.cache import (
    CachePort,
    eligibility_key,
    order_refunds_pattern,
    refund_key,
    summary_key,
)
from application.ports.event_bus import EventBus
from application.ports.idempotency import (
    IN_PROGRESS_MARKER,
    IdempotencyGuard,
    refund_request_key,
)
from application.ports.payment_gateway import PaymentGateway
from core.config import RefundSettings, settings
from core.logging_config import get_logger
from domain.common.events import DomainEvent
from domain.common.exceptions import (
    BusinessException,
    DomainValidationException,
    OrderNotFoundException,
    PaymentGatewayException,
    PaymentGatewayTimeoutException,
    PaymentNotFoundException,
    RefundConflictException,
    RefundNotFoundException,
)
from domain.common.money import to_minor_units
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Payment
from domain.refund.entity import Refund, RefundStatus
from domain.refund.events import RefundInitiated
from domain.refund.service import RefundDomainService, map_gateway_refund_status
from shared.codes.refund_codes import RefundCode

logger = get_logger(__name__)

# 网关上仍可能转移资金的尝试状态之外的终态
_DEAD_GATEWAY_STATUSES = frozenset({"failed", "canceled"})


def _order_refunds_key(order_id: str) -> str:
    return order_refunds_pattern(order_id).rstrip("*")


class RefundApplicationService:
    """退款应用服务 - 处理应用层逻辑"""

    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway: PaymentGateway,
        event_bus: EventBus,
        idempotency_guard: IdempotencyGuard,
        cache: Optional[CachePort] = None,
        config: Optional[RefundSettings] = None,
    ):
        self._uow_factory = uow_factory
        self._gateway = gateway
        self._event_bus = event_bus
        self._guard = idempotency_guard
        self._cache = cache
        self._config = config or settings.refund

    def _domain(self, uow: AbstractUnitOfWork) -> RefundDomainService:
        return RefundDomainService(
            uow.order_repository,
            uow.payment_repository,
            uow.refund_repository,
            max_retries=self._config.max_retries,
            max_refund_age_days=self._config.max_refund_age_days or None,
        )

    async def _publish(self, events: Iterable[DomainEvent]) -> None:
        for event in events:
            await self._event_bus.publish(
                event.event_type,
                event.to_payload(),
                causation_id=event.event_id,
            )

    # ==================== 创建 ====================

    async def create_refund(self, command: CreateRefundCommand) -> RefundView:
        """创建退款；带 Idempotency-Key 时同一个键只会创建一次"""
        if not command.idempotency_key:
            return await self._create(command)

        key = refund_request_key(command.idempotency_key)
        ttl = self._config.request_idempotency_ttl_seconds
        if not await self._guard.claim(key, ttl):
            existing = await self._guard.get(key)
            if existing and existing != IN_PROGRESS_MARKER:
                logger.info("refund_request_replayed", idempotency_key=command.idempotency_key, refund_id=existing)
                return await self.get_refund(int(existing))
            raise RefundConflictException(
                "A request with this Idempotency-Key is already in progress",
                code=RefundCode.REQUEST_IN_PROGRESS,
            )

        opened: list[int] = []

        async def _bind_key(refund_id: int) -> None:
            # 退款已落库：之后的任何失败都不能再释放这个键
            opened.append(refund_id)
            await self._guard.complete(key, str(refund_id), ttl)

        try:
            return await self._create(command, on_opened=_bind_key)
        except Exception:
            if not opened:
                await self._guard.release(key)
            raise

    async def _create(
        self,
        command: CreateRefundCommand,
        on_opened: Optional[Callable[[int], Awaitable[None]]] = None,
    ) -> RefundView:
        async with self._uow_factory() as uow:
            domain_service = self._domain(uow)
            refund = await domain_service.open_refund(
                command.order_id,
                command.amount,
                command.reason.value,
                command.requested_by,
                notes=command.notes,
                metadata=command.metadata,
            )
            payment = await uow.payment_repository.get_by_id(refund.payment_id)

        logger.info(
            "refund_created",
            refund_id=refund.id,
            order_id=refund.order_id,
            payment_id=refund.payment_id,
            amount=str(refund.amount),
            currency=refund.currency,
            requested_by=refund.requested_by,
        )

        if on_opened is not None:
            await on_opened(refund.id)  # type: ignore[arg-type]

        refund = await self.submit_to_gateway(refund, payment)  # type: ignore[arg-type]

        await self._publish([RefundInitiated(
            refund_id=refund.id,  # type: ignore[arg-type]
            order_id=refund.order_id,
            payment_id=refund.payment_id,
            amount=str(refund.amount),
            currency=refund.currency,
            status=refund.status.value,
            requested_by=refund.requested_by,
        )])
        return await self.get_refund(refund.id, use_cache=False)  # type: ignore[arg-type]

    async def submit_to_gateway(self, refund: Refund, payment: Payment) -> Refund:
        """
        以当前尝试的幂等键向网关提交退款

        - 受理：写回网关状态（PENDING -> PROCESSING，必要时继续推进）
        - 拒绝：PENDING -> FAILED，发布 refund.failed 后向调用方抛出
        - 结果未知（超时、网关 5xx）：保持 PENDING，由对账任务处理
        """
        if not payment.gateway_payment_reference:
            exc = PaymentGatewayException(
                f"Payment {payment.id} has no gateway reference",
                provider=payment.provider,
                gateway_code="missing_payment_reference",
            )
            await self._record_rejection(refund, exc)
            raise exc

        request = GatewayRefundRequest(
            payment_reference=payment.gateway_payment_reference,
            amount_minor=to_minor_units(refund.amount, refund.currency),
            currency=refund.currency,
            reason=refund.reason,
            idempotency_key=refund.attempt_key,
            metadata={
                "refund_id": str(refund.id),
                "order_id": refund.order_id,
                "attempt": str(refund.retry_count),
            },
        )
        try:
            result = await self._gateway.create_refund(request)
        except PaymentGatewayTimeoutException as exc:
            logger.warning(
                "refund_gateway_outcome_unknown",
                refund_id=refund.id,
                idempotency_key=request.idempotency_key,
                gateway_code=exc.gateway_code,
                error=exc.message,
            )
            return refund
        except PaymentGatewayException as exc:
            await self._record_rejection(refund, exc)
            raise

        updated, _ = await self.apply_gateway_result(refund.id, result)  # type: ignore[arg-type]
        return updated

    async def _record_rejection(self, refund: Refund, exc: PaymentGatewayException) -> None:
        logger.warning(
            "refund_gateway_rejected",
            refund_id=refund.id,
            gateway_code=exc.gateway_code,
            error=exc.message,
        )
        try:
            async with self._uow_factory() as uow:
                domain_service = self._domain(uow)
                await domain_service.record_gateway_rejection(refund.id, exc.message)  # type: ignore[arg-type]
                events = domain_service.clear_events()
        except RefundConflictException as conflict:
            # 网关回调已先一步推进了状态
            logger.info("refund_rejection_ignored", refund_id=refund.id, error=conflict.message)
            return
        await self._publish(events)

    # ==================== 网关状态 ====================

    async def apply_gateway_result(self, refund_id: int, result: GatewayRefundResult) -> Tuple[Refund, bool]:
        return await self.handle_gateway_refund_status(
            refund_id,
            result.status,
            reference=result.reference,
            failure_reason=result.failure_reason,
        )

    async def handle_gateway_refund_status(
        self,
        refund_id: int,
        gateway_status: Optional[str],
        *,
        reference: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> Tuple[Refund, bool]:
        """
        应用网关报告的退款状态（锁定退款行）

        重复或非法的状态转换只记录日志，不修改账本也不发布事件。
        """
        target = map_gateway_refund_status(gateway_status)
        try:
            async with self._uow_factory() as uow:
                domain_service = self._domain(uow)
                refund, changed = await domain_service.apply_gateway_status(
                    refund_id,
                    target,
                    reference=reference,
                    failure_reason=failure_reason,
                )
                events = domain_service.clear_events()
                reference_attached = bool(domain_service.reference_attached)
        except RefundConflictException as exc:
            logger.info(
                "refund_status_update_ignored",
                refund_id=refund_id,
                gateway_status=gateway_status,
                details=exc.details,
            )
            return await self._load_refund(refund_id), False

        if changed:
            logger.info(
                "refund_status_updated",
                refund_id=refund_id,
                gateway_status=gateway_status,
                status=refund.status.value,
                reference=refund.gateway_refund_reference,
            )
            await self._publish(events)
        else:
            logger.info("refund_status_unchanged", refund_id=refund_id, status=refund.status.value)
            if reference_attached:
                await self._forget_cached(refund)
        return refund, changed

    async def _forget_cached(self, refund: Refund) -> None:
        """没有事件可发布时直接失效该退款的缓存视图"""
        if self._cache is None:
            return
        try:
            await self._cache.delete(refund_key(refund.id))  # type: ignore[arg-type]
            await self._cache.delete_pattern(order_refunds_pattern(refund.order_id))
        except Exception as exc:
            logger.warning("refund_cache_invalidation_failed", refund_id=refund.id, error=str(exc))

    # ==================== 取消与重试 ====================

    async def _ensure_no_live_attempt(self, refund: Refund, payment: Optional[Payment]) -> None:
        """网关上存在未失败的尝试时拒绝操作，防止重复退款"""
        attempts: List[GatewayRefundResult] = []
        if refund.gateway_refund_reference:
            attempts.append(await self._gateway.retrieve_refund(refund.gateway_refund_reference))
        if payment is not None and payment.gateway_payment_reference:
            found = await self._gateway.find_refund(payment.gateway_payment_reference, refund.id)  # type: ignore[arg-type]
            if found is not None:
                attempts.append(found)
        for attempt in attempts:
            if attempt.status.lower() not in _DEAD_GATEWAY_STATUSES:
                logger.warning(
                    "refund_live_gateway_attempt",
                    refund_id=refund.id,
                    reference=attempt.reference,
                    gateway_status=attempt.status,
                )
                raise RefundConflictException(
                    f"Refund {refund.id} has a gateway attempt in status {attempt.status}",
                    current_status=refund.status.value,
                )

    async def _load_with_payment(self, refund_id: int) -> Tuple[Refund, Optional[Payment]]:
        async with self._uow_factory(readonly=True) as uow:
            refund = await uow.refund_repository.get_by_id(refund_id)
            if refund is None:
                raise RefundNotFoundException(refund_id)
            payment = await uow.payment_repository.get_by_id(refund.payment_id)
            return refund, payment

    async def cancel_refund(self, refund_id: int, cancelled_by: str) -> RefundView:
        """取消退款：仅 PENDING，且网关上没有进行中的尝试"""
        refund, payment = await self._load_with_payment(refund_id)
        if refund.status != RefundStatus.PENDING:
            raise RefundConflictException(
                f"Only PENDING refunds can be cancelled. Current status: {refund.status.value}",
                current_status=refund.status.value,
                target_status=RefundStatus.CANCELLED.value,
            )
        await self._ensure_no_live_attempt(refund, payment)

        async with self._uow_factory() as uow:
            domain_service = self._domain(uow)
            refund = await domain_service.cancel(refund_id, cancelled_by)
            events = domain_service.clear_events()

        logger.info("refund_cancelled", refund_id=refund_id, cancelled_by=cancelled_by)
        await self._publish(events)
        return await self.get_refund(refund_id, use_cache=False)

    async def retry_failed_refund(self, refund_id: int, requested_by: str) -> RefundView:
        """重试失败的退款：FAILED -> PENDING 后以新的尝试键重新提交"""
        refund, payment = await self._load_with_payment(refund_id)
        refund.ensure_can_retry()
        if payment is None:
            raise PaymentNotFoundException(str(refund.payment_id))
        await self._ensure_no_live_attempt(refund, payment)

        async with self._uow_factory() as uow:
            domain_service = self._domain(uow)
            refund = await domain_service.reopen_for_retry(refund_id, requested_by)
            events = domain_service.clear_events()

        logger.info(
            "refund_retry_opened",
            refund_id=refund_id,
            retry_count=refund.retry_count,
            requested_by=requested_by,
        )
        await self._publish(events)
        await self.submit_to_gateway(refund, payment)
        return await self.get_refund(refund_id, use_cache=False)

    # ==================== 查询 ====================

    async def _load_refund(self, refund_id: int) -> Refund:
        async with self._uow_factory(readonly=True) as uow:
            refund = await uow.refund_repository.get_by_id(refund_id)
            if refund is None:
                raise RefundNotFoundException(refund_id)
            return refund

    async def get_refund(self, refund_id: int, *, use_cache: bool = True) -> RefundView:
        """获取退款详情（含订单与支付摘要）"""
        key = refund_key(refund_id)
        if use_cache and self._cache is not None:
            cached = await self._cache.get(key)
            if cached:
                return RefundView.model_validate(cached)

        async with self._uow_factory(readonly=True) as uow:
            refund = await uow.refund_repository.get_by_id(refund_id)
            if refund is None:
                raise RefundNotFoundException(refund_id)
            order = await uow.order_repository.get_by_id(refund.order_id)
            payment = await uow.payment_repository.get_by_id(refund.payment_id)
        view = RefundView.from_entity(refund, order=order, payment=payment)

        if self._cache is not None:
            await self._cache.set(key, view.model_dump(mode="json"))
        return view

    async def list_refunds(self, query: RefundListQuery) -> Tuple[List[RefundView], int]:
        """获取退款列表（带总数）"""
        filters = query.to_filters()
        skip = (query.page - 1) * query.limit
        async with self._uow_factory(readonly=True) as uow:
            refunds = await uow.refund_repository.list(filters, skip=skip, limit=query.limit)
            total = await uow.refund_repository.count(filters)
        return [RefundView.from_entity(r) for r in refunds], int(total)

    async def get_refunds_by_order(self, order_id: str) -> List[RefundView]:
        key = _order_refunds_key(order_id)
        if self._cache is not None:
            cached = await self._cache.get(key)
            if cached is not None:
                return [RefundView.model_validate(item) for item in cached]

        async with self._uow_factory(readonly=True) as uow:
            order = await uow.order_repository.get_by_id(order_id)
            if order is None:
                raise OrderNotFoundException(order_id)
            refunds = await uow.refund_repository.list_by_order(order_id)
        views = [RefundView.from_entity(r) for r in refunds]

        if self._cache is not None:
            await self._cache.set(key, [v.model_dump(mode="json") for v in views])
        return views

    async def check_refund_eligibility(self, order_id: str) -> EligibilityView:
        """退款资格检查（不因业务原因抛异常）"""
        key = eligibility_key(order_id)
        if self._cache is not None:
            cached = await self._cache.get(key)
            if cached:
                return EligibilityView.model_validate(cached)

        async with self._uow_factory(readonly=True) as uow:
            result = await self._domain(uow).check_eligibility(order_id)
        view = EligibilityView.from_result(result)

        if self._cache is not None:
            await self._cache.set(key, view.model_dump(mode="json"))
        return view

    async def get_refund_summary(self, order_id: str) -> RefundSummaryView:
        key = summary_key(order_id)
        if self._cache is not None:
            cached = await self._cache.get(key)
            if cached:
                return RefundSummaryView.model_validate(cached)

        async with self._uow_factory(readonly=True) as uow:
            summary = await self._domain(uow).summarize(order_id)
        view = RefundSummaryView.from_summary(summary)

        if self._cache is not None:
            await self._cache.set(key, view.model_dump(mode="json"))
        return view

    # ==================== 批量 ====================

    async def process_bulk_refunds(
        self,
        order_ids: List[str],
        reason: str,
        requested_by: str,
        notes: Optional[str] = None,
    ) -> BulkRefundResult:
        """逐单独立创建全额退款，失败收集后返回"""
        if len(order_ids) > self._config.max_bulk_size:
            raise DomainValidationException(
                f"Bulk refunds are limited to {self._config.max_bulk_size} orders per request",
                field="orderIds",
                details={"max_bulk_size": self._config.max_bulk_size, "received": len(order_ids)},
            )

        result = BulkRefundResult(total=len(order_ids))
        for order_id in order_ids:
            try:
                view = await self._create(CreateRefundCommand(
                    order_id=order_id,
                    reason=reason,
                    notes=notes,
                    requested_by=requested_by,
                ))
            except BusinessException as exc:
                result.failed.append(BulkRefundFailure(order_id=order_id, error=exc.message))
                logger.info("bulk_refund_item_failed", order_id=order_id, error=exc.message)
                continue
            except ValidationError as exc:
                result.failed.append(BulkRefundFailure(order_id=order_id, error=str(exc)))
                continue
            result.successful.append(BulkRefundSuccess(order_id=order_id, refund_id=view.id))

        logger.info(
            "bulk_refund_completed",
            total=result.total,
            successful=len(result.successful),
            failed=len(result.failed),
            requested_by=requested_by,
        )
        return result
