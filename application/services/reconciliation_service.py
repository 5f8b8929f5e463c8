"""
对账服务 - 周期性地向网关查询停滞的退款并写回状态

每条退款独立处理，网关调用发生在事务之外；单条失败只记录日志与计数，
不影响其余退款，也不回滚已提交的账本状态。
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from application.dtos.payments import GatewayRefundResult
from application.dtos.refunds import ReconciliationReport
from application.ports.payment_gateway import PaymentGateway
from application.services.refund_service import RefundApplicationService
from core.config import RefundSettings, settings
from core.logging_config import get_logger
from domain.common.exceptions import BusinessException, PaymentGatewayTimeoutException
from domain.common.timeutils import utc_now
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Payment
from domain.refund.entity import IN_FLIGHT_REFUND_STATUSES, Refund, RefundStatus

logger = get_logger(__name__)


class ReconciliationService:
    """停滞退款对账"""

    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway: PaymentGateway,
        refund_service: RefundApplicationService,
        config: Optional[RefundSettings] = None,
    ):
        self._uow_factory = uow_factory
        self._gateway = gateway
        self._refunds = refund_service
        self._config = config or settings.refund

    async def run_once(self, now: Optional[datetime] = None) -> ReconciliationReport:
        now = now or utc_now()
        cutoff = now - timedelta(minutes=self._config.stale_after_minutes)
        async with self._uow_factory(readonly=True) as uow:
            stale = await uow.refund_repository.find_stale(
                IN_FLIGHT_REFUND_STATUSES,
                cutoff,
                self._config.reconcile_batch_size,
            )
            payments: dict[int, Optional[Payment]] = {}
            for refund in stale:
                if refund.payment_id not in payments:
                    payments[refund.payment_id] = await uow.payment_repository.get_by_id(refund.payment_id)

        report = ReconciliationReport(scanned=len(stale))
        logger.info("reconciliation_started", stale=len(stale), cutoff=cutoff.isoformat())

        for refund in stale:
            try:
                outcome = await self._reconcile(refund, payments.get(refund.payment_id))
            except PaymentGatewayTimeoutException as exc:
                report.errors += 1
                logger.warning("reconciliation_gateway_timeout", refund_id=refund.id, error=exc.message)
                continue
            except BusinessException as exc:
                report.errors += 1
                logger.warning("reconciliation_refund_failed", refund_id=refund.id, code=exc.code, error=exc.message)
                continue
            except Exception as exc:
                report.errors += 1
                logger.error("reconciliation_refund_error", refund_id=refund.id, error=str(exc), exc_info=True)
                continue

            if outcome == "updated":
                report.updated += 1
            elif outcome == "resubmitted":
                report.resubmitted += 1
            else:
                report.unchanged += 1

        logger.info("reconciliation_finished", **report.model_dump())
        return report

    async def _reconcile(self, refund: Refund, payment: Optional[Payment]) -> str:
        result: Optional[GatewayRefundResult]
        if refund.gateway_refund_reference:
            result = await self._gateway.retrieve_refund(refund.gateway_refund_reference)
        else:
            if payment is None or not payment.gateway_payment_reference:
                logger.warning("reconciliation_payment_missing", refund_id=refund.id, payment_id=refund.payment_id)
                return "unchanged"
            result = await self._gateway.find_refund(payment.gateway_payment_reference, refund.id)  # type: ignore[arg-type]
            if result is not None and refund.is_superseded_attempt(None, result.metadata.get("attempt")):
                result = None

            if result is None:
                if refund.status != RefundStatus.PENDING:
                    return "unchanged"
                # 网关上没有当前尝试：以同一个幂等键重新提交
                logger.info("reconciliation_resubmit", refund_id=refund.id, idempotency_key=refund.attempt_key)
                await self._refunds.submit_to_gateway(refund, payment)
                return "resubmitted"

        _, changed = await self._refunds.apply_gateway_result(refund.id, result)  # type: ignore[arg-type]
        return "updated" if changed else "unchanged"
