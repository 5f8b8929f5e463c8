"""
退款API路由 - FastAPI表现层

响应统一为 {code, message, data, error}，data 使用 camelCase。
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Optional

from fastapi import APIRouter, Body, Depends, Query, status
from fastapi.responses import JSONResponse

from api.dependencies import get_actor, get_event_bus, get_idempotency_key, get_refund_service
from application.dtos.refunds import BulkRefundRequest, RefundListQuery, parse_create_refund
from application.ports.event_bus import EventBus
from application.services.refund_service import RefundApplicationService
from core.config import settings
from core.response import paginated_response, success_response
from domain.common.exceptions import DomainValidationException
from domain.refund.entity import RefundStatus

router = APIRouter(tags=["Refunds"])


def _dump(model) -> Any:
    return model.model_dump(mode="json", by_alias=True)


@router.post("/refunds", summary="创建退款", status_code=status.HTTP_201_CREATED)
async def create_refund(
    payload: dict[str, Any] = Body(...),
    actor: str = Depends(get_actor),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    service: RefundApplicationService = Depends(get_refund_service),
):
    """
    创建退款

    - **orderId**: 订单ID
    - **amount**: 退款金额（可选，缺省为剩余可退金额）
    - **reason**: 退款原因
    - **notes** / **metadata**: 备注与附加信息（可选）

    可选请求头 `Idempotency-Key`：同一个键只会创建一次退款。
    """
    command, errors = parse_create_refund({
        **payload,
        "requestedBy": actor,
        "idempotencyKey": idempotency_key,
    })
    if command is None:
        raise DomainValidationException(
            f"Validation failed: {errors[0]['message']}",
            field=errors[0]["field"],
            details={"errors": errors},
        )
    view = await service.create_refund(command)
    body = success_response(data=_dump(view), message="Refund created")
    return JSONResponse(status_code=status.HTTP_201_CREATED, content=body.model_dump(mode="json"))


@router.post("/refunds/bulk", summary="批量退款")
async def bulk_refunds(
    payload: BulkRefundRequest,
    actor: str = Depends(get_actor),
    service: RefundApplicationService = Depends(get_refund_service),
):
    result = await service.process_bulk_refunds(
        payload.order_ids,
        payload.reason.value,
        actor,
        notes=payload.notes,
    )
    return success_response(data=_dump(result), message="Bulk refunds processed")


@router.post("/refunds/dead-letters/replay", summary="重放失败的事件处理")
async def replay_dead_letters(bus: EventBus = Depends(get_event_bus)):
    result = await bus.replay()
    return success_response(data=result.model_dump(), message="Dead letters replayed")


@router.get("/refunds/dead-letters", summary="查看死信队列")
async def list_dead_letters(bus: EventBus = Depends(get_event_bus)):
    letters = await bus.dead_letters()
    return success_response(data=[_dump(letter) for letter in letters])


@router.get("/refunds", summary="退款列表")
async def list_refunds(
    order_id: Optional[str] = Query(default=None, alias="orderId"),
    payment_id: Optional[int] = Query(default=None, alias="paymentId"),
    refund_status: Optional[RefundStatus] = Query(default=None, alias="status"),
    requested_by: Optional[str] = Query(default=None, alias="requestedBy"),
    currency: Optional[str] = Query(default=None, min_length=3, max_length=3),
    min_amount: Optional[Decimal] = Query(default=None, ge=0, alias="minAmount"),
    max_amount: Optional[Decimal] = Query(default=None, ge=0, alias="maxAmount"),
    created_from: Optional[datetime] = Query(default=None, alias="createdFrom"),
    created_to: Optional[datetime] = Query(default=None, alias="createdTo"),
    sort_by: Literal["created_at", "createdAt", "amount", "status"] = Query(default="created_at", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query(default="desc", alias="sortOrder"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    service: RefundApplicationService = Depends(get_refund_service),
):
    """按条件分页查询退款，data 形如 {data: [...], meta: {...}}"""
    query = RefundListQuery.model_validate({
        "order_id": order_id,
        "payment_id": payment_id,
        "status": refund_status,
        "requested_by": requested_by,
        "currency": currency.upper() if currency else None,
        "min_amount": min_amount,
        "max_amount": max_amount,
        "created_from": created_from,
        "created_to": created_to,
        "sort_by": sort_by,
        "sort_order": sort_order,
        "page": page,
        "limit": limit,
    })
    views, total = await service.list_refunds(query)
    return paginated_response(items=[_dump(v) for v in views], total=total, page=page, limit=limit)


@router.get("/refunds/{refund_id}", summary="退款详情")
async def get_refund(
    refund_id: int,
    service: RefundApplicationService = Depends(get_refund_service),
):
    view = await service.get_refund(refund_id)
    return success_response(data=_dump(view))


@router.post("/refunds/{refund_id}/cancel", summary="取消退款")
async def cancel_refund(
    refund_id: int,
    actor: str = Depends(get_actor),
    service: RefundApplicationService = Depends(get_refund_service),
):
    view = await service.cancel_refund(refund_id, actor)
    return success_response(data=_dump(view), message="Refund cancelled")


@router.post("/refunds/{refund_id}/retry", summary="重试失败的退款")
async def retry_refund(
    refund_id: int,
    actor: str = Depends(get_actor),
    service: RefundApplicationService = Depends(get_refund_service),
):
    view = await service.retry_failed_refund(refund_id, actor)
    return success_response(data=_dump(view), message="Refund retry submitted")


@router.get("/orders/{order_id}/refunds", summary="订单的退款")
async def get_order_refunds(
    order_id: str,
    service: RefundApplicationService = Depends(get_refund_service),
):
    views = await service.get_refunds_by_order(order_id)
    return success_response(data=[_dump(v) for v in views])


@router.get("/orders/{order_id}/refund-eligibility", summary="退款资格")
async def get_refund_eligibility(
    order_id: str,
    service: RefundApplicationService = Depends(get_refund_service),
):
    view = await service.check_refund_eligibility(order_id)
    return success_response(data=_dump(view))


@router.get("/orders/{order_id}/refund-summary", summary="退款汇总")
async def get_refund_summary(
    order_id: str,
    service: RefundApplicationService = Depends(get_refund_service),
):
    view = await service.get_refund_summary(order_id)
    return success_response(data=_dump(view))
