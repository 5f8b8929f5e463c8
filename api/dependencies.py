"""
API依赖项 - 从应用容器取出应用服务，以及请求头解析
"""
from typing import Optional

from fastapi import Depends, Header, Request

from application.ports.event_bus import EventBus
from application.services.refund_service import RefundApplicationService
from application.services.webhook_service import WebhookService
from infrastructure.bootstrap import Container

DEFAULT_ACTOR = "system"


def get_container(request: Request) -> Container:
    """lifespan 中装配的应用容器"""
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise RuntimeError("Application container is not initialised")
    return container


async def get_refund_service(container: Container = Depends(get_container)) -> RefundApplicationService:
    return container.refund_service


async def get_webhook_service(container: Container = Depends(get_container)) -> WebhookService:
    return container.webhook_service


async def get_event_bus(container: Container = Depends(get_container)) -> EventBus:
    return container.event_bus


async def get_actor(x_actor_id: Optional[str] = Header(default=None, alias="X-Actor-ID")) -> str:
    """操作人：X-Actor-ID 请求头，缺省为 system"""
    actor = (x_actor_id or "").strip()
    return actor[:100] or DEFAULT_ACTOR


async def get_idempotency_key(
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
) -> Optional[str]:
    key = (idempotency_key or "").strip()
    return key or None
