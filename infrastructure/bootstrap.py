"""
组合根 - 为 API、Celery 任务与测试装配应用服务

应用层只依赖端口；具体的网关、幂等守卫、缓存、事件总线与通知分发器
都在这里创建并通过构造函数注入。
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from application.ports.cache import CachePort
from application.ports.event_bus import EventBus
from application.ports.idempotency import IdempotencyGuard
from application.ports.notifications import NotificationDispatcher
from application.ports.payment_gateway import PaymentGateway
from application.services.event_subscribers import register_subscribers
from application.services.reconciliation_service import ReconciliationService
from application.services.refund_service import RefundApplicationService
from application.services.webhook_service import WebhookService
from core.config import settings
from core.logging_config import get_logger
from infrastructure.cache import (
    InMemoryCache,
    InMemoryIdempotencyGuard,
    RedisCache,
    RedisIdempotencyGuard,
)
from infrastructure.database import build_engine, build_session_factory
from infrastructure.events import InMemoryDeadLetterStore, InProcessEventBus, RedisDeadLetterStore
from infrastructure.external.cache.redis_client import RedisClient
from infrastructure.external.payments import get_payment_gateway
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork, session_uow_factory

logger = get_logger(__name__)


@dataclass
class Container:
    uow_factory: Callable[..., SQLAlchemyUnitOfWork]
    gateway: PaymentGateway
    event_bus: EventBus
    idempotency_guard: IdempotencyGuard
    cache: Optional[CachePort]
    refund_service: RefundApplicationService
    webhook_service: WebhookService
    reconciliation_service: ReconciliationService
    engine: Optional[AsyncEngine] = None
    subscriptions: list[tuple[str, str]] = field(default_factory=list)

    async def aclose(self) -> None:
        for topic, name in self.subscriptions:
            self.event_bus.unsubscribe(topic, name)
        self.subscriptions.clear()
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None


def build_event_bus(redis_client: Optional[RedisClient] = None) -> InProcessEventBus:
    """按配置选择死信存储：redis 需要已初始化的客户端，否则回落到进程内存储"""
    cfg = settings.event_bus
    if cfg.dead_letter_backend == "redis":
        if redis_client is None:
            raise RuntimeError("EVENT_BUS__DEAD_LETTER_BACKEND=redis 需要配置 REDIS__URL")
        store = RedisDeadLetterStore(redis_client, key=cfg.dead_letter_key, max_items=cfg.dead_letter_max_items)
    else:
        store = InMemoryDeadLetterStore(max_items=cfg.dead_letter_max_items)
    return InProcessEventBus(
        store,
        raise_on_handler_error=settings.raise_on_handler_error,
        source=settings.PROJECT_NAME,
    )


def build_container(
    *,
    uow_factory: Optional[Callable[..., SQLAlchemyUnitOfWork]] = None,
    gateway: Optional[PaymentGateway] = None,
    gateway_resolver: Optional[Callable[[str], PaymentGateway]] = None,
    redis_client: Optional[RedisClient] = None,
    event_bus: Optional[EventBus] = None,
    idempotency_guard: Optional[IdempotencyGuard] = None,
    cache: Optional[CachePort] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
    engine: Optional[AsyncEngine] = None,
) -> Container:
    """
    装配应用服务

    未显式传入的依赖按配置创建：有 Redis 客户端时使用 Redis 实现，
    否则使用进程内实现（单进程开发与测试）。
    """
    if uow_factory is None:
        uow_factory = SQLAlchemyUnitOfWork
    gateway = gateway or get_payment_gateway()
    if gateway_resolver is None:
        default_gateway = gateway

        def gateway_resolver(provider: str) -> PaymentGateway:
            if provider.lower() == default_gateway.provider:
                return default_gateway
            return get_payment_gateway(provider)

    if event_bus is None:
        event_bus = build_event_bus(redis_client)
    if idempotency_guard is None:
        idempotency_guard = (
            RedisIdempotencyGuard(redis_client) if redis_client is not None else InMemoryIdempotencyGuard()
        )
    if cache is None:
        cache = RedisCache(redis_client) if redis_client is not None else InMemoryCache()

    refund_service = RefundApplicationService(
        uow_factory,
        gateway,
        event_bus,
        idempotency_guard,
        cache,
    )
    webhook_service = WebhookService(
        uow_factory,
        gateway_resolver,
        idempotency_guard,
        event_bus,
        refund_service,
    )
    reconciliation_service = ReconciliationService(uow_factory, gateway, refund_service)
    subscriptions = register_subscribers(event_bus, cache=cache, dispatcher=dispatcher)

    logger.info(
        "container_built",
        gateway=gateway.provider,
        idempotency_guard=type(idempotency_guard).__name__,
        cache=type(cache).__name__,
        notifications=dispatcher is not None,
    )
    return Container(
        uow_factory=uow_factory,
        gateway=gateway,
        event_bus=event_bus,
        idempotency_guard=idempotency_guard,
        cache=cache,
        refund_service=refund_service,
        webhook_service=webhook_service,
        reconciliation_service=reconciliation_service,
        engine=engine,
        subscriptions=subscriptions,
    )


def build_task_container(
    redis_client: Optional[RedisClient] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> Container:
    """Celery 任务使用：每次运行独立的引擎，运行结束后由 Container.aclose 释放"""
    engine = build_engine()
    return build_container(
        uow_factory=session_uow_factory(build_session_factory(engine)),
        redis_client=redis_client,
        dispatcher=dispatcher,
        engine=engine,
    )
