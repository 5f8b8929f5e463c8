"""
进程内事件总线

- 同步、按订阅顺序投递：先投递给 topic 的订阅者，再投递给 "*" 订阅者
- 每个处理器都会被调用；每个失败的处理器产生一条死信
- 投递结束后如有失败：raise_on_handler_error 为真时抛出 EventDeliveryError，
  否则记录日志后返回
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from application.ports.event_bus import (
    WILDCARD_TOPIC,
    DeadLetter,
    DeadLetterStore,
    EventDeliveryError,
    EventEnvelope,
    EventHandler,
    ReplayResult,
)
from core.logging_config import get_logger
from .dead_letter import InMemoryDeadLetterStore

logger = get_logger(__name__)


def _current_request_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get("request_id")


def _handler_name(handler: EventHandler) -> str:
    module = getattr(handler, "__module__", "") or ""
    qualname = getattr(handler, "__qualname__", None) or type(handler).__name__
    return f"{module}.{qualname}" if module else qualname


class InProcessEventBus:
    """进程内事件总线（EventBus 端口实现）"""

    def __init__(
        self,
        dead_letter_store: Optional[DeadLetterStore] = None,
        *,
        raise_on_handler_error: bool = False,
        source: str = "refund-core",
    ) -> None:
        self._store: DeadLetterStore = dead_letter_store or InMemoryDeadLetterStore()
        self._raise = raise_on_handler_error
        self._source = source
        # topic -> {name: handler}，dict 保持订阅顺序
        self._subscribers: dict[str, dict[str, EventHandler]] = {}

    def subscribe(self, topic: str, handler: EventHandler, name: Optional[str] = None) -> str:
        name = name or _handler_name(handler)
        self._subscribers.setdefault(topic, {})[name] = handler
        logger.debug("event_handler_subscribed", topic=topic, handler=name)
        return name

    def unsubscribe(self, topic: str, name: str) -> bool:
        handlers = self._subscribers.get(topic)
        if not handlers or name not in handlers:
            return False
        del handlers[name]
        return True

    def _handlers_for(self, topic: str) -> list[tuple[str, EventHandler]]:
        handlers = list(self._subscribers.get(topic, {}).items())
        if topic != WILDCARD_TOPIC:
            handlers.extend(self._subscribers.get(WILDCARD_TOPIC, {}).items())
        return handlers

    def _find_handler(self, name: str) -> Optional[EventHandler]:
        for handlers in self._subscribers.values():
            if name in handlers:
                return handlers[name]
        return None

    async def publish(
        self,
        topic: str,
        payload: dict[str, Any],
        *,
        correlation_id: Optional[str] = None,
        causation_id: Optional[str] = None,
    ) -> EventEnvelope:
        envelope = EventEnvelope(
            event_type=topic,
            source=self._source,
            correlation_id=correlation_id or _current_request_id(),
            causation_id=causation_id,
            payload=payload,
        )
        failures: list[DeadLetter] = []
        for name, handler in self._handlers_for(topic):
            try:
                await handler(envelope)
            except Exception as exc:
                letter = DeadLetter(
                    envelope=envelope,
                    handler=name,
                    error=f"{type(exc).__name__}: {exc}",
                )
                await self._store.push(letter)
                failures.append(letter)
                logger.error(
                    "event_handler_failed",
                    topic=topic,
                    event_id=envelope.event_id,
                    handler=name,
                    error=str(exc),
                    exc_info=True,
                )

        logger.info(
            "event_published",
            topic=topic,
            event_id=envelope.event_id,
            correlation_id=envelope.correlation_id,
            failed_handlers=len(failures),
        )
        if failures:
            if self._raise:
                raise EventDeliveryError(envelope, failures)
            logger.warning("event_delivery_incomplete", topic=topic, event_id=envelope.event_id)
        return envelope

    async def dead_letters(self) -> list[DeadLetter]:
        return await self._store.list()

    async def replay(self) -> ReplayResult:
        """重新调用失败的处理器；成功的移除，失败的 attempts + 1 后重新入队"""
        result = ReplayResult()
        for letter in await self._store.drain():
            handler = self._find_handler(letter.handler)
            try:
                if handler is None:
                    raise LookupError(f"handler {letter.handler} is not subscribed")
                await handler(letter.envelope)
            except Exception as exc:
                result.failed += 1
                await self._store.push(letter.model_copy(update={
                    "attempts": letter.attempts + 1,
                    "error": f"{type(exc).__name__}: {exc}",
                    "failed_at": datetime.now(timezone.utc),
                }))
                logger.warning(
                    "dead_letter_replay_failed",
                    letter_id=letter.id,
                    handler=letter.handler,
                    attempts=letter.attempts + 1,
                    error=str(exc),
                )
            else:
                result.replayed += 1
                logger.info("dead_letter_replayed", letter_id=letter.id, handler=letter.handler)
        return result
