"""
Event bus subscribers: read-model cache invalidation and notifications.

Both are side effects of committed ledger changes, so failures are logged
and never propagated back into the publishing use case.
"""
from __future__ import annotations

from typing import Optional

from application.ports.cache import (
    CachePort,
    eligibility_key,
    order_key,
    order_refunds_pattern,
    order_status_key,
    refund_key,
    summary_key,
)
from application.ports.event_bus import EventBus, EventEnvelope
from application.ports.notifications import NotificationDispatcher
from core.logging_config import get_logger


logger = get_logger(__name__)

STATE_CHANGING_TOPICS = (
    "refund.initiated",
    "refund.status-updated",
    "refund.failed",
    "refund.cancelled",
    "payment.succeeded",
    "payment.failed",
    "order.cancelled",
    "charge.refunded",
    "dispute.created",
    "dispute.updated",
)

NOTIFICATION_TOPICS = (
    "refund.initiated",
    "refund.status-updated",
    "refund.failed",
    "refund.cancelled",
    "payment.succeeded",
    "payment.failed",
    "order.cancelled",
)


class CacheInvalidationSubscriber:
    def __init__(self, cache: CachePort) -> None:
        self._cache = cache

    async def __call__(self, envelope: EventEnvelope) -> None:
        payload = envelope.payload
        order_id = payload.get("orderId")
        refund_id = payload.get("refundId")
        try:
            keys: list[str] = []
            if refund_id is not None:
                keys.append(refund_key(refund_id))
            if order_id:
                keys.extend([
                    order_key(order_id),
                    order_status_key(order_id),
                    eligibility_key(order_id),
                    summary_key(order_id),
                ])
            if keys:
                await self._cache.delete(*keys)
            if order_id:
                await self._cache.delete_pattern(order_refunds_pattern(order_id))
        except Exception as exc:
            logger.warning(
                "cache_invalidation_failed",
                event_type=envelope.event_type,
                event_id=envelope.event_id,
                error=str(exc),
            )
            return
        logger.debug("cache_invalidated", event_type=envelope.event_type, order_id=order_id, refund_id=refund_id)


class NotificationSubscriber:
    def __init__(self, dispatcher: NotificationDispatcher) -> None:
        self._dispatcher = dispatcher

    async def __call__(self, envelope: EventEnvelope) -> None:
        try:
            task_id = self._dispatcher.dispatch_event_notification(
                envelope.event_type,
                envelope.model_dump(mode="json", by_alias=True),
            )
        except Exception as exc:
            logger.warning(
                "notification_dispatch_failed",
                event_type=envelope.event_type,
                event_id=envelope.event_id,
                error=str(exc),
            )
            return
        logger.info("notification_dispatched", event_type=envelope.event_type, task_id=task_id)


def register_subscribers(
    bus: EventBus,
    *,
    cache: Optional[CachePort] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> list[tuple[str, str]]:
    """Subscribe the standard handlers; returns ``(topic, name)`` pairs for unsubscribe."""
    registered: list[tuple[str, str]] = []
    if cache is not None:
        invalidate = CacheInvalidationSubscriber(cache)
        for topic in STATE_CHANGING_TOPICS:
            registered.append((topic, bus.subscribe(topic, invalidate, name="cache_invalidation")))
    if dispatcher is not None:
        notify = NotificationSubscriber(dispatcher)
        for topic in NOTIFICATION_TOPICS:
            registered.append((topic, bus.subscribe(topic, notify, name="notifications")))
    return registered
