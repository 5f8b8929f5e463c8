import pytest

from application.ports.event_bus import EventEnvelope
from application.services.event_subscribers import (
    NOTIFICATION_TOPICS,
    CacheInvalidationSubscriber,
    NotificationSubscriber,
    register_subscribers,
)
from infrastructure.cache import InMemoryCache
from infrastructure.events import InProcessEventBus


class ExplodingDispatcher:
    def dispatch_event_notification(self, event_type, envelope):
        raise ConnectionError("broker down")


class RecordingDispatcher:
    def __init__(self):
        self.sent = []

    def dispatch_event_notification(self, event_type, envelope):
        self.sent.append((event_type, envelope))
        return "task-1"


@pytest.mark.asyncio
async def test_cache_invalidation_clears_refund_and_order_keys():
    cache = InMemoryCache()
    for key in ("refund:5", "order:ord_1", "refund:eligibility:ord_1", "refund:summary:ord_1",
                "refunds:order:ord_1", "refund:eligibility:ord_2"):
        await cache.set(key, {"cached": True})

    await CacheInvalidationSubscriber(cache)(
        EventEnvelope(event_type="refund.status-updated", payload={"refundId": 5, "orderId": "ord_1"})
    )

    assert await cache.get("refund:5") is None
    assert await cache.get("refund:eligibility:ord_1") is None
    assert await cache.get("refund:summary:ord_1") is None
    assert await cache.get("refunds:order:ord_1") is None
    assert await cache.get("refund:eligibility:ord_2") == {"cached": True}


@pytest.mark.asyncio
async def test_notification_subscriber_sends_camel_case_envelope():
    dispatcher = RecordingDispatcher()
    envelope = EventEnvelope(event_type="refund.failed", payload={"refundId": 1}, correlation_id="req-1")

    await NotificationSubscriber(dispatcher)(envelope)

    [(event_type, sent)] = dispatcher.sent
    assert event_type == "refund.failed"
    assert sent["eventId"] == envelope.event_id
    assert sent["correlationId"] == "req-1"


@pytest.mark.asyncio
async def test_notification_failures_do_not_reach_the_bus():
    bus = InProcessEventBus(raise_on_handler_error=True)
    register_subscribers(bus, dispatcher=ExplodingDispatcher())

    await bus.publish("refund.cancelled", {"refundId": 1})

    assert await bus.dead_letters() == []


def test_register_subscribers_returns_unsubscribable_pairs():
    bus = InProcessEventBus()
    pairs = register_subscribers(bus, cache=InMemoryCache(), dispatcher=RecordingDispatcher())

    assert ("refund.initiated", "cache_invalidation") in pairs
    assert ("refund.initiated", "notifications") in pairs
    assert len([p for p in pairs if p[1] == "notifications"]) == len(NOTIFICATION_TOPICS)
    assert all(bus.unsubscribe(topic, name) for topic, name in pairs)
