"""Notification Celery tasks"""
from __future__ import annotations

from typing import Any

from celery import shared_task

from ..utils.base_task import BaseTask
from core.logging_config import get_logger

logger = get_logger(__name__)


@shared_task(
    name="notifications.send_event_notification",
    bind=True,
    base=BaseTask,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
    retry_kwargs={"max_retries": 5},
)
def send_event_notification(self, event_type: str, envelope: dict[str, Any]) -> dict[str, Any]:
    """Deliver a ledger event to the notification channel.

    The channel itself (email/SMS/webhook fan-out) is plugged in here; the
    envelope is the camelCase event bus envelope.
    """
    payload = envelope.get("payload") or {}
    logger.info(
        "event_notification_sent",
        event_type=event_type,
        event_id=envelope.get("eventId"),
        correlation_id=envelope.get("correlationId"),
        order_id=payload.get("orderId"),
        refund_id=payload.get("refundId"),
    )
    return {"event_type": event_type, "event_id": envelope.get("eventId")}
