import structlog

from infrastructure.tasks import TaskDispatcher, celery_app
from infrastructure.tasks.tasks.notifications import send_event_notification


ENVELOPE = {
    "eventId": "evt-1",
    "eventType": "refund.failed",
    "correlationId": "req-1",
    "payload": {"refundId": 7, "orderId": "ord_1"},
}


def test_celery_runs_eagerly_in_tests():
    assert celery_app.conf.task_always_eager is True
    assert celery_app.conf.task_routes["refunds.*"] == {"queue": "high"}
    assert "reconcile-stale-refunds" in celery_app.conf.beat_schedule


def test_notification_task_returns_event_reference():
    result = send_event_notification.apply(kwargs={"event_type": "refund.failed", "envelope": ENVELOPE})

    assert result.successful()
    assert result.get() == {"event_type": "refund.failed", "event_id": "evt-1"}


def test_dispatcher_schedules_notification():
    task_id = TaskDispatcher().dispatch_event_notification("refund.failed", ENVELOPE)

    assert task_id


def test_task_context_is_unbound_after_run():
    send_event_notification.apply(kwargs={"event_type": "refund.cancelled", "envelope": ENVELOPE})

    context = structlog.contextvars.get_contextvars()
    assert "task_id" not in context
    assert "task_name" not in context
