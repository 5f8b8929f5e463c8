"""Small dispatching helpers to decouple Celery from callers."""
from __future__ import annotations

from typing import Any, Dict


class TaskDispatcher:
    """Internal facade used by application layer to schedule tasks."""

    def dispatch_event_notification(self, event_type: str, envelope: Dict[str, Any]) -> str | None:
        """Fire-and-forget notification for a published ledger event."""
        from ..tasks.notifications import send_event_notification

        # apply_async honours task_always_eager, send_task by name does not
        result = send_event_notification.apply_async(
            kwargs={"event_type": event_type, "envelope": envelope},
            queue="low",
        )
        return result.id
