"""
Notification dispatch port (fire-and-forget).
"""
from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class NotificationDispatcher(Protocol):
    def dispatch_event_notification(self, event_type: str, envelope: dict[str, Any]) -> str | None:
        """Hand an event to the notification channel; returns a task id when queued."""
        ...
