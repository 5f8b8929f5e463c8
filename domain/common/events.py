"""
Domain event base.

Events are plain dataclasses recorded by domain services and published by the
application layer after the owning transaction commits.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar
import uuid


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


@dataclass(kw_only=True)
class DomainEvent:
    event_type: ClassVar[str] = "domain.event"

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> dict[str, Any]:
        """JSON-friendly camelCase payload (envelope metadata excluded)."""
        return {
            _camel(f.name): _plain(getattr(self, f.name))
            for f in fields(self)
            if f.name not in ("event_id", "occurred_at")
        }
