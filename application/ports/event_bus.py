"""
Event bus port: publish/subscribe with per-handler dead letters.

The envelope and dead-letter shapes live here so both the in-process bus
and any future broker-backed bus speak the same contract.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


WILDCARD_TOPIC = "*"


class EventEnvelope(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str
    source: str = "refund-core"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: Optional[str] = None
    causation_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)


class DeadLetter(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    envelope: EventEnvelope
    handler: str
    error: str
    attempts: int = 1
    failed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ReplayResult(BaseModel):
    replayed: int = 0
    failed: int = 0


EventHandler = Callable[[EventEnvelope], Awaitable[None]]


class EventDeliveryError(Exception):
    """Raised after delivery when one or more handlers failed and raising is enabled."""

    def __init__(self, envelope: EventEnvelope, failures: list[DeadLetter]):
        self.envelope = envelope
        self.failures = failures
        names = ", ".join(f.handler for f in failures)
        super().__init__(f"{len(failures)} handler(s) failed for {envelope.event_type}: {names}")


@runtime_checkable
class EventBus(Protocol):
    async def publish(
        self,
        topic: str,
        payload: dict[str, Any],
        *,
        correlation_id: Optional[str] = None,
        causation_id: Optional[str] = None,
    ) -> EventEnvelope: ...

    def subscribe(self, topic: str, handler: EventHandler, name: Optional[str] = None) -> str: ...

    def unsubscribe(self, topic: str, name: str) -> bool: ...

    async def dead_letters(self) -> list[DeadLetter]: ...

    async def replay(self) -> ReplayResult: ...


@runtime_checkable
class DeadLetterStore(Protocol):
    async def push(self, letter: DeadLetter) -> None: ...

    async def list(self) -> list[DeadLetter]: ...

    async def drain(self) -> list[DeadLetter]:
        """Remove and return every stored letter (replay takes ownership)."""
        ...
