"""事件总线与死信存储"""
from .bus import InProcessEventBus
from .dead_letter import InMemoryDeadLetterStore, RedisDeadLetterStore

__all__ = ["InProcessEventBus", "InMemoryDeadLetterStore", "RedisDeadLetterStore"]
