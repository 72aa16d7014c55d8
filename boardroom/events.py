"""
Debate stream events, the in-process event bus and Redis fan-out.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from .periods import utc_now

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)


class DebateEventType(str, Enum):
    CONNECTION_ESTABLISHED = "connection-established"
    DEBATE_STARTED = "debate-started"
    ROUND_STARTED = "round-started"
    TURN_STARTED = "turn-started"
    MESSAGE_GENERATED = "message-generated"
    ROUND_COMPLETED = "round-completed"
    DEBATE_COMPLETED = "debate-completed"
    GENERATING_SUMMARY = "generating-summary"
    SUMMARY_READY = "summary-ready"
    STREAM_COMPLETE = "stream-complete"
    ERROR = "error"


@dataclass
class DebateEvent:
    """One entry of the ordered debate stream."""

    type: DebateEventType
    data: dict[str, Any] = field(default_factory=dict)
    debate_id: str | None = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "data": self.data}


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if hasattr(value, "to_dict"):
        return value.to_dict()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def dumps(payload: Any) -> str:
    return json.dumps(payload, default=_json_default)


def encode_sse(event: DebateEvent) -> str:
    """Render an event as one Server-Sent-Events frame."""
    return f"data: {dumps(event.to_dict())}\n\n"


EventHandler = Callable[[DebateEvent], Awaitable[None] | None]


class EventEmitter:
    """Emits events to registered handlers.

    Handler failures are logged and never reach the emitter's caller.
    """

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def on_event(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    async def emit(self, event: DebateEvent) -> None:
        for handler in self._handlers:
            try:
                result = handler(event)
                if hasattr(result, "__await__"):
                    await result
            except Exception:
                logger.exception("Event handler error for %s", event.type.value)


def debate_channel(debate_id: str) -> str:
    return f"channel:debate:{debate_id}"


class RedisEventPublisher:
    """Handler that publishes events to Redis Pub/Sub."""

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def __call__(self, event: DebateEvent) -> None:
        if not event.debate_id:
            return
        try:
            await self._redis.publish(debate_channel(event.debate_id), dumps(event.to_dict()))
        except Exception as exc:
            logger.warning("Redis publish failed: %s", exc)
