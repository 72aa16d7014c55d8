"""
Client-facing debate stream.

Wraps the scheduler's events with the connection handshake, the optional
summary phase and the terminal ``stream-complete`` event.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

from .events import DebateEvent, DebateEventType, encode_sse
from .scheduler import DebateConfig, DebateScheduler
from .summary import DebateSummarizer

logger = logging.getLogger(__name__)


def start_debate_stream(
    scheduler: DebateScheduler,
    config: DebateConfig,
    *,
    summarizer: DebateSummarizer | None = None,
    include_summary: bool = True,
) -> AsyncIterator[DebateEvent]:
    """Validate ``config`` and return the event stream.

    ``DebateConfigError`` is raised here, before the stream opens. Anything
    that goes wrong afterwards is reported as an ``error`` event, and the
    stream always ends with ``stream-complete``.
    """
    scheduler.prepare(config)
    return open_debate_stream(scheduler, summarizer=summarizer, include_summary=include_summary)


async def open_debate_stream(
    scheduler: DebateScheduler,
    *,
    summarizer: DebateSummarizer | None = None,
    include_summary: bool = True,
) -> AsyncIterator[DebateEvent]:
    """Event stream for a scheduler that has already been prepared."""
    state = scheduler.state
    summarizer = summarizer or DebateSummarizer()

    async def event(type: DebateEventType, data: dict[str, Any], stamp: bool = True) -> DebateEvent:
        ev = DebateEvent(type=type, data=data, debate_id=state.id)
        if stamp:
            data.setdefault("timestamp", ev.timestamp.isoformat())
        await scheduler.emitter.emit(ev)
        return ev

    yield await event(DebateEventType.CONNECTION_ESTABLISHED, {"status": "connected"})

    try:
        async for ev in scheduler.events():
            yield ev

        if include_summary and state.is_complete:
            yield await event(
                DebateEventType.GENERATING_SUMMARY,
                {"status": "Generating debate summary..."},
                stamp=False,
            )
            summary = await summarizer.summarize(state)
            yield await event(DebateEventType.SUMMARY_READY, summary.to_dict(), stamp=False)
    except Exception as exc:
        logger.exception("Debate stream %s failed", state.id)
        yield await event(DebateEventType.ERROR, {"message": str(exc) or type(exc).__name__})

    yield await event(DebateEventType.STREAM_COMPLETE, {"status": scheduler.phase.value})


async def sse_stream(events: AsyncIterator[DebateEvent]) -> AsyncIterator[str]:
    """Render an event stream as Server-Sent-Events frames."""
    async for ev in events:
        yield encode_sse(ev)
