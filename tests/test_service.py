from decimal import Decimal

import pytest
from conftest import FakeCompletion

from boardroom.costs import CostEventType
from boardroom.errors import DebateConfigError, RateLimitExceededError, UsageLimitExceededError
from boardroom.events import DebateEventType
from boardroom.rate_limit import DebateRateLimiter
from boardroom.scheduler import DebateConfig
from boardroom.selector import DebateMode
from boardroom.service import Services
from boardroom.store import ConversationStatus, MessageSender

TOPIC = "Should we raise prices for enterprise customers this quarter?"


def _config(personas=("Alex", "Taylor"), **overrides) -> DebateConfig:
    values = {"topic": TOPIC, "mode": DebateMode.CUSTOM, "selected_personas": personas, "max_rounds": 1}
    values.update(overrides)
    return DebateConfig(**values)


@pytest.fixture
def services(settings, store, completion, clock) -> Services:
    return Services(settings, store, completion, clock=clock)


class AllowOnce:
    def __init__(self) -> None:
        self.counts: dict[str, int] = {}

    async def eval(self, script, numkeys, key, limit, window):
        self.counts[key] = self.counts.get(key, 0) + 1
        return 1 if self.counts[key] <= int(limit) else 0


@pytest.mark.asyncio
async def test_debate_is_metered_and_persisted(services, store) -> None:
    session = await services.start_debate("u1", "professional", _config())
    events = [event async for event in session.events]

    assert events[-1].type is DebateEventType.STREAM_COMPLETE
    assert events[-1].data == {"status": "completed"}

    conversation = await store.get_conversation(session.conversation.id)
    assert conversation.status is ConversationStatus.COMPLETED
    assert conversation.config["debate_id"] == session.debate_id
    assert conversation.config["personas"] == ["Alex", "Taylor"]

    messages = await store.list_messages(conversation.id)
    assert [m.metadata["persona"] for m in messages] == ["Alex (CEO)", "Taylor (CFO)"]
    assert all(m.sender is MessageSender.AI for m in messages)

    usage = await services.meter.get_user_usage("u1", "professional")
    assert usage.daily.messages == 2
    assert usage.monthly.messages == 2
    assert usage.monthly.debates == 1
    assert usage.monthly.tokens == 300
    assert usage.patterns.average_personas_per_debate == 2

    cost_events = await store.list_cost_events("u1")
    assert [e.type for e in cost_events] == [
        CostEventType.MESSAGE,
        CostEventType.MESSAGE,
        CostEventType.DEBATE,
    ]
    assert cost_events[0].metadata["debate_id"] == session.debate_id
    assert cost_events[-1].metadata["actual_tokens"] == 300
    assert cost_events[-1].actual_cost == Decimal("0")
    assert usage.monthly.cost == sum((e.actual_cost for e in cost_events[:2]), Decimal("0"))


@pytest.mark.asyncio
async def test_persona_limit_blocks_before_any_event(services, store) -> None:
    with pytest.raises(UsageLimitExceededError) as excinfo:
        await services.start_debate("u1", "starter", _config(personas=("Alex", "Sam", "Taylor")))

    assert excinfo.value.violation is not None
    violations = await store.list_violations("u1")
    assert len(violations) == 1
    assert await store.list_conversations("u1") == []


@pytest.mark.asyncio
async def test_model_outside_tier_is_rejected(services, completion) -> None:
    with pytest.raises(UsageLimitExceededError):
        await services.start_debate("u1", "starter", _config(model="openai/gpt-4"))
    assert completion.calls == []


@pytest.mark.asyncio
async def test_invalid_config_is_rejected(services) -> None:
    with pytest.raises(DebateConfigError):
        await services.start_debate("u1", "professional", _config(max_rounds=9))


@pytest.mark.asyncio
async def test_rate_limit_is_checked(settings, store, completion, clock) -> None:
    services = Services(settings, store, completion, clock=clock)
    services.rate_limiter = DebateRateLimiter(AllowOnce(), limit=1)

    first = await services.start_debate("u1", "professional", _config())
    await first.events.aclose()
    with pytest.raises(RateLimitExceededError):
        await services.start_debate("u1", "professional", _config())


@pytest.mark.asyncio
async def test_transcript_failures_do_not_break_the_stream(services, store, monkeypatch) -> None:
    async def refuse(message):
        raise RuntimeError("disk full")

    monkeypatch.setattr(store, "add_message", refuse)
    session = await services.start_debate("u1", "professional", _config(), include_summary=False)
    events = [event async for event in session.events]

    assert events[-1].data == {"status": "completed"}
    assert await store.list_messages(session.conversation.id) == []
    usage = await services.meter.get_user_usage("u1", "professional")
    assert usage.monthly.messages == 2


@pytest.mark.asyncio
async def test_cancelled_debate_marks_conversation(settings, store, clock) -> None:
    services = Services(settings, store, FakeCompletion(delay=10), clock=clock)
    session = await services.start_debate("u1", "professional", _config())

    async for event in session.events:
        if event.type is DebateEventType.TURN_STARTED:
            session.scheduler.cancel()
        if event.type is DebateEventType.STREAM_COMPLETE:
            assert event.data == {"status": "cancelled"}

    conversation = await store.get_conversation(session.conversation.id)
    assert conversation.status is ConversationStatus.CANCELLED


@pytest.mark.asyncio
async def test_aclose_releases_completion(services, completion) -> None:
    await services.aclose()
    assert completion.closed
