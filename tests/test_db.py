"""SqlStore against a throwaway SQLite database."""

from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio

from boardroom.billing import BillingEngine, SubscriptionStatus
from boardroom.config import Settings
from boardroom.costs import CostCalculator, CostEventType
from boardroom.db import SqlStore, create_engine, create_session_factory, init_db
from boardroom.errors import SchemaNotInitializedError
from boardroom.store import ConversationRecord, ConversationStatus, MessageRecord, MessageSender
from boardroom.usage import UsageAction, UsageMeter


@pytest.fixture
def engine(tmp_path):
    settings = Settings(db_url_override=f"sqlite+aiosqlite:///{tmp_path}/boardroom.db")
    return create_engine(settings)


@pytest_asyncio.fixture
async def sql_store(engine):
    await init_db(engine)
    store = SqlStore(create_session_factory(engine))
    yield store
    await engine.dispose()


@pytest.mark.asyncio
async def test_conversation_and_messages(sql_store, clock) -> None:
    conversation = await sql_store.create_conversation(
        ConversationRecord(
            user_id="u1",
            title="Pricing review",
            created_at=clock(),
            updated_at=clock(),
            config={"personas": ["Alex", "Taylor"]},
        )
    )
    await sql_store.add_message(
        MessageRecord(
            conversation_id=conversation.id,
            sender=MessageSender.AI,
            content="Raise prices.",
            created_at=clock(),
            model="gemini-pro",
            metadata={"persona": "Alex (CEO)", "round": 1},
        )
    )
    clock.advance(minutes=1)
    await sql_store.set_conversation_status(conversation.id, ConversationStatus.COMPLETED, clock())

    stored = await sql_store.get_conversation(conversation.id)
    assert stored.status is ConversationStatus.COMPLETED
    assert stored.config == {"personas": ["Alex", "Taylor"]}
    assert stored.updated_at == clock()

    [message] = await sql_store.list_messages(conversation.id)
    assert message.sender is MessageSender.AI
    assert message.metadata["persona"] == "Alex (CEO)"
    assert [c.id for c in await sql_store.list_conversations("u1")] == [conversation.id]
    assert await sql_store.get_conversation("missing") is None


@pytest.mark.asyncio
async def test_usage_increments_and_rolls_over(sql_store, clock) -> None:
    meter = UsageMeter(sql_store, clock=clock)

    await meter.record_message("u1", "professional", "gemini-pro", 150, Decimal("0.01"))
    usage = await meter.record_message("u1", "professional", "gemini-pro", 50, Decimal("0.02"))
    assert usage.daily.messages == 2
    assert usage.monthly.tokens == 200
    assert usage.monthly.cost == Decimal("0.03")
    assert usage.patterns.favorite_models == ["gemini-pro"]

    clock.advance(days=1)
    usage = await meter.get_user_usage("u1", "professional")
    assert usage.daily.messages == 0
    assert usage.monthly.messages == 2

    await meter.record_debate("u1", "professional", 3, 4, 0, Decimal("0"), topic="Hiring plan")
    usage = await meter.get_user_usage("u1", "boardroom")
    assert usage.tier.value == "boardroom"
    assert usage.daily.max_personas_used == 4
    assert usage.patterns.topic_categories == {"HR": 1}


@pytest.mark.asyncio
async def test_violations_are_recorded(sql_store, clock) -> None:
    meter = UsageMeter(sql_store, clock=clock)
    result = await meter.enforce_limit("u1", "starter", UsageAction.DEBATE, rounds=2, personas=3)

    assert not result.allowed
    [violation] = await sql_store.list_violations("u1")
    assert violation.feature == "debate"
    assert violation.timestamp == clock()


@pytest.mark.asyncio
async def test_cost_events_filter_by_range(sql_store, clock) -> None:
    calculator = CostCalculator(sql_store, clock=clock)
    first = clock()
    await calculator.record_message_cost("u1", "professional", "gemini-pro", 100, 50)
    clock.advance(days=2)
    await calculator.record_message_cost("u1", "professional", "gemini-pro", 100, 50)

    everything = await sql_store.list_cost_events("u1")
    recent = await sql_store.list_cost_events("u1", start=first + timedelta(days=1))

    assert len(everything) == 2
    assert [e.timestamp for e in recent] == [clock()]
    assert recent[0].type is CostEventType.MESSAGE
    assert recent[0].metadata["input_tokens"] == 100


@pytest.mark.asyncio
async def test_subscription_and_cycles(sql_store, clock) -> None:
    meter = UsageMeter(sql_store, clock=clock)
    billing = BillingEngine(sql_store, meter, clock=clock)

    subscription = await billing.create_subscription("u1", "professional")
    current = await sql_store.find_current_subscription("u1")
    assert current.id == subscription.id
    assert current.current_period_end == subscription.current_period_end

    [cycle] = await sql_store.list_billing_cycles("u1")
    assert cycle.subscription_fee == Decimal("29")

    invoice = await billing.generate_invoice(cycle.id)
    assert (await sql_store.get_invoice(invoice.id)).total == invoice.total

    await billing.cancel_subscription(subscription.id, cancel_at_period_end=False)
    assert await sql_store.find_current_subscription("u1") is None
    cancelled = await sql_store.get_subscription(subscription.id)
    assert cancelled.status is SubscriptionStatus.CANCELED


@pytest.mark.asyncio
async def test_missing_schema_is_reported(engine) -> None:
    store = SqlStore(create_session_factory(engine))
    with pytest.raises(SchemaNotInitializedError):
        await store.load_usage("u1")
    await engine.dispose()
