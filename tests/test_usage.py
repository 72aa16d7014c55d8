import asyncio
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from boardroom.tiers import UNLIMITED, SubscriptionTier
from boardroom.usage import UsageAction, categorize_topic


@pytest.mark.asyncio
async def test_usage_is_created_lazily_with_period_keys(meter) -> None:
    usage = await meter.get_user_usage("u1", "starter")
    assert usage.daily.period == "2026-04-15"
    assert usage.monthly.period == "2026-04"
    assert usage.daily.messages == 0
    assert usage.tier is SubscriptionTier.STARTER


@pytest.mark.asyncio
async def test_record_message_updates_both_buckets(meter) -> None:
    await meter.record_message("u1", "starter", "gpt-4", 120, Decimal("0.0036"))
    usage = await meter.record_message("u1", "starter", "gemini-pro", 80, Decimal("0.00008"))

    for bucket in (usage.daily, usage.monthly):
        assert bucket.messages == 2
        assert bucket.tokens == 200
        assert bucket.cost == Decimal("0.00368")
    assert usage.patterns.favorite_models == ["gemini-pro", "gpt-4"]
    assert usage.patterns.peak_usage_hours == [12]


@pytest.mark.asyncio
async def test_concurrent_recordings_do_not_lose_updates(meter) -> None:
    await asyncio.gather(
        *(meter.record_message("u1", "boardroom", "gpt-4", 10, Decimal("0.001")) for _ in range(50))
    )

    usage = await meter.get_user_usage("u1", "boardroom")
    for bucket in (usage.daily, usage.monthly):
        assert bucket.messages == 50
        assert bucket.tokens == 500
        assert bucket.cost == Decimal("0.050")


@pytest.mark.asyncio
async def test_repeated_reads_in_one_period_are_identical(meter) -> None:
    await meter.record_message("u1", "starter", "gemini-pro", 40, Decimal("0.0004"))

    first = await meter.get_user_usage("u1", "starter")
    second = await meter.get_user_usage("u1", "starter")
    assert first == second


@pytest.mark.asyncio
async def test_daily_then_monthly_rollover(meter, clock) -> None:
    await meter.record_message("u1", "starter", "gpt-4", 100, Decimal("0.003"))

    clock.set(datetime(2026, 4, 16, 9, 0, tzinfo=UTC))
    usage = await meter.get_user_usage("u1", "starter")
    assert usage.daily.period == "2026-04-16"
    assert usage.daily.messages == 0
    assert usage.monthly.messages == 1

    again = await meter.get_user_usage("u1", "starter")
    assert again.daily == usage.daily
    assert again.monthly == usage.monthly

    clock.set(datetime(2026, 5, 1, 0, 0, tzinfo=UTC))
    usage = await meter.get_user_usage("u1", "starter")
    assert usage.monthly.period == "2026-05"
    assert usage.monthly.messages == 0


@pytest.mark.asyncio
async def test_tier_change_is_applied_on_access(meter) -> None:
    await meter.get_user_usage("u1", "starter")
    usage = await meter.get_user_usage("u1", "professional")
    assert usage.tier is SubscriptionTier.PROFESSIONAL


@pytest.mark.asyncio
async def test_message_limit_reached(meter) -> None:
    for _ in range(10):
        await meter.record_message("u1", "starter", "gemini-pro", 10, Decimal("0"))

    check = await meter.check_usage_limit("u1", "starter", UsageAction.MESSAGE)
    assert check.allowed is False
    assert check.limit == 10
    assert check.remaining == 0
    assert check.upgrade_required is True
    assert check.reset_time == datetime(2026, 4, 16, tzinfo=UTC)


@pytest.mark.asyncio
async def test_unlimited_tier_reports_minus_one(meter) -> None:
    check = await meter.check_usage_limit("u1", "enterprise", "message")
    assert check.allowed is True
    assert check.limit == UNLIMITED
    assert check.remaining == UNLIMITED


@pytest.mark.asyncio
async def test_debate_check_applies_rounds_and_personas(meter) -> None:
    allowed = await meter.check_usage_limit("u1", "starter", "debate", rounds=2, personas=2)
    too_many_rounds = await meter.check_usage_limit("u1", "starter", "debate", rounds=3, personas=2)
    too_many_personas = await meter.check_usage_limit("u1", "starter", "debate", rounds=2, personas=3)

    assert allowed.allowed is True
    assert too_many_rounds.allowed is False
    assert too_many_personas.allowed is False
    assert too_many_personas.upgrade_required is True


@pytest.mark.asyncio
async def test_feature_flags_and_unknown_actions(meter) -> None:
    export = await meter.check_usage_limit("u1", "starter", "export")
    api = await meter.check_usage_limit("u1", "boardroom", "api_call")
    unknown = await meter.check_usage_limit("u1", "enterprise", "teleport")

    assert export.allowed is False
    assert api.allowed is True
    assert unknown.allowed is False
    assert unknown.upgrade_required is True


@pytest.mark.asyncio
async def test_enforce_limit_records_violation(meter) -> None:
    result = await meter.enforce_limit("u1", "starter", "export")

    assert result.allowed is False
    violation = result.violation
    assert violation.feature == "export"
    assert violation.limit == 0
    assert violation.attempted == 1
    assert violation.action == "blocked"
    assert await meter.get_violations("u1") == [violation]

    assert (await meter.enforce_limit("u1", "professional", "export")).allowed is True
    assert len(await meter.get_violations("u1")) == 1


@pytest.mark.asyncio
async def test_debate_patterns(meter) -> None:
    await meter.record_debate("u1", "professional", 2, 3, 0, Decimal("0"), topic="quarterly budget review")
    usage = await meter.record_debate("u1", "professional", 4, 5, 0, Decimal("0"), topic="hiring plan")

    assert usage.monthly.debates == 2
    assert usage.monthly.debate_rounds == 6
    assert usage.monthly.max_personas_used == 5
    assert usage.patterns.average_debate_length == 3.0
    assert usage.patterns.average_personas_per_debate == 4.0
    assert usage.patterns.topic_categories == {"Finance": 1, "HR": 1}


def test_categorize_topic_defaults_to_general() -> None:
    assert categorize_topic("Should we move the lobby?") == "General"


@pytest.mark.asyncio
async def test_unknown_tier_is_rejected(meter) -> None:
    with pytest.raises(ValueError):
        await meter.check_usage_limit("u1", "platinum", "message")
