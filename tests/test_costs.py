from decimal import Decimal

import pytest

from boardroom.costs import (
    AlertSeverity,
    AlertType,
    CostEventType,
    StatsPeriod,
    calculate_message_cost,
    estimate_debate_cost,
    get_model_price,
)


def test_message_cost_applies_tier_multiplier() -> None:
    assert calculate_message_cost("starter", "gpt-4", 1000) == Decimal("0.03")
    assert calculate_message_cost("professional", "openai/gpt-4-turbo", 2000) == Decimal("0.018")
    assert calculate_message_cost("enterprise", "claude-3-opus", 1000) == Decimal("0.0105")


def test_unknown_model_uses_fallback_price() -> None:
    assert get_model_price("acme/brand-new-model") == Decimal("0.001")
    assert calculate_message_cost("starter", "acme/brand-new-model", 1000) == Decimal("0.001")


def test_provider_qualified_ids_match_longest_key() -> None:
    assert get_model_price("mistralai/mixtral-8x7b-instruct") == Decimal("0.0005")
    assert get_model_price("openai/gpt-4-turbo") == Decimal("0.01")


def test_estimate_debate_cost() -> None:
    estimate = estimate_debate_cost("starter", "gpt-4", "x" * 40, rounds=2, personas=3)
    # Six turns of 10 topic tokens plus 150 response tokens each.
    assert estimate.estimated_tokens == 960
    assert estimate.estimated_cost == Decimal("0.0288")


@pytest.mark.asyncio
async def test_record_message_cost_feeds_usage_stats(calculator, clock) -> None:
    await calculator.record_message_cost("u1", "starter", "gpt-4", 600, 400)
    await calculator.record_message_cost("u1", "starter", "gemini-pro", 1500, 500)
    await calculator.record_debate_cost("u1", "starter", "gpt-4", "Pricing review", 2, 3, actual_tokens=3000)

    stats = await calculator.get_usage_stats("u1", "starter", StatsPeriod.MONTHLY)

    assert stats.total_messages == 2
    assert stats.total_debates == 1
    assert stats.total_tokens == 3000
    assert stats.total_cost == Decimal("0.032")
    assert stats.model_breakdown["gpt-4"].messages == 1
    assert len(stats.daily_breakdown) == 15
    assert stats.daily_breakdown[0].messages == 0
    assert stats.daily_breakdown[-1].messages == 2
    assert await calculator.get_current_session_cost("u1") == Decimal("0.032")


@pytest.mark.asyncio
async def test_debate_event_carries_estimate_but_costs_nothing(calculator) -> None:
    event = await calculator.record_debate_cost("u1", "starter", "gpt-4", "x" * 40, 2, 3, actual_tokens=900)
    assert event.type is CostEventType.DEBATE
    assert event.actual_cost == 0
    assert event.estimated_cost == Decimal("0.0288")
    assert event.metadata["actual_tokens"] == 900


@pytest.mark.asyncio
async def test_starter_alerts_at_warning_threshold(calculator, meter) -> None:
    for _ in range(80):
        await meter.record_message("u1", "starter", "gemini-pro", 10, Decimal("0"))

    alerts = await calculator.check_budget_alerts("u1", "starter")
    by_type = {alert.alert_type: alert for alert in alerts}

    assert by_type[AlertType.USAGE_LIMIT].severity is AlertSeverity.WARNING
    assert by_type[AlertType.USAGE_LIMIT].percentage == Decimal("80")
    assert by_type[AlertType.TIER_UPGRADE].severity is AlertSeverity.INFO
    assert len(alerts) == 2


@pytest.mark.asyncio
async def test_budget_alert_is_critical_at_ninety_percent(calculator, meter) -> None:
    await meter.record_message("u1", "professional", "gpt-4", 1000, Decimal("0.95"))

    alerts = await calculator.check_budget_alerts("u1", "professional", monthly_budget=Decimal("1"))

    assert [a.alert_type for a in alerts] == [AlertType.COST_THRESHOLD]
    assert alerts[0].severity is AlertSeverity.CRITICAL
    assert alerts[0].action_required is True


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("messages", "severity"),
    [(74, None), (75, AlertSeverity.WARNING), (89, AlertSeverity.WARNING), (90, AlertSeverity.CRITICAL)],
)
async def test_usage_alert_thresholds_are_inclusive(calculator, meter, messages, severity) -> None:
    for _ in range(messages):
        await meter.record_message("u1", "starter", "gemini-pro", 10, Decimal("0"))

    alerts = await calculator.check_budget_alerts("u1", "starter")
    usage_alerts = [a for a in alerts if a.alert_type is AlertType.USAGE_LIMIT]

    assert [a.severity for a in usage_alerts] == ([severity] if severity else [])


@pytest.mark.asyncio
@pytest.mark.parametrize(("messages", "suggested"), [(50, False), (51, True)])
async def test_upgrade_suggested_only_above_fifty_messages(calculator, meter, messages, suggested) -> None:
    for _ in range(messages):
        await meter.record_message("u1", "starter", "gemini-pro", 10, Decimal("0"))

    alerts = await calculator.check_budget_alerts("u1", "starter")

    assert any(a.alert_type is AlertType.TIER_UPGRADE for a in alerts) is suggested
    assert not any(a.alert_type is AlertType.USAGE_LIMIT for a in alerts)


@pytest.mark.asyncio
async def test_budget_alert_at_exact_thresholds(calculator, meter) -> None:
    await meter.record_message("u1", "professional", "gpt-4", 1000, Decimal("0.75"))
    [warning] = await calculator.check_budget_alerts("u1", "professional", monthly_budget=Decimal("1"))
    assert warning.severity is AlertSeverity.WARNING

    await meter.record_message("u1", "professional", "gpt-4", 1000, Decimal("0.15"))
    [critical] = await calculator.check_budget_alerts("u1", "professional", monthly_budget=Decimal("1"))
    assert critical.severity is AlertSeverity.CRITICAL


@pytest.mark.asyncio
async def test_no_alerts_for_light_usage(calculator, meter) -> None:
    await meter.record_message("u1", "starter", "gemini-pro", 10, Decimal("0"))
    assert await calculator.check_budget_alerts("u1", "starter") == []


@pytest.mark.asyncio
async def test_suggests_cheaper_model(calculator) -> None:
    await calculator.record_event("u1", "message", "gpt-4", 1000, Decimal("12"))

    suggestions = await calculator.get_cost_optimization_suggestions("u1", "starter")

    assert [s.type for s in suggestions] == ["model_optimization"]
    assert "claude-3-sonnet" in suggestions[0].suggestion
    assert suggestions[0].potential_savings == Decimal("10.80")


def test_operation_estimate_for_messages(calculator) -> None:
    estimate = calculator.estimate_operation_cost("starter", "message", "gpt-4")
    assert estimate.estimated_tokens == 200
    assert estimate.estimated_cost == Decimal("0.006")
