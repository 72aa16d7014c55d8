"""
Model pricing, per-event cost tracking and budget alerts.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from .periods import Clock, iter_days, start_of_day, start_of_month, start_of_year, utc_now
from .tiers import UNLIMITED, SubscriptionTier, get_tier_config

if TYPE_CHECKING:
    from .store import Store
    from .usage import UsageMeter

logger = logging.getLogger(__name__)

COST_PLACES = Decimal("0.000001")

# USD per 1K tokens.
MODEL_PRICING: dict[str, Decimal] = {
    "gpt-4": Decimal("0.03"),
    "gpt-4-turbo": Decimal("0.01"),
    "claude-3-opus": Decimal("0.015"),
    "claude-3-sonnet": Decimal("0.003"),
    "claude-3-haiku": Decimal("0.00025"),
    "gemini-pro": Decimal("0.001"),
    "gemini-ultra": Decimal("0.001"),
    "mixtral-8x7b": Decimal("0.0005"),
    "llama-70b": Decimal("0.0007"),
}
FALLBACK_PRICE = Decimal("0.001")

TIER_DISCOUNTS: dict[SubscriptionTier, Decimal] = {
    SubscriptionTier.STARTER: Decimal("1.0"),
    SubscriptionTier.PROFESSIONAL: Decimal("0.9"),
    SubscriptionTier.BOARDROOM: Decimal("0.8"),
    SubscriptionTier.ENTERPRISE: Decimal("0.7"),
}

ALTERNATIVE_MODELS: dict[str, str] = {
    "gpt-4": "claude-3-sonnet",
    "gpt-4-turbo": "claude-3-sonnet",
    "claude-3-opus": "claude-3-sonnet",
    "gemini-ultra": "gemini-pro",
}

RESPONSE_TOKENS_PER_TURN = 150
DEFAULT_MESSAGE_TOKENS = 200
MODEL_SWITCH_THRESHOLD = Decimal("10")
STARTER_SPEND_THRESHOLD = Decimal("15")
DEBATE_TOKENS_THRESHOLD = 2000
TIER_UPGRADE_MESSAGES = 50


class CostEventType(StrEnum):
    MESSAGE = "message"
    DEBATE = "debate"
    EXPORT = "export"
    API_CALL = "api_call"


class StatsPeriod(StrEnum):
    DAILY = "daily"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class AlertType(StrEnum):
    USAGE_LIMIT = "usage_limit"
    COST_THRESHOLD = "cost_threshold"
    TIER_UPGRADE = "tier_upgrade"


class AlertSeverity(StrEnum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


def get_model_price(model: str) -> Decimal:
    """Price per 1K tokens. Exact ids first, then the longest table key inside the id."""
    model_lower = model.lower()
    if model_lower in MODEL_PRICING:
        return MODEL_PRICING[model_lower]
    matches = [key for key in MODEL_PRICING if key in model_lower]
    if matches:
        return MODEL_PRICING[max(matches, key=len)]
    return FALLBACK_PRICE


def pricing_key(model: str) -> str | None:
    model_lower = model.lower()
    matches = [key for key in MODEL_PRICING if key in model_lower]
    return max(matches, key=len) if matches else None


def calculate_message_cost(tier: SubscriptionTier | str, model: str, tokens: int) -> Decimal:
    multiplier = TIER_DISCOUNTS[SubscriptionTier(tier)]
    cost = Decimal(tokens) / Decimal(1000) * get_model_price(model) * multiplier
    return cost.quantize(COST_PLACES)


@dataclass(frozen=True)
class DebateEstimate:
    estimated_tokens: int
    estimated_cost: Decimal


def estimate_debate_cost(
    tier: SubscriptionTier | str,
    model: str,
    topic: str,
    rounds: int,
    personas: int,
) -> DebateEstimate:
    """Topic context grows with every turn, plus a fixed response budget per turn."""
    turns = rounds * personas
    tokens = math.ceil(len(topic) / 4) * turns + RESPONSE_TOKENS_PER_TURN * turns
    return DebateEstimate(
        estimated_tokens=tokens,
        estimated_cost=calculate_message_cost(tier, model, tokens),
    )


@dataclass(frozen=True)
class CostEvent:
    """A single metered operation. Append-only."""

    user_id: str
    type: CostEventType
    model: str
    tokens_used: int
    actual_cost: Decimal
    estimated_cost: Decimal
    timestamp: datetime
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type.value,
            "model": self.model,
            "tokens_used": self.tokens_used,
            "actual_cost": str(self.actual_cost),
            "estimated_cost": str(self.estimated_cost),
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }


@dataclass
class ModelUsage:
    messages: int = 0
    tokens: int = 0
    cost: Decimal = Decimal("0")


@dataclass
class DailyUsage:
    date: str
    messages: int = 0
    tokens: int = 0
    cost: Decimal = Decimal("0")


@dataclass
class UsageStats:
    user_id: str
    tier: SubscriptionTier
    period: StatsPeriod
    start_date: datetime
    end_date: datetime
    total_messages: int
    total_debates: int
    total_tokens: int
    total_cost: Decimal
    model_breakdown: dict[str, ModelUsage]
    daily_breakdown: list[DailyUsage]

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "tier": self.tier.value,
            "period": self.period.value,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "total_messages": self.total_messages,
            "total_debates": self.total_debates,
            "total_tokens": self.total_tokens,
            "total_cost": str(self.total_cost),
            "model_breakdown": {
                model: {"messages": m.messages, "tokens": m.tokens, "cost": str(m.cost)}
                for model, m in self.model_breakdown.items()
            },
            "daily_breakdown": [
                {"date": d.date, "messages": d.messages, "tokens": d.tokens, "cost": str(d.cost)}
                for d in self.daily_breakdown
            ],
        }


@dataclass(frozen=True)
class BudgetAlert:
    user_id: str
    alert_type: AlertType
    threshold: Decimal
    current_value: Decimal
    percentage: Decimal
    severity: AlertSeverity
    message: str
    timestamp: datetime
    action_required: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "alert_type": self.alert_type.value,
            "threshold": str(self.threshold),
            "current_value": str(self.current_value),
            "percentage": f"{self.percentage:.1f}",
            "severity": self.severity.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "action_required": self.action_required,
        }


@dataclass(frozen=True)
class OperationEstimate:
    estimated_tokens: int
    estimated_cost: Decimal
    breakdown: dict[str, int]


@dataclass(frozen=True)
class CostSuggestion:
    type: str
    suggestion: str
    potential_savings: Decimal


def _severity_for(percentage: Decimal) -> AlertSeverity | None:
    if percentage >= 90:
        return AlertSeverity.CRITICAL
    if percentage >= 75:
        return AlertSeverity.WARNING
    return None


class CostCalculator:
    """Records cost events and derives statistics, alerts and suggestions."""

    def __init__(
        self,
        store: Store,
        *,
        meter: UsageMeter | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._meter = meter
        self._clock = clock

    async def record_event(
        self,
        user_id: str,
        type: CostEventType | str,
        model: str,
        tokens_used: int,
        actual_cost: Decimal,
        estimated_cost: Decimal | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CostEvent:
        event = CostEvent(
            user_id=user_id,
            type=CostEventType(type),
            model=model,
            tokens_used=tokens_used,
            actual_cost=actual_cost,
            estimated_cost=actual_cost if estimated_cost is None else estimated_cost,
            timestamp=self._clock(),
            metadata=dict(metadata or {}),
        )
        await self._store.add_cost_event(event)
        logger.debug("Recorded %s event for %s: %s", event.type, user_id, event.actual_cost)
        return event

    async def record_message_cost(
        self,
        user_id: str,
        tier: SubscriptionTier | str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        metadata: dict[str, Any] | None = None,
    ) -> CostEvent:
        total_tokens = input_tokens + output_tokens
        cost = calculate_message_cost(tier, model, total_tokens)
        return await self.record_event(
            user_id,
            CostEventType.MESSAGE,
            model,
            total_tokens,
            cost,
            metadata={"input_tokens": input_tokens, "output_tokens": output_tokens, **(metadata or {})},
        )

    async def record_debate_cost(
        self,
        user_id: str,
        tier: SubscriptionTier | str,
        model: str,
        topic: str,
        rounds: int,
        personas: int,
        actual_tokens: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CostEvent:
        """Record a debate-level event carrying the estimate next to the actual totals.

        ``actual_tokens`` is informational. The turns that produced them are
        metered as message events, so the debate event itself costs nothing.
        """
        estimate = estimate_debate_cost(tier, model, topic, rounds, personas)
        return await self.record_event(
            user_id,
            CostEventType.DEBATE,
            model,
            0,
            Decimal("0"),
            estimated_cost=estimate.estimated_cost,
            metadata={
                "topic": topic,
                "rounds": rounds,
                "personas": personas,
                "estimated_tokens": estimate.estimated_tokens,
                "actual_tokens": actual_tokens,
                **(metadata or {}),
            },
        )

    def _period_bounds(self, period: StatsPeriod) -> tuple[datetime, datetime]:
        now = self._clock()
        if period is StatsPeriod.DAILY:
            start = start_of_day(now)
        elif period is StatsPeriod.MONTHLY:
            start = start_of_month(now)
        else:
            start = start_of_year(now)
        return start, now

    async def get_usage_stats(
        self,
        user_id: str,
        tier: SubscriptionTier | str,
        period: StatsPeriod | str = StatsPeriod.MONTHLY,
    ) -> UsageStats:
        period = StatsPeriod(period)
        start, end = self._period_bounds(period)
        events = await self._store.list_cost_events(user_id, start, end)

        model_breakdown: dict[str, ModelUsage] = {}
        daily = {day.isoformat(): DailyUsage(date=day.isoformat()) for day in iter_days(start.date(), end.date())}
        total_cost = Decimal("0")
        total_tokens = 0
        messages = 0
        debates = 0

        for event in events:
            total_cost += event.actual_cost
            total_tokens += event.tokens_used
            if event.type is CostEventType.DEBATE:
                debates += 1
            is_message = event.type is CostEventType.MESSAGE
            if is_message:
                messages += 1

            usage = model_breakdown.setdefault(event.model, ModelUsage())
            usage.tokens += event.tokens_used
            usage.cost += event.actual_cost
            bucket = daily.get(event.timestamp.date().isoformat())
            if bucket is not None:
                bucket.tokens += event.tokens_used
                bucket.cost += event.actual_cost
            if is_message:
                usage.messages += 1
                if bucket is not None:
                    bucket.messages += 1

        return UsageStats(
            user_id=user_id,
            tier=SubscriptionTier(tier),
            period=period,
            start_date=start,
            end_date=end,
            total_messages=messages,
            total_debates=debates,
            total_tokens=total_tokens,
            total_cost=total_cost,
            model_breakdown=model_breakdown,
            daily_breakdown=list(daily.values()),
        )

    async def get_current_session_cost(self, user_id: str) -> Decimal:
        """Total actual cost since the start of today."""
        now = self._clock()
        events = await self._store.list_cost_events(user_id, start_of_day(now), now)
        return sum((event.actual_cost for event in events), Decimal("0"))

    async def _monthly_totals(self, user_id: str, tier: SubscriptionTier) -> tuple[int, Decimal]:
        if self._meter is not None:
            usage = await self._meter.get_user_usage(user_id, tier)
            return usage.monthly.messages, usage.monthly.cost
        stats = await self.get_usage_stats(user_id, tier, StatsPeriod.MONTHLY)
        return stats.total_messages, stats.total_cost

    async def check_budget_alerts(
        self,
        user_id: str,
        tier: SubscriptionTier | str,
        monthly_budget: Decimal | None = None,
    ) -> list[BudgetAlert]:
        tier = SubscriptionTier(tier)
        messages, spent = await self._monthly_totals(user_id, tier)
        now = self._clock()
        alerts: list[BudgetAlert] = []

        message_limit = get_tier_config(tier).limits.messages_per_month
        if message_limit != UNLIMITED and message_limit > 0:
            percentage = Decimal(messages) / Decimal(message_limit) * 100
            severity = _severity_for(percentage)
            if severity is not None:
                alerts.append(
                    BudgetAlert(
                        user_id=user_id,
                        alert_type=AlertType.USAGE_LIMIT,
                        threshold=Decimal(message_limit),
                        current_value=Decimal(messages),
                        percentage=percentage,
                        severity=severity,
                        message=f"You've used {percentage:.1f}% of your monthly message limit",
                        timestamp=now,
                        action_required=severity is AlertSeverity.CRITICAL,
                    )
                )

        if monthly_budget is not None and monthly_budget > 0:
            budget = Decimal(monthly_budget)
            percentage = spent / budget * 100
            severity = _severity_for(percentage)
            if severity is not None:
                alerts.append(
                    BudgetAlert(
                        user_id=user_id,
                        alert_type=AlertType.COST_THRESHOLD,
                        threshold=budget,
                        current_value=spent,
                        percentage=percentage,
                        severity=severity,
                        message=(
                            f"You've spent {percentage:.1f}% of your monthly budget "
                            f"(${spent:.2f}/${budget:.2f})"
                        ),
                        timestamp=now,
                        action_required=severity is AlertSeverity.CRITICAL,
                    )
                )

        if tier is SubscriptionTier.STARTER and messages > TIER_UPGRADE_MESSAGES:
            alerts.append(
                BudgetAlert(
                    user_id=user_id,
                    alert_type=AlertType.TIER_UPGRADE,
                    threshold=Decimal(TIER_UPGRADE_MESSAGES),
                    current_value=Decimal(messages),
                    percentage=Decimal(messages) / Decimal(TIER_UPGRADE_MESSAGES) * 100,
                    severity=AlertSeverity.INFO,
                    message="Consider upgrading to Professional for more messages and advanced features",
                    timestamp=now,
                    action_required=False,
                )
            )

        return alerts

    def estimate_operation_cost(
        self,
        tier: SubscriptionTier | str,
        operation: str,
        model: str,
        *,
        topic: str | None = None,
        rounds: int | None = None,
        personas: int | None = None,
        estimated_tokens: int | None = None,
    ) -> OperationEstimate:
        if operation == CostEventType.DEBATE and topic:
            rounds = rounds or 2
            personas = personas or 3
            estimate = estimate_debate_cost(tier, model, topic, rounds, personas)
            return OperationEstimate(
                estimated_tokens=estimate.estimated_tokens,
                estimated_cost=estimate.estimated_cost,
                breakdown={
                    "rounds": rounds,
                    "personas": personas,
                    "tokens_per_persona": math.ceil(estimate.estimated_tokens / personas),
                },
            )

        tokens = estimated_tokens or DEFAULT_MESSAGE_TOKENS
        return OperationEstimate(
            estimated_tokens=tokens,
            estimated_cost=calculate_message_cost(tier, model, tokens),
            breakdown={"tokens_per_message": tokens},
        )

    async def get_cost_optimization_suggestions(
        self, user_id: str, tier: SubscriptionTier | str
    ) -> list[CostSuggestion]:
        """Advisory only. Reads this month's events and never writes."""
        tier = SubscriptionTier(tier)
        stats = await self.get_usage_stats(user_id, tier, StatsPeriod.MONTHLY)
        suggestions: list[CostSuggestion] = []

        ranked = sorted(stats.model_breakdown.items(), key=lambda item: item[1].cost, reverse=True)
        if ranked:
            model, usage = ranked[0]
            key = pricing_key(model)
            alternative = ALTERNATIVE_MODELS.get(key) if key else None
            if alternative and usage.cost > MODEL_SWITCH_THRESHOLD:
                ratio = MODEL_PRICING[alternative] / MODEL_PRICING[key]
                reduction = (1 - ratio) * 100
                suggestions.append(
                    CostSuggestion(
                        type="model_optimization",
                        suggestion=(
                            f"Consider using {alternative} instead of {key} for some debates "
                            f"to reduce costs by ~{reduction:.0f}%"
                        ),
                        potential_savings=(usage.cost * (1 - ratio)).quantize(Decimal("0.01")),
                    )
                )

        if tier is SubscriptionTier.STARTER and stats.total_cost > STARTER_SPEND_THRESHOLD:
            suggestions.append(
                CostSuggestion(
                    type="tier_upgrade",
                    suggestion="Upgrade to Professional tier for better pricing and higher message limits",
                    potential_savings=(stats.total_cost * Decimal("0.3")).quantize(Decimal("0.01")),
                )
            )

        average_debate_tokens = stats.total_tokens / max(stats.total_debates, 1)
        if average_debate_tokens > DEBATE_TOKENS_THRESHOLD:
            suggestions.append(
                CostSuggestion(
                    type="debate_optimization",
                    suggestion="Consider reducing debate rounds or personas for less complex topics",
                    potential_savings=(stats.total_cost * Decimal("0.25")).quantize(Decimal("0.01")),
                )
            )

        return suggestions
