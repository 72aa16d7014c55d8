"""
Per-user usage aggregation, period rollover and tier limit enforcement.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from .periods import Clock, day_key, month_key, next_midnight, utc_now
from .tiers import UNLIMITED, SubscriptionTier, check_feature_limit, get_tier_config

if TYPE_CHECKING:
    from .costs import BudgetAlert, CostCalculator
    from .store import Store

logger = logging.getLogger(__name__)

FAVORITE_MODELS_KEPT = 5

TOPIC_CATEGORIES: dict[str, tuple[str, ...]] = {
    "Technology": ("tech", "software", "ai", "digital", "innovation", "platform"),
    "Finance": ("budget", "cost", "revenue", "profit", "investment", "pricing"),
    "Marketing": ("marketing", "brand", "customer", "campaign", "promotion", "advertising"),
    "Strategy": ("strategy", "growth", "expansion", "competition", "market", "planning"),
    "Operations": ("operations", "process", "efficiency", "workflow", "logistics", "supply"),
    "HR": ("hiring", "employee", "team", "culture", "talent", "training"),
}


class UsageAction(StrEnum):
    MESSAGE = "message"
    DEBATE = "debate"
    EXPORT = "export"
    API_CALL = "api_call"


class UsagePeriod(StrEnum):
    DAILY = "daily"
    MONTHLY = "monthly"


@dataclass(frozen=True)
class UsageDelta:
    """Counter increments applied to both buckets in one step."""

    messages: int = 0
    debates: int = 0
    tokens: int = 0
    cost: Decimal = Decimal("0")
    debate_rounds: int = 0
    personas: int = 0
    exports_generated: int = 0
    api_calls: int = 0


@dataclass
class UsageBucket:
    period: str
    messages: int = 0
    debates: int = 0
    tokens: int = 0
    cost: Decimal = Decimal("0")
    debate_rounds: int = 0
    max_personas_used: int = 0
    exports_generated: int = 0
    api_calls: int = 0

    def apply(self, delta: UsageDelta) -> None:
        self.messages += delta.messages
        self.debates += delta.debates
        self.tokens += delta.tokens
        self.cost += delta.cost
        self.debate_rounds += delta.debate_rounds
        self.max_personas_used = max(self.max_personas_used, delta.personas)
        self.exports_generated += delta.exports_generated
        self.api_calls += delta.api_calls

    def to_dict(self) -> dict[str, Any]:
        return {
            "period": self.period,
            "messages": self.messages,
            "debates": self.debates,
            "tokens": self.tokens,
            "cost": str(self.cost),
            "debate_rounds": self.debate_rounds,
            "max_personas_used": self.max_personas_used,
            "exports_generated": self.exports_generated,
            "api_calls": self.api_calls,
        }


@dataclass
class UsagePatterns:
    peak_usage_hours: list[int] = field(default_factory=list)
    favorite_models: list[str] = field(default_factory=list)
    average_debate_length: float = 0.0
    average_personas_per_debate: float = 0.0
    topic_categories: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "peak_usage_hours": list(self.peak_usage_hours),
            "favorite_models": list(self.favorite_models),
            "average_debate_length": self.average_debate_length,
            "average_personas_per_debate": self.average_personas_per_debate,
            "topic_categories": dict(self.topic_categories),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> UsagePatterns:
        data = data or {}
        return cls(
            peak_usage_hours=[int(h) for h in data.get("peak_usage_hours", [])],
            favorite_models=[str(m) for m in data.get("favorite_models", [])],
            average_debate_length=float(data.get("average_debate_length", 0.0)),
            average_personas_per_debate=float(data.get("average_personas_per_debate", 0.0)),
            topic_categories={str(k): int(v) for k, v in data.get("topic_categories", {}).items()},
        )


@dataclass
class UserUsage:
    user_id: str
    tier: SubscriptionTier
    last_updated: datetime
    daily: UsageBucket
    monthly: UsageBucket
    patterns: UsagePatterns = field(default_factory=UsagePatterns)

    @classmethod
    def empty(cls, user_id: str, tier: SubscriptionTier, now: datetime) -> UserUsage:
        return cls(
            user_id=user_id,
            tier=tier,
            last_updated=now,
            daily=UsageBucket(period=day_key(now)),
            monthly=UsageBucket(period=month_key(now)),
        )


@dataclass(frozen=True)
class UsageLimitCheck:
    feature: str
    allowed: bool
    limit: int
    current: int
    remaining: int
    upgrade_required: bool
    message: str
    reset_time: datetime | None = None


@dataclass(frozen=True)
class UsageViolation:
    """Audit record of a blocked action. Never mutated once written."""

    user_id: str
    feature: str
    limit: int
    attempted: int
    timestamp: datetime
    tier: SubscriptionTier
    action: str = "blocked"

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "feature": self.feature,
            "limit": self.limit,
            "attempted": self.attempted,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action,
            "tier": self.tier.value,
        }


@dataclass(frozen=True)
class EnforcementResult:
    allowed: bool
    violation: UsageViolation | None = None


def categorize_topic(topic: str) -> str:
    topic_lower = topic.lower()
    for category, keywords in TOPIC_CATEGORIES.items():
        if any(keyword in topic_lower for keyword in keywords):
            return category
    return "General"


def _tightest(*values: int) -> int:
    bounded = [v for v in values if v != UNLIMITED]
    return min(bounded) if bounded else UNLIMITED


class UsageMeter:
    """Tracks daily and monthly usage counters per user.

    Recording for one user is serialized with an in-process lock. The store is
    responsible for applying each increment to both buckets atomically, which
    is what keeps multiple processes consistent.
    """

    def __init__(self, store: Store, *, clock: Clock = utc_now) -> None:
        self._store = store
        self._clock = clock
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get_user_usage(self, user_id: str, tier: SubscriptionTier | str) -> UserUsage:
        async with self._locks[user_id]:
            return await self._current_usage(user_id, SubscriptionTier(tier))

    async def _current_usage(self, user_id: str, tier: SubscriptionTier) -> UserUsage:
        now = self._clock()
        usage = await self._store.load_usage(user_id)
        if usage is None:
            logger.debug("Initializing usage tracking for %s", user_id)
            return await self._store.create_usage(UserUsage.empty(user_id, tier, now))

        changed = False
        today = day_key(now)
        if usage.daily.period != today:
            await self._store.reset_usage_period(user_id, UsagePeriod.DAILY, today, now)
            changed = True

        this_month = month_key(now)
        if usage.monthly.period != this_month:
            await self._store.reset_usage_period(user_id, UsagePeriod.MONTHLY, this_month, now)
            changed = True

        if usage.tier != tier:
            await self._store.update_usage_tier(user_id, tier, now)
            changed = True

        if changed:
            reloaded = await self._store.load_usage(user_id)
            if reloaded is not None:
                usage = reloaded
        return usage

    async def _record(
        self,
        user_id: str,
        tier: SubscriptionTier | str,
        delta: UsageDelta,
        *,
        model: str | None = None,
        topic: str | None = None,
    ) -> UserUsage:
        tier = SubscriptionTier(tier)
        async with self._locks[user_id]:
            current = await self._current_usage(user_id, tier)
            now = self._clock()
            patterns = self._next_patterns(current, delta, now, model=model, topic=topic)
            return await self._store.increment_usage(user_id, delta, now, patterns)

    def _next_patterns(
        self,
        current: UserUsage,
        delta: UsageDelta,
        now: datetime,
        *,
        model: str | None,
        topic: str | None,
    ) -> UsagePatterns:
        patterns = replace(
            current.patterns,
            peak_usage_hours=list(current.patterns.peak_usage_hours),
            favorite_models=list(current.patterns.favorite_models),
            topic_categories=dict(current.patterns.topic_categories),
        )

        if delta.messages:
            if now.hour not in patterns.peak_usage_hours:
                patterns.peak_usage_hours.append(now.hour)
            if model and model not in patterns.favorite_models:
                patterns.favorite_models.insert(0, model)
                del patterns.favorite_models[FAVORITE_MODELS_KEPT:]

        if delta.debates:
            total = current.monthly.debates + delta.debates
            patterns.average_debate_length = (
                patterns.average_debate_length * (total - 1) + delta.debate_rounds
            ) / total
            patterns.average_personas_per_debate = (
                patterns.average_personas_per_debate * (total - 1) + delta.personas
            ) / total
            if topic:
                category = categorize_topic(topic)
                patterns.topic_categories[category] = patterns.topic_categories.get(category, 0) + 1

        return patterns

    async def record_message(
        self,
        user_id: str,
        tier: SubscriptionTier | str,
        model: str,
        tokens: int,
        cost: Decimal,
    ) -> UserUsage:
        delta = UsageDelta(messages=1, tokens=tokens, cost=Decimal(cost))
        return await self._record(user_id, tier, delta, model=model)

    async def record_debate(
        self,
        user_id: str,
        tier: SubscriptionTier | str,
        rounds: int,
        personas: int,
        tokens: int,
        cost: Decimal,
        topic: str | None = None,
    ) -> UserUsage:
        delta = UsageDelta(
            debates=1,
            debate_rounds=rounds,
            personas=personas,
            tokens=tokens,
            cost=Decimal(cost),
        )
        return await self._record(user_id, tier, delta, topic=topic)

    async def record_export(self, user_id: str, tier: SubscriptionTier | str) -> UserUsage:
        return await self._record(user_id, tier, UsageDelta(exports_generated=1))

    async def record_api_call(self, user_id: str, tier: SubscriptionTier | str) -> UserUsage:
        return await self._record(user_id, tier, UsageDelta(api_calls=1))

    async def check_usage_limit(
        self,
        user_id: str,
        tier: SubscriptionTier | str,
        action: UsageAction | str,
        *,
        rounds: int | None = None,
        personas: int | None = None,
    ) -> UsageLimitCheck:
        """Evaluate whether ``action`` is permitted right now.

        An unknown action is reported as denied. ``tier`` must name a real tier;
        anything else raises ``ValueError`` before usage is read.
        """
        tier = SubscriptionTier(tier)
        try:
            action = UsageAction(action)
        except ValueError:
            return UsageLimitCheck(
                feature=str(action),
                allowed=False,
                limit=0,
                current=0,
                remaining=0,
                upgrade_required=True,
                message="Unknown action",
            )

        usage = await self.get_user_usage(user_id, tier)
        limits = get_tier_config(tier).limits

        if action is UsageAction.MESSAGE:
            return self._message_check(usage, tier)

        if action is UsageAction.DEBATE:
            rounds = 2 if rounds is None else rounds
            personas = 3 if personas is None else personas
            max_rounds = limits.max_debate_rounds
            max_personas = limits.max_personas_per_debate
            rounds_ok = max_rounds == UNLIMITED or rounds <= max_rounds
            personas_ok = max_personas == UNLIMITED or personas <= max_personas
            message_check = self._message_check(usage, tier)
            allowed = rounds_ok and personas_ok and message_check.allowed
            return UsageLimitCheck(
                feature="debate",
                allowed=allowed,
                limit=max_rounds,
                current=rounds,
                remaining=UNLIMITED if max_rounds == UNLIMITED else max(0, max_rounds - rounds),
                upgrade_required=not allowed and tier is not SubscriptionTier.ENTERPRISE,
                message=(
                    "Debate allowed"
                    if allowed
                    else f"Max {max_rounds} rounds, {max_personas} personas per debate. {message_check.message}"
                ),
            )

        if action is UsageAction.EXPORT:
            can_export = limits.can_export_debates
            return UsageLimitCheck(
                feature="export",
                allowed=can_export,
                limit=UNLIMITED if can_export else 0,
                current=usage.daily.exports_generated,
                remaining=UNLIMITED if can_export else 0,
                upgrade_required=not can_export,
                message="Export allowed" if can_export else "Export feature requires Professional tier or higher",
            )

        has_api = limits.api_access
        return UsageLimitCheck(
            feature="api_access",
            allowed=has_api,
            limit=UNLIMITED if has_api else 0,
            current=usage.daily.api_calls,
            remaining=UNLIMITED if has_api else 0,
            upgrade_required=not has_api,
            message="API access allowed" if has_api else "API access requires Boardroom tier or higher",
        )

    def _message_check(self, usage: UserUsage, tier: SubscriptionTier) -> UsageLimitCheck:
        daily = check_feature_limit(tier, "messages_per_day", usage.daily.messages)
        monthly = check_feature_limit(tier, "messages_per_month", usage.monthly.messages)
        allowed = daily.allowed and monthly.allowed
        return UsageLimitCheck(
            feature="messages",
            allowed=allowed,
            limit=_tightest(daily.limit, monthly.limit),
            current=usage.daily.messages,
            remaining=_tightest(daily.remaining, monthly.remaining),
            upgrade_required=not allowed and tier is not SubscriptionTier.ENTERPRISE,
            message=(
                "Message allowed"
                if allowed
                else f"Daily limit: {daily.remaining} remaining, Monthly limit: {monthly.remaining} remaining"
            ),
            reset_time=next_midnight(self._clock()),
        )

    async def enforce_limit(
        self,
        user_id: str,
        tier: SubscriptionTier | str,
        action: UsageAction | str,
        *,
        rounds: int | None = None,
        personas: int | None = None,
    ) -> EnforcementResult:
        """Check a limit and write a violation record when it is denied."""
        check = await self.check_usage_limit(user_id, tier, action, rounds=rounds, personas=personas)
        if check.allowed:
            return EnforcementResult(allowed=True)

        violation = UsageViolation(
            user_id=user_id,
            feature=str(action),
            limit=check.limit,
            attempted=check.current + 1,
            timestamp=self._clock(),
            tier=SubscriptionTier(tier),
        )
        await self._store.add_violation(violation)
        logger.info("Blocked %s for %s: %s", action, user_id, check.message)
        return EnforcementResult(allowed=False, violation=violation)

    async def get_violations(self, user_id: str) -> list[UsageViolation]:
        return await self._store.list_violations(user_id)

    async def get_usage_summary(
        self,
        user_id: str,
        tier: SubscriptionTier | str,
        calculator: CostCalculator | None = None,
    ) -> dict[str, Any]:
        usage = await self.get_user_usage(user_id, tier)
        limits = get_tier_config(tier).limits
        alerts: list[BudgetAlert] = []
        if calculator is not None:
            alerts = await calculator.check_budget_alerts(user_id, tier)
        return {
            "daily": usage.daily.to_dict(),
            "monthly": usage.monthly.to_dict(),
            "limits": {
                "messages_per_day": limits.messages_per_day,
                "messages_per_month": limits.messages_per_month,
                "max_debate_rounds": limits.max_debate_rounds,
                "max_personas_per_debate": limits.max_personas_per_debate,
                "can_export_debates": limits.can_export_debates,
                "api_access": limits.api_access,
            },
            "patterns": usage.patterns.to_dict(),
            "alerts": [alert.to_dict() for alert in alerts],
        }
