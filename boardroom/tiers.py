"""
Subscription tier catalog and feature-limit helpers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import StrEnum

UNLIMITED = -1


class SubscriptionTier(StrEnum):
    STARTER = "starter"
    PROFESSIONAL = "professional"
    BOARDROOM = "boardroom"
    ENTERPRISE = "enterprise"


@dataclass(frozen=True)
class FeatureLimits:
    """Feature ceilings for a tier. ``-1`` means unlimited."""

    messages_per_day: int
    messages_per_month: int
    max_debate_rounds: int
    max_personas_per_debate: int
    available_models: tuple[str, ...]
    can_use_custom_personas: bool
    can_export_debates: bool
    can_access_analytics: bool
    can_use_advanced_features: bool
    api_access: bool
    priority_support: bool
    white_label: bool
    concurrent_debates: int
    storage_gb: int


@dataclass(frozen=True)
class Pricing:
    monthly_price: Decimal
    yearly_price: Decimal
    yearly_discount: int
    price_per_extra_message: Decimal
    free_trial_days: int
    currency: str = "USD"


@dataclass(frozen=True)
class TierConfig:
    id: SubscriptionTier
    name: str
    description: str
    tagline: str
    pricing: Pricing
    limits: FeatureLimits
    features: tuple[str, ...] = ()
    restrictions: tuple[str, ...] = field(default_factory=tuple)
    popular: bool = False


@dataclass(frozen=True)
class LimitStatus:
    allowed: bool
    limit: int
    remaining: int


ALL_MODELS: tuple[str, ...] = (
    "gpt-4",
    "gpt-4-turbo",
    "claude-3-opus",
    "claude-3-sonnet",
    "claude-3-haiku",
    "gemini-pro",
    "gemini-ultra",
    "mixtral-8x7b",
    "llama-70b",
)


SUBSCRIPTION_TIERS: dict[SubscriptionTier, TierConfig] = {
    SubscriptionTier.STARTER: TierConfig(
        id=SubscriptionTier.STARTER,
        name="Starter",
        description="Perfect for trying out AI-powered business decisions",
        tagline="Get started with AI advisory",
        pricing=Pricing(
            monthly_price=Decimal("0"),
            yearly_price=Decimal("0"),
            yearly_discount=0,
            price_per_extra_message=Decimal("0.05"),
            free_trial_days=0,
        ),
        limits=FeatureLimits(
            messages_per_day=10,
            messages_per_month=100,
            max_debate_rounds=2,
            max_personas_per_debate=2,
            available_models=("gemini-pro", "mixtral-8x7b"),
            can_use_custom_personas=False,
            can_export_debates=False,
            can_access_analytics=False,
            can_use_advanced_features=False,
            api_access=False,
            priority_support=False,
            white_label=False,
            concurrent_debates=1,
            storage_gb=1,
        ),
        features=(
            "10 messages per day",
            "Basic AI models (Gemini Pro, Mixtral)",
            "Single AI and Expert Panel modes",
            "Up to 2 debate rounds",
        ),
        restrictions=(
            "No custom personas",
            "No export capabilities",
            "No analytics dashboard",
        ),
    ),
    SubscriptionTier.PROFESSIONAL: TierConfig(
        id=SubscriptionTier.PROFESSIONAL,
        name="Professional",
        description="For professionals who need regular AI business advisory",
        tagline="Unlock the full potential",
        popular=True,
        pricing=Pricing(
            monthly_price=Decimal("29"),
            yearly_price=Decimal("290"),
            yearly_discount=17,
            price_per_extra_message=Decimal("0.03"),
            free_trial_days=14,
        ),
        limits=FeatureLimits(
            messages_per_day=500,
            messages_per_month=10000,
            max_debate_rounds=5,
            max_personas_per_debate=5,
            available_models=("gpt-4", "claude-3-sonnet", "gemini-pro", "mixtral-8x7b"),
            can_use_custom_personas=True,
            can_export_debates=True,
            can_access_analytics=True,
            can_use_advanced_features=True,
            api_access=False,
            priority_support=True,
            white_label=False,
            concurrent_debates=3,
            storage_gb=10,
        ),
        features=(
            "All AI models (GPT-4, Claude, Gemini)",
            "All debate modes including Boardroom",
            "Up to 5 debate rounds",
            "Export to PDF, Word, Markdown",
            "14-day free trial",
        ),
    ),
    SubscriptionTier.BOARDROOM: TierConfig(
        id=SubscriptionTier.BOARDROOM,
        name="Boardroom",
        description="For teams and organizations making critical decisions",
        tagline="Enterprise-grade AI advisory",
        pricing=Pricing(
            monthly_price=Decimal("99"),
            yearly_price=Decimal("990"),
            yearly_discount=17,
            price_per_extra_message=Decimal("0.02"),
            free_trial_days=30,
        ),
        limits=FeatureLimits(
            messages_per_day=2000,
            messages_per_month=50000,
            max_debate_rounds=10,
            max_personas_per_debate=10,
            available_models=(
                "gpt-4",
                "claude-3-sonnet",
                "claude-3-opus",
                "gemini-pro",
                "mixtral-8x7b",
            ),
            can_use_custom_personas=True,
            can_export_debates=True,
            can_access_analytics=True,
            can_use_advanced_features=True,
            api_access=True,
            priority_support=True,
            white_label=False,
            concurrent_debates=10,
            storage_gb=100,
        ),
        features=(
            "Premium AI models (GPT-4, Claude Opus)",
            "Extended debate rounds (up to 10)",
            "API access for integrations",
            "30-day free trial",
        ),
    ),
    SubscriptionTier.ENTERPRISE: TierConfig(
        id=SubscriptionTier.ENTERPRISE,
        name="Enterprise",
        description="Custom solutions for large organizations",
        tagline="Tailored AI advisory platform",
        pricing=Pricing(
            monthly_price=Decimal("299"),
            yearly_price=Decimal("2990"),
            yearly_discount=17,
            price_per_extra_message=Decimal("0.01"),
            free_trial_days=30,
        ),
        limits=FeatureLimits(
            messages_per_day=UNLIMITED,
            messages_per_month=UNLIMITED,
            max_debate_rounds=UNLIMITED,
            max_personas_per_debate=UNLIMITED,
            available_models=("*",),
            can_use_custom_personas=True,
            can_export_debates=True,
            can_access_analytics=True,
            can_use_advanced_features=True,
            api_access=True,
            priority_support=True,
            white_label=True,
            concurrent_debates=UNLIMITED,
            storage_gb=UNLIMITED,
        ),
        features=(
            "Unlimited usage across all features",
            "White-label deployment options",
            "Dedicated account manager",
        ),
    ),
}


def get_tier_config(tier: SubscriptionTier | str) -> TierConfig:
    return SUBSCRIPTION_TIERS[SubscriptionTier(tier)]


def calculate_yearly_savings(config: TierConfig) -> Decimal:
    return config.pricing.monthly_price * 12 - config.pricing.yearly_price


def subscription_price(tier: SubscriptionTier | str, billing_cycle: str) -> Decimal:
    pricing = get_tier_config(tier).pricing
    return pricing.yearly_price if billing_cycle == "yearly" else pricing.monthly_price


def is_feature_allowed(tier: SubscriptionTier | str, feature: str) -> bool:
    limit = getattr(get_tier_config(tier).limits, feature)
    if isinstance(limit, bool):
        return limit
    if isinstance(limit, int):
        return limit > 0 or limit == UNLIMITED
    if isinstance(limit, tuple):
        return len(limit) > 0
    return False


def check_feature_limit(tier: SubscriptionTier | str, feature: str, current_usage: int) -> LimitStatus:
    """Compare a numeric feature ceiling against current usage."""
    limit = getattr(get_tier_config(tier).limits, feature)
    if limit == UNLIMITED:
        return LimitStatus(allowed=True, limit=UNLIMITED, remaining=UNLIMITED)
    return LimitStatus(
        allowed=current_usage < limit,
        limit=limit,
        remaining=max(0, limit - current_usage),
    )


def get_models_by_tier(tier: SubscriptionTier | str) -> tuple[str, ...]:
    models = get_tier_config(tier).limits.available_models
    if "*" in models:
        return ALL_MODELS
    return models


def is_model_available(tier: SubscriptionTier | str, model: str) -> bool:
    """Match provider-qualified ids ("openai/gpt-4") against tier model names."""
    if "*" in get_tier_config(tier).limits.available_models:
        return True
    model_lower = model.lower()
    return any(name in model_lower for name in get_models_by_tier(tier))
