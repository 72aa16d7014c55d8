from decimal import Decimal

from boardroom.tiers import (
    SUBSCRIPTION_TIERS,
    UNLIMITED,
    SubscriptionTier,
    calculate_yearly_savings,
    check_feature_limit,
    get_models_by_tier,
    get_tier_config,
    is_feature_allowed,
    is_model_available,
)


def test_catalog_has_four_tiers_in_price_order() -> None:
    prices = [config.pricing.monthly_price for config in SUBSCRIPTION_TIERS.values()]
    assert list(SUBSCRIPTION_TIERS) == list(SubscriptionTier)
    assert prices == sorted(prices)


def test_yearly_savings() -> None:
    assert calculate_yearly_savings(get_tier_config("professional")) == Decimal("58")


def test_feature_flags() -> None:
    assert is_feature_allowed("starter", "can_export_debates") is False
    assert is_feature_allowed("professional", "can_export_debates") is True
    assert is_feature_allowed("enterprise", "messages_per_day") is True


def test_limit_status_for_numeric_features() -> None:
    status = check_feature_limit("starter", "messages_per_day", 7)
    assert status.allowed is True
    assert status.remaining == 3

    unlimited = check_feature_limit("enterprise", "messages_per_day", 10_000)
    assert unlimited.limit == UNLIMITED
    assert unlimited.remaining == UNLIMITED


def test_model_availability() -> None:
    assert is_model_available("starter", "mistralai/mixtral-8x7b-instruct") is True
    assert is_model_available("starter", "openai/gpt-4") is False
    assert is_model_available("enterprise", "anything/at-all") is True
    assert "llama-70b" in get_models_by_tier("enterprise")
