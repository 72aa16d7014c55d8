from datetime import UTC, datetime
from decimal import Decimal

import pytest

from boardroom.billing import (
    CycleStatus,
    InvoiceStatus,
    LineItemType,
    SubscriptionStatus,
    calculate_proration,
)
from boardroom.errors import (
    BillingCycleNotFoundError,
    InvalidStatusTransitionError,
    SubscriptionConflictError,
    SubscriptionNotFoundError,
)

APRIL_1 = datetime(2026, 4, 1, tzinfo=UTC)
APRIL_16 = datetime(2026, 4, 16, tzinfo=UTC)
MAY_1 = datetime(2026, 5, 1, tzinfo=UTC)


def test_proration_upgrade_mid_period() -> None:
    proration = calculate_proration(Decimal("29"), Decimal("99"), APRIL_1, MAY_1, APRIL_16)

    assert proration.total_days == 30
    assert proration.remaining_days == 15
    assert proration.credit == Decimal("14.50")
    assert proration.charge == Decimal("49.50")
    assert proration.difference == Decimal("35.00")


def test_proration_after_period_end_is_zero() -> None:
    proration = calculate_proration(Decimal("29"), Decimal("99"), APRIL_1, MAY_1, datetime(2026, 6, 1, tzinfo=UTC))
    assert proration.remaining_days == 0
    assert proration.difference == Decimal("0")


@pytest.mark.asyncio
async def test_create_subscription_writes_first_cycle(billing, store, clock) -> None:
    clock.set(APRIL_1)
    subscription = await billing.create_subscription("u1", "professional")

    assert subscription.status is SubscriptionStatus.ACTIVE
    assert subscription.current_period_end == MAY_1

    [cycle] = await store.list_billing_cycles("u1")
    assert cycle.subscription_fee == Decimal("29")
    assert cycle.usage_charges == Decimal("0")
    assert cycle.total_amount == Decimal("29")
    assert cycle.items[0].type is LineItemType.SUBSCRIPTION

    with pytest.raises(SubscriptionConflictError):
        await billing.create_subscription("u1", "boardroom")


@pytest.mark.asyncio
async def test_no_usage_means_no_charges(billing) -> None:
    charges = await billing.calculate_usage_charges("u1", "professional")

    assert charges.total == Decimal("0")
    assert charges.items == ()


@pytest.mark.asyncio
async def test_overage_is_charged_at_tier_rate(billing, meter) -> None:
    for _ in range(105):
        await meter.record_message("u1", "starter", "gemini-pro", 10, Decimal("0"))

    charges = await billing.calculate_usage_charges("u1", "starter")

    assert charges.total == Decimal("0.25")
    assert charges.items[0].quantity == 5
    assert charges.items[0].type is LineItemType.OVERAGE


@pytest.mark.asyncio
async def test_upgrade_writes_prorated_addon_cycle(billing, store, clock) -> None:
    clock.set(APRIL_1)
    subscription = await billing.create_subscription("u1", "professional")

    clock.set(APRIL_16)
    updated = await billing.update_subscription_tier(subscription.id, "boardroom")

    assert updated.tier == "boardroom"
    assert updated.metadata["previous_tier"] == "professional"
    addon = [c for c in await store.list_billing_cycles("u1") if c.items[0].type is LineItemType.ADDON]
    assert len(addon) == 1
    assert addon[0].total_amount == Decimal("35.00")


@pytest.mark.asyncio
async def test_trial_is_not_prorated_and_activates_on_sweep(billing, store, clock) -> None:
    clock.set(APRIL_1)
    subscription = await billing.create_subscription("u1", "professional", trial_days=14)

    assert subscription.status is SubscriptionStatus.TRIALING
    assert (await store.list_billing_cycles("u1"))[0].subscription_fee == Decimal("0")

    await billing.update_subscription_tier(subscription.id, "boardroom")
    assert len(await store.list_billing_cycles("u1")) == 1

    clock.set(APRIL_16)
    result = await billing.process_billing()

    assert result.processed == 1
    current = await billing.get_user_subscription("u1")
    assert current.status is SubscriptionStatus.ACTIVE
    fees = sorted(c.subscription_fee for c in await store.list_billing_cycles("u1"))
    assert fees == [Decimal("0"), Decimal("99")]


@pytest.mark.asyncio
async def test_trial_cancelled_before_it_ends_is_never_billed(billing, store, clock) -> None:
    clock.set(APRIL_1)
    subscription = await billing.create_subscription("u1", "professional", trial_days=14)
    await billing.cancel_subscription(subscription.id, cancel_at_period_end=True)

    clock.set(APRIL_16)
    result = await billing.process_billing()

    assert result.processed == 1
    ended = await store.get_subscription(subscription.id)
    assert ended.status is SubscriptionStatus.CANCELED
    assert ended.canceled_at == APRIL_16
    assert await billing.get_user_subscription("u1") is None
    assert [c.subscription_fee for c in await store.list_billing_cycles("u1")] == [Decimal("0")]


@pytest.mark.asyncio
async def test_sweep_rolls_period_and_honours_cancel_at_period_end(billing, store, clock) -> None:
    clock.set(APRIL_1)
    keep = await billing.create_subscription("keep", "professional")
    leave = await billing.create_subscription("leave", "professional")
    await billing.cancel_subscription(leave.id, cancel_at_period_end=True, reason="too expensive")

    clock.set(MAY_1)
    result = await billing.process_billing()

    assert result.processed == 2
    kept = await store.get_subscription(keep.id)
    assert kept.current_period_start == MAY_1
    assert kept.status is SubscriptionStatus.ACTIVE
    assert len(await store.list_billing_cycles("keep")) == 2

    left = await store.get_subscription(leave.id)
    assert left.status is SubscriptionStatus.CANCELED
    assert left.metadata["cancel_reason"] == "too expensive"
    assert len(await store.list_billing_cycles("leave")) == 1


@pytest.mark.asyncio
async def test_sweep_isolates_failures(billing, store, clock, monkeypatch) -> None:
    clock.set(APRIL_1)
    await billing.create_subscription("good", "professional")
    await billing.create_subscription("bad", "professional")

    save = store.save_subscription

    async def flaky(subscription):
        if subscription.user_id == "bad":
            raise RuntimeError("db down")
        await save(subscription)

    monkeypatch.setattr(store, "save_subscription", flaky)
    clock.set(MAY_1)
    result = await billing.process_billing()

    assert result.processed == 1
    assert result.failed == 1
    assert "db down" in result.errors[0]


@pytest.mark.asyncio
async def test_immediate_cancel(billing, clock) -> None:
    subscription = await billing.create_subscription("u1", "professional")
    canceled = await billing.cancel_subscription(subscription.id, cancel_at_period_end=False)

    assert canceled.status is SubscriptionStatus.CANCELED
    assert canceled.canceled_at == clock()
    assert await billing.get_user_subscription("u1") is None


@pytest.mark.asyncio
async def test_invoice_applies_tax(billing, store, clock) -> None:
    clock.set(APRIL_1)
    await billing.create_subscription("u1", "professional")
    [cycle] = await store.list_billing_cycles("u1")

    invoice = await billing.generate_invoice(cycle.id)

    assert invoice.subtotal == Decimal("29")
    assert invoice.taxes == Decimal("2.32")
    assert invoice.total == Decimal("31.32")
    assert invoice.status is InvoiceStatus.DRAFT
    assert invoice.due_date == MAY_1

    paid = await billing.mark_invoice_paid(invoice.id)
    assert paid.paid_at == clock()
    with pytest.raises(InvalidStatusTransitionError):
        await billing.mark_invoice_sent(invoice.id)


@pytest.mark.asyncio
async def test_cycle_status_transitions(billing, store) -> None:
    await billing.create_subscription("u1", "professional")
    [cycle] = await store.list_billing_cycles("u1")

    paid = await billing.update_billing_cycle_status(cycle.id, CycleStatus.PAID)
    assert paid.paid_at is not None
    with pytest.raises(InvalidStatusTransitionError):
        await billing.update_billing_cycle_status(cycle.id, "pending")


@pytest.mark.asyncio
async def test_missing_records_raise(billing) -> None:
    with pytest.raises(SubscriptionNotFoundError):
        await billing.update_subscription_tier("missing", "boardroom")
    with pytest.raises(BillingCycleNotFoundError):
        await billing.generate_invoice("missing")
    with pytest.raises(SubscriptionNotFoundError):
        await billing.get_current_usage_and_estimated_bill("nobody")


@pytest.mark.asyncio
async def test_estimated_bill(billing, clock) -> None:
    clock.set(APRIL_16)
    await billing.create_subscription("u1", "professional")

    estimate = await billing.get_current_usage_and_estimated_bill("u1")

    assert estimate.estimated_bill == Decimal("29")
    assert estimate.next_billing_date == datetime(2026, 5, 16, tzinfo=UTC)
    assert estimate.days_until_billing == 30

    history = await billing.get_billing_history("u1")
    assert history.subscription.id == estimate.subscription.id
    assert len(history.billing_cycles) == 1
