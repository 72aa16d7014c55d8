"""
Subscription lifecycle, billing cycles, proration and invoices.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import StrEnum
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from .errors import (
    BillingCycleNotFoundError,
    InvalidStatusTransitionError,
    InvoiceNotFoundError,
    SubscriptionConflictError,
    SubscriptionNotFoundError,
)
from .periods import Clock, add_months, days_between, utc_now
from .tiers import UNLIMITED, SubscriptionTier, get_tier_config, subscription_price

if TYPE_CHECKING:
    from .store import Store
    from .usage import UsageMeter, UserUsage

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
PRORATION_THRESHOLD = Decimal("0.01")


class SubscriptionStatus(StrEnum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"


CURRENT_STATUSES = frozenset(
    {SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE}
)


class BillingInterval(StrEnum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class CycleStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class LineItemType(StrEnum):
    SUBSCRIPTION = "subscription"
    OVERAGE = "overage"
    ADDON = "addon"


class InvoiceStatus(StrEnum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    VOID = "void"
    UNCOLLECTIBLE = "uncollectible"


CYCLE_TRANSITIONS: dict[CycleStatus, frozenset[CycleStatus]] = {
    CycleStatus.PENDING: frozenset({CycleStatus.PROCESSING, CycleStatus.PAID, CycleStatus.FAILED}),
    CycleStatus.PROCESSING: frozenset({CycleStatus.PAID, CycleStatus.FAILED}),
    CycleStatus.FAILED: frozenset({CycleStatus.PROCESSING}),
    CycleStatus.PAID: frozenset({CycleStatus.REFUNDED}),
    CycleStatus.REFUNDED: frozenset(),
}

INVOICE_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.SENT, InvoiceStatus.PAID, InvoiceStatus.VOID}),
    InvoiceStatus.SENT: frozenset({InvoiceStatus.PAID, InvoiceStatus.VOID, InvoiceStatus.UNCOLLECTIBLE}),
    InvoiceStatus.PAID: frozenset(),
    InvoiceStatus.VOID: frozenset(),
    InvoiceStatus.UNCOLLECTIBLE: frozenset({InvoiceStatus.PAID}),
}


def _new_id() -> str:
    return str(uuid4())


def period_end_for(start: datetime, interval: BillingInterval) -> datetime:
    return add_months(start, 12 if interval is BillingInterval.YEARLY else 1)


@dataclass
class Subscription:
    user_id: str
    tier: SubscriptionTier
    status: SubscriptionStatus
    billing_cycle: BillingInterval
    current_period_start: datetime
    current_period_end: datetime
    created_at: datetime
    updated_at: datetime
    trial_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_new_id)

    @property
    def is_current(self) -> bool:
        return self.status in CURRENT_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "tier": self.tier.value,
            "status": self.status.value,
            "billing_cycle": self.billing_cycle.value,
            "current_period_start": self.current_period_start.isoformat(),
            "current_period_end": self.current_period_end.isoformat(),
            "trial_end": self.trial_end.isoformat() if self.trial_end else None,
            "cancel_at_period_end": self.cancel_at_period_end,
            "canceled_at": self.canceled_at.isoformat() if self.canceled_at else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class LineItem:
    description: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    type: LineItemType

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "total_price": str(self.total_price),
            "type": self.type.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LineItem:
        return cls(
            description=data["description"],
            quantity=int(data["quantity"]),
            unit_price=Decimal(str(data["unit_price"])),
            total_price=Decimal(str(data["total_price"])),
            type=LineItemType(data["type"]),
        )


@dataclass
class BillingCycle:
    user_id: str
    subscription_id: str
    tier: SubscriptionTier
    start_date: datetime
    end_date: datetime
    subscription_fee: Decimal
    usage_charges: Decimal
    total_amount: Decimal
    due_date: datetime
    items: list[LineItem] = field(default_factory=list)
    currency: str = "USD"
    status: CycleStatus = CycleStatus.PENDING
    paid_at: datetime | None = None
    id: str = field(default_factory=_new_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "subscription_id": self.subscription_id,
            "tier": self.tier.value,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "subscription_fee": str(self.subscription_fee),
            "usage_charges": str(self.usage_charges),
            "total_amount": str(self.total_amount),
            "currency": self.currency,
            "status": self.status.value,
            "items": [item.to_dict() for item in self.items],
            "due_date": self.due_date.isoformat(),
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
        }


@dataclass
class Invoice:
    user_id: str
    subscription_id: str
    billing_cycle_id: str
    amount: Decimal
    subtotal: Decimal
    taxes: Decimal
    total: Decimal
    created_at: datetime
    due_date: datetime
    items: list[LineItem] = field(default_factory=list)
    discounts: Decimal = Decimal("0")
    currency: str = "USD"
    status: InvoiceStatus = InvoiceStatus.DRAFT
    paid_at: datetime | None = None
    id: str = field(default_factory=_new_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "subscription_id": self.subscription_id,
            "billing_cycle_id": self.billing_cycle_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "status": self.status.value,
            "items": [item.to_dict() for item in self.items],
            "subtotal": str(self.subtotal),
            "taxes": str(self.taxes),
            "discounts": str(self.discounts),
            "total": str(self.total),
            "created_at": self.created_at.isoformat(),
            "due_date": self.due_date.isoformat(),
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
        }


@dataclass(frozen=True)
class UsageCharges:
    total: Decimal
    items: tuple[LineItem, ...] = ()


@dataclass(frozen=True)
class Proration:
    total_days: int
    remaining_days: int
    credit: Decimal
    charge: Decimal
    difference: Decimal


@dataclass
class BillingRunResult:
    processed: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class BillingHistory:
    subscription: Subscription | None
    billing_cycles: list[BillingCycle]
    invoices: list[Invoice]


@dataclass(frozen=True)
class BillEstimate:
    subscription: Subscription
    usage: UserUsage
    estimated_bill: Decimal
    next_billing_date: datetime
    days_until_billing: int


def calculate_proration(
    old_price: Decimal,
    new_price: Decimal,
    period_start: datetime,
    period_end: datetime,
    effective: datetime,
) -> Proration:
    """Daily proration of a mid-period price change.

    Days are rounded up. Remaining days are clamped to the period.
    """
    total_days = days_between(period_start, period_end)
    if total_days <= 0:
        return Proration(0, 0, Decimal("0"), Decimal("0"), Decimal("0"))
    remaining_days = min(max(0, days_between(effective, period_end)), total_days)

    credit = old_price * remaining_days / total_days
    charge = new_price * remaining_days / total_days
    return Proration(
        total_days=total_days,
        remaining_days=remaining_days,
        credit=credit.quantize(CENTS),
        charge=charge.quantize(CENTS),
        difference=(charge - credit).quantize(CENTS),
    )


class BillingEngine:
    """Drives subscriptions through their periods and produces billing records."""

    def __init__(
        self,
        store: Store,
        meter: UsageMeter,
        *,
        tax_rate: Decimal = Decimal("0.08"),
        currency: str = "USD",
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._meter = meter
        self._tax_rate = tax_rate
        self._currency = currency
        self._clock = clock

    async def _require_subscription(self, subscription_id: str) -> Subscription:
        subscription = await self._store.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(f"Subscription not found: {subscription_id}")
        return subscription

    async def create_subscription(
        self,
        user_id: str,
        tier: SubscriptionTier | str,
        billing_cycle: BillingInterval | str = BillingInterval.MONTHLY,
        trial_days: int | None = None,
    ) -> Subscription:
        existing = await self._store.find_current_subscription(user_id)
        if existing is not None:
            raise SubscriptionConflictError(
                f"User {user_id} already has a {existing.status} subscription ({existing.id})"
            )

        now = self._clock()
        interval = BillingInterval(billing_cycle)
        trial_end = now + timedelta(days=trial_days) if trial_days and trial_days > 0 else None
        period_start = trial_end or now

        subscription = Subscription(
            user_id=user_id,
            tier=SubscriptionTier(tier),
            status=SubscriptionStatus.TRIALING if trial_end else SubscriptionStatus.ACTIVE,
            billing_cycle=interval,
            current_period_start=period_start,
            current_period_end=period_end_for(period_start, interval),
            created_at=now,
            updated_at=now,
            trial_end=trial_end,
        )
        await self._store.save_subscription(subscription)
        logger.info("Created %s subscription %s for %s", subscription.tier, subscription.id, user_id)

        await self.create_billing_cycle(subscription)
        return subscription

    async def calculate_usage_charges(
        self, user_id: str, tier: SubscriptionTier | str
    ) -> UsageCharges:
        """Message overage beyond the monthly ceiling at the tier's extra-message rate.

        Reads the meter's monthly aggregate as of now.
        """
        config = get_tier_config(tier)
        limit = config.limits.messages_per_month
        if limit == UNLIMITED or limit <= 0:
            return UsageCharges(total=Decimal("0"))

        usage = await self._meter.get_user_usage(user_id, tier)
        overage = max(0, usage.monthly.messages - limit)
        if overage == 0:
            return UsageCharges(total=Decimal("0"))

        unit_price = config.pricing.price_per_extra_message
        charge = (unit_price * overage).quantize(CENTS)
        item = LineItem(
            description=f"Message overage ({overage} messages)",
            quantity=overage,
            unit_price=unit_price,
            total_price=charge,
            type=LineItemType.OVERAGE,
        )
        return UsageCharges(total=charge, items=(item,))

    async def create_billing_cycle(self, subscription: Subscription) -> BillingCycle:
        config = get_tier_config(subscription.tier)
        fee = subscription_price(subscription.tier, subscription.billing_cycle)
        charged_fee = Decimal("0") if subscription.status is SubscriptionStatus.TRIALING else fee
        usage = await self.calculate_usage_charges(subscription.user_id, subscription.tier)

        cycle = BillingCycle(
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            tier=subscription.tier,
            start_date=subscription.current_period_start,
            end_date=subscription.current_period_end,
            subscription_fee=charged_fee,
            usage_charges=usage.total,
            total_amount=charged_fee + usage.total,
            currency=self._currency,
            due_date=subscription.current_period_end,
            items=[
                LineItem(
                    description=f"{config.name} Plan ({subscription.billing_cycle})",
                    quantity=1,
                    unit_price=fee,
                    total_price=charged_fee,
                    type=LineItemType.SUBSCRIPTION,
                ),
                *usage.items,
            ],
        )
        await self._store.save_billing_cycle(cycle)
        return cycle

    async def get_user_subscription(self, user_id: str) -> Subscription | None:
        return await self._store.find_current_subscription(user_id)

    async def update_subscription_tier(
        self,
        subscription_id: str,
        new_tier: SubscriptionTier | str,
        effective_date: datetime | None = None,
    ) -> Subscription:
        subscription = await self._require_subscription(subscription_id)
        new_tier = SubscriptionTier(new_tier)
        now = effective_date or self._clock()

        proration = calculate_proration(
            subscription_price(subscription.tier, subscription.billing_cycle),
            subscription_price(new_tier, subscription.billing_cycle),
            subscription.current_period_start,
            subscription.current_period_end,
            now,
        )
        # Nothing has been charged during a trial, so there is nothing to prorate.
        difference = (
            Decimal("0") if subscription.status is SubscriptionStatus.TRIALING else proration.difference
        )

        old_tier = subscription.tier
        subscription.tier = new_tier
        subscription.updated_at = now
        subscription.metadata = {
            **subscription.metadata,
            "last_tier_change": now.isoformat(),
            "previous_tier": old_tier.value,
            "prorated_amount": str(difference),
        }
        await self._store.save_subscription(subscription)
        logger.info("Subscription %s moved %s -> %s (prorated %s)", subscription.id, old_tier, new_tier, difference)

        if abs(difference) > PRORATION_THRESHOLD:
            await self._create_prorated_cycle(subscription, difference, now, "tier_change")
        return subscription

    async def _create_prorated_cycle(
        self, subscription: Subscription, amount: Decimal, now: datetime, reason: str
    ) -> BillingCycle:
        cycle = BillingCycle(
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            tier=subscription.tier,
            start_date=now,
            end_date=subscription.current_period_end,
            subscription_fee=Decimal("0"),
            usage_charges=amount,
            total_amount=amount,
            currency=self._currency,
            due_date=now,
            items=[
                LineItem(
                    description=f"Prorated charge ({reason})",
                    quantity=1,
                    unit_price=amount,
                    total_price=amount,
                    type=LineItemType.ADDON,
                )
            ],
        )
        await self._store.save_billing_cycle(cycle)
        return cycle

    async def cancel_subscription(
        self,
        subscription_id: str,
        cancel_at_period_end: bool = True,
        reason: str | None = None,
    ) -> Subscription:
        subscription = await self._require_subscription(subscription_id)
        now = self._clock()

        subscription.cancel_at_period_end = cancel_at_period_end
        subscription.updated_at = now
        if not cancel_at_period_end:
            subscription.status = SubscriptionStatus.CANCELED
            subscription.canceled_at = now
        subscription.metadata = {
            **subscription.metadata,
            "cancel_reason": reason,
            "cancel_requested_at": now.isoformat(),
        }
        await self._store.save_subscription(subscription)
        return subscription

    async def process_billing(self) -> BillingRunResult:
        """Sweep trialing and active subscriptions.

        Each subscription is handled independently; one failure is reported
        in the result and does not stop the sweep.
        """
        now = self._clock()
        result = BillingRunResult()
        subscriptions = await self._store.list_subscriptions(
            statuses=(SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE)
        )

        for subscription in subscriptions:
            try:
                if await self._process_subscription(subscription, now):
                    result.processed += 1
            except Exception as exc:
                logger.exception("Billing failed for subscription %s", subscription.id)
                result.failed += 1
                result.errors.append(f"{subscription.id}: {exc}")

        logger.info("Billing run: %d processed, %d failed", result.processed, result.failed)
        return result

    async def _process_subscription(self, subscription: Subscription, now: datetime) -> bool:
        touched = False

        if (
            subscription.status is SubscriptionStatus.TRIALING
            and subscription.trial_end is not None
            and now >= subscription.trial_end
        ):
            subscription.updated_at = now
            if subscription.cancel_at_period_end:
                subscription.status = SubscriptionStatus.CANCELED
                subscription.canceled_at = now
                await self._store.save_subscription(subscription)
                return True
            subscription.status = SubscriptionStatus.ACTIVE
            await self._store.save_subscription(subscription)
            await self.create_billing_cycle(subscription)
            touched = True

        if subscription.status is SubscriptionStatus.ACTIVE and now >= subscription.current_period_end:
            subscription.current_period_start = subscription.current_period_end
            subscription.current_period_end = period_end_for(
                subscription.current_period_start, subscription.billing_cycle
            )
            subscription.updated_at = now
            if subscription.cancel_at_period_end:
                subscription.status = SubscriptionStatus.CANCELED
                subscription.canceled_at = now
            await self._store.save_subscription(subscription)
            if subscription.status is SubscriptionStatus.ACTIVE:
                await self.create_billing_cycle(subscription)
            touched = True

        return touched

    async def generate_invoice(self, billing_cycle_id: str) -> Invoice:
        """Create a draft invoice for a cycle.

        Calling this twice for the same cycle produces two invoices.
        """
        cycle = await self._store.get_billing_cycle(billing_cycle_id)
        if cycle is None:
            raise BillingCycleNotFoundError(f"Billing cycle not found: {billing_cycle_id}")
        subscription = await self._require_subscription(cycle.subscription_id)

        subtotal = cycle.total_amount
        taxes = (subtotal * self._tax_rate).quantize(CENTS)
        total = subtotal + taxes
        invoice = Invoice(
            user_id=cycle.user_id,
            subscription_id=subscription.id,
            billing_cycle_id=cycle.id,
            amount=total,
            subtotal=subtotal,
            taxes=taxes,
            total=total,
            currency=cycle.currency,
            created_at=self._clock(),
            due_date=cycle.due_date,
            items=list(cycle.items),
        )
        await self._store.save_invoice(invoice)
        return invoice

    async def update_billing_cycle_status(
        self, billing_cycle_id: str, status: CycleStatus | str
    ) -> BillingCycle:
        cycle = await self._store.get_billing_cycle(billing_cycle_id)
        if cycle is None:
            raise BillingCycleNotFoundError(f"Billing cycle not found: {billing_cycle_id}")
        status = CycleStatus(status)
        if status not in CYCLE_TRANSITIONS[cycle.status]:
            raise InvalidStatusTransitionError(f"Billing cycle cannot move from {cycle.status} to {status}")
        cycle.status = status
        if status is CycleStatus.PAID:
            cycle.paid_at = self._clock()
        await self._store.save_billing_cycle(cycle)
        return cycle

    async def _transition_invoice(self, invoice_id: str, status: InvoiceStatus) -> Invoice:
        invoice = await self._store.get_invoice(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(f"Invoice not found: {invoice_id}")
        if status not in INVOICE_TRANSITIONS[invoice.status]:
            raise InvalidStatusTransitionError(f"Invoice cannot move from {invoice.status} to {status}")
        invoice.status = status
        if status is InvoiceStatus.PAID:
            invoice.paid_at = self._clock()
        await self._store.save_invoice(invoice)
        return invoice

    async def mark_invoice_sent(self, invoice_id: str) -> Invoice:
        return await self._transition_invoice(invoice_id, InvoiceStatus.SENT)

    async def mark_invoice_paid(self, invoice_id: str) -> Invoice:
        return await self._transition_invoice(invoice_id, InvoiceStatus.PAID)

    async def get_billing_history(self, user_id: str) -> BillingHistory:
        cycles = await self._store.list_billing_cycles(user_id)
        invoices = await self._store.list_invoices(user_id)
        return BillingHistory(
            subscription=await self.get_user_subscription(user_id),
            billing_cycles=sorted(cycles, key=lambda c: c.start_date, reverse=True),
            invoices=sorted(invoices, key=lambda i: i.created_at, reverse=True),
        )

    async def get_current_usage_and_estimated_bill(self, user_id: str) -> BillEstimate:
        subscription = await self.get_user_subscription(user_id)
        if subscription is None:
            raise SubscriptionNotFoundError(f"No current subscription for {user_id}")

        usage = await self._meter.get_user_usage(user_id, subscription.tier)
        fee = subscription_price(subscription.tier, subscription.billing_cycle)
        charges = await self.calculate_usage_charges(user_id, subscription.tier)
        return BillEstimate(
            subscription=subscription,
            usage=usage,
            estimated_bill=fee + charges.total,
            next_billing_date=subscription.current_period_end,
            days_until_billing=max(0, days_between(self._clock(), subscription.current_period_end)),
        )
