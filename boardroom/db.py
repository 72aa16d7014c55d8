"""Async database connection and the SQL-backed store."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .billing import (
    BillingCycle,
    BillingInterval,
    CycleStatus,
    Invoice,
    InvoiceStatus,
    LineItem,
    Subscription,
    SubscriptionStatus,
)
from .config import Settings
from .costs import CostEvent, CostEventType
from .errors import SchemaNotInitializedError, is_schema_missing_error, schema_not_initialized_message
from .models import (
    USAGE_COUNTERS,
    Base,
    BillingCycleRow,
    Conversation,
    CostEventRow,
    InvoiceRow,
    Message,
    SubscriptionRow,
    UsageViolationRow,
    UserUsageRow,
)
from .store import (
    ConversationRecord,
    ConversationStatus,
    MessageRecord,
    MessageSender,
    Store,
)
from .tiers import SubscriptionTier
from .usage import UsageBucket, UsageDelta, UsagePatterns, UsagePeriod, UsageViolation, UserUsage


def create_engine(settings: Settings) -> AsyncEngine:
    return create_async_engine(settings.async_database_url, echo=False, pool_pre_ping=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def get_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Async context manager for database sessions."""
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception as exc:
            await session.rollback()
            if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
                raise SchemaNotInitializedError(schema_not_initialized_message(exc)) from exc
            raise


# =============================================================================
# Row <-> record conversion
# =============================================================================


def _bucket_from_row(row: UserUsageRow, prefix: str) -> UsageBucket:
    return UsageBucket(
        period=getattr(row, f"{prefix}_period"),
        **{name: getattr(row, f"{prefix}_{name}") for name in USAGE_COUNTERS},
    )


def _usage_from_row(row: UserUsageRow) -> UserUsage:
    return UserUsage(
        user_id=row.user_id,
        tier=SubscriptionTier(row.tier),
        last_updated=row.last_updated,
        daily=_bucket_from_row(row, "daily"),
        monthly=_bucket_from_row(row, "monthly"),
        patterns=UsagePatterns.from_dict(row.patterns),
    )


def _bucket_columns(bucket: UsageBucket, prefix: str) -> dict[str, Any]:
    values: dict[str, Any] = {f"{prefix}_period": bucket.period}
    for name in USAGE_COUNTERS:
        values[f"{prefix}_{name}"] = getattr(bucket, name)
    return values


def _delta_columns(delta: UsageDelta, prefix: str) -> dict[str, Any]:
    """Column expressions that add ``delta`` in the database, not in Python."""
    personas_col = getattr(UserUsageRow, f"{prefix}_max_personas_used")
    increments = {
        "messages": delta.messages,
        "debates": delta.debates,
        "tokens": delta.tokens,
        "cost": delta.cost,
        "debate_rounds": delta.debate_rounds,
        "exports_generated": delta.exports_generated,
        "api_calls": delta.api_calls,
    }
    values: dict[str, Any] = {
        f"{prefix}_{name}": getattr(UserUsageRow, f"{prefix}_{name}") + amount
        for name, amount in increments.items()
    }
    values[f"{prefix}_max_personas_used"] = case(
        (personas_col < delta.personas, delta.personas), else_=personas_col
    )
    return values


def _cost_event_from_row(row: CostEventRow) -> CostEvent:
    return CostEvent(
        id=row.id,
        user_id=row.user_id,
        type=CostEventType(row.type),
        model=row.model,
        tokens_used=row.tokens_used,
        actual_cost=Decimal(row.actual_cost),
        estimated_cost=Decimal(row.estimated_cost),
        timestamp=row.timestamp,
        metadata=dict(row.metadata_ or {}),
    )


def _subscription_from_row(row: SubscriptionRow) -> Subscription:
    return Subscription(
        id=row.id,
        user_id=row.user_id,
        tier=SubscriptionTier(row.tier),
        status=SubscriptionStatus(row.status),
        billing_cycle=BillingInterval(row.billing_cycle),
        current_period_start=row.current_period_start,
        current_period_end=row.current_period_end,
        trial_end=row.trial_end,
        cancel_at_period_end=row.cancel_at_period_end,
        canceled_at=row.canceled_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
        metadata=dict(row.metadata_ or {}),
    )


def _cycle_from_row(row: BillingCycleRow) -> BillingCycle:
    return BillingCycle(
        id=row.id,
        user_id=row.user_id,
        subscription_id=row.subscription_id,
        tier=SubscriptionTier(row.tier),
        start_date=row.start_date,
        end_date=row.end_date,
        subscription_fee=Decimal(row.subscription_fee),
        usage_charges=Decimal(row.usage_charges),
        total_amount=Decimal(row.total_amount),
        currency=row.currency,
        status=CycleStatus(row.status),
        items=[LineItem.from_dict(item) for item in row.items or []],
        due_date=row.due_date,
        paid_at=row.paid_at,
    )


def _invoice_from_row(row: InvoiceRow) -> Invoice:
    return Invoice(
        id=row.id,
        user_id=row.user_id,
        subscription_id=row.subscription_id,
        billing_cycle_id=row.billing_cycle_id,
        amount=Decimal(row.amount),
        currency=row.currency,
        status=InvoiceStatus(row.status),
        items=[LineItem.from_dict(item) for item in row.items or []],
        subtotal=Decimal(row.subtotal),
        taxes=Decimal(row.taxes),
        discounts=Decimal(row.discounts),
        total=Decimal(row.total),
        created_at=row.created_at,
        due_date=row.due_date,
        paid_at=row.paid_at,
    )


class SqlStore(Store):
    """Store backed by SQLAlchemy. Each call runs in its own transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    def _session(self):
        return get_session(self._session_factory)

    # =========================================================================
    # Conversations
    # =========================================================================

    async def create_conversation(self, conversation: ConversationRecord) -> ConversationRecord:
        async with self._session() as session:
            session.add(
                Conversation(
                    id=conversation.id,
                    user_id=conversation.user_id,
                    title=conversation.title,
                    status=conversation.status.value,
                    config=conversation.config,
                    created_at=conversation.created_at,
                    updated_at=conversation.updated_at,
                )
            )
        return conversation

    async def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        async with self._session() as session:
            row = await session.get(Conversation, conversation_id)
            if row is None:
                return None
            return ConversationRecord(
                id=row.id,
                user_id=row.user_id,
                title=row.title,
                status=ConversationStatus(row.status),
                config=dict(row.config or {}),
                created_at=row.created_at,
                updated_at=row.updated_at,
            )

    async def set_conversation_status(
        self, conversation_id: str, status: ConversationStatus, now: datetime
    ) -> None:
        async with self._session() as session:
            await session.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id)
                .values(status=status.value, updated_at=now)
            )

    async def list_conversations(self, user_id: str) -> list[ConversationRecord]:
        async with self._session() as session:
            result = await session.execute(
                select(Conversation)
                .where(Conversation.user_id == user_id)
                .order_by(Conversation.created_at.desc())
            )
            return [
                ConversationRecord(
                    id=row.id,
                    user_id=row.user_id,
                    title=row.title,
                    status=ConversationStatus(row.status),
                    config=dict(row.config or {}),
                    created_at=row.created_at,
                    updated_at=row.updated_at,
                )
                for row in result.scalars().all()
            ]

    async def add_message(self, message: MessageRecord) -> MessageRecord:
        async with self._session() as session:
            session.add(
                Message(
                    id=message.id,
                    conversation_id=message.conversation_id,
                    sender=message.sender.value,
                    content=message.content,
                    status=message.status,
                    model=message.model,
                    metadata_=message.metadata,
                    created_at=message.created_at,
                )
            )
        return message

    async def list_messages(self, conversation_id: str) -> list[MessageRecord]:
        async with self._session() as session:
            result = await session.execute(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.created_at)
            )
            return [
                MessageRecord(
                    id=row.id,
                    conversation_id=row.conversation_id,
                    sender=MessageSender(row.sender),
                    content=row.content,
                    status=row.status,
                    model=row.model,
                    metadata=dict(row.metadata_ or {}),
                    created_at=row.created_at,
                )
                for row in result.scalars().all()
            ]

    # =========================================================================
    # Cost events
    # =========================================================================

    async def add_cost_event(self, event: CostEvent) -> None:
        async with self._session() as session:
            session.add(
                CostEventRow(
                    id=event.id,
                    user_id=event.user_id,
                    type=event.type.value,
                    model=event.model,
                    tokens_used=event.tokens_used,
                    actual_cost=event.actual_cost,
                    estimated_cost=event.estimated_cost,
                    timestamp=event.timestamp,
                    metadata_=event.metadata,
                )
            )

    async def list_cost_events(
        self, user_id: str, start: datetime | None = None, end: datetime | None = None
    ) -> list[CostEvent]:
        query = select(CostEventRow).where(CostEventRow.user_id == user_id)
        if start is not None:
            query = query.where(CostEventRow.timestamp >= start)
        if end is not None:
            query = query.where(CostEventRow.timestamp <= end)
        async with self._session() as session:
            result = await session.execute(query.order_by(CostEventRow.timestamp))
            return [_cost_event_from_row(row) for row in result.scalars().all()]

    # =========================================================================
    # Usage aggregates
    # =========================================================================

    async def load_usage(self, user_id: str) -> UserUsage | None:
        async with self._session() as session:
            row = await session.get(UserUsageRow, user_id)
            return _usage_from_row(row) if row else None

    async def create_usage(self, usage: UserUsage) -> UserUsage:
        try:
            async with self._session() as session:
                existing = await session.get(UserUsageRow, usage.user_id)
                if existing is not None:
                    return _usage_from_row(existing)
                session.add(
                    UserUsageRow(
                        user_id=usage.user_id,
                        tier=usage.tier.value,
                        last_updated=usage.last_updated,
                        patterns=usage.patterns.to_dict(),
                        **_bucket_columns(usage.daily, "daily"),
                        **_bucket_columns(usage.monthly, "monthly"),
                    )
                )
        except IntegrityError:
            # Another process created the row first.
            pass
        stored = await self.load_usage(usage.user_id)
        return stored if stored is not None else usage

    async def reset_usage_period(
        self, user_id: str, period: UsagePeriod, new_key: str, now: datetime
    ) -> None:
        prefix = "daily" if period is UsagePeriod.DAILY else "monthly"
        period_col = getattr(UserUsageRow, f"{prefix}_period")
        async with self._session() as session:
            await session.execute(
                update(UserUsageRow)
                .where(UserUsageRow.user_id == user_id, period_col != new_key)
                .values(last_updated=now, **_bucket_columns(UsageBucket(period=new_key), prefix))
            )

    async def increment_usage(
        self,
        user_id: str,
        delta: UsageDelta,
        now: datetime,
        patterns: UsagePatterns | None = None,
    ) -> UserUsage:
        values: dict[str, Any] = {
            "last_updated": now,
            **_delta_columns(delta, "daily"),
            **_delta_columns(delta, "monthly"),
        }
        if patterns is not None:
            values["patterns"] = patterns.to_dict()
        async with self._session() as session:
            await session.execute(
                update(UserUsageRow)
                .where(UserUsageRow.user_id == user_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            row = (
                await session.execute(
                    select(UserUsageRow)
                    .where(UserUsageRow.user_id == user_id)
                    .execution_options(populate_existing=True)
                )
            ).scalar_one()
            return _usage_from_row(row)

    async def update_usage_tier(self, user_id: str, tier: SubscriptionTier, now: datetime) -> None:
        async with self._session() as session:
            await session.execute(
                update(UserUsageRow)
                .where(UserUsageRow.user_id == user_id, UserUsageRow.tier != tier.value)
                .values(tier=tier.value, last_updated=now)
            )

    async def add_violation(self, violation: UsageViolation) -> None:
        async with self._session() as session:
            session.add(
                UsageViolationRow(
                    user_id=violation.user_id,
                    feature=violation.feature,
                    limit=violation.limit,
                    attempted=violation.attempted,
                    timestamp=violation.timestamp,
                    action=violation.action,
                    tier=violation.tier.value,
                )
            )

    async def list_violations(self, user_id: str) -> list[UsageViolation]:
        async with self._session() as session:
            result = await session.execute(
                select(UsageViolationRow)
                .where(UsageViolationRow.user_id == user_id)
                .order_by(UsageViolationRow.id)
            )
            return [
                UsageViolation(
                    user_id=row.user_id,
                    feature=row.feature,
                    limit=row.limit,
                    attempted=row.attempted,
                    timestamp=row.timestamp,
                    action=row.action,
                    tier=SubscriptionTier(row.tier),
                )
                for row in result.scalars().all()
            ]

    # =========================================================================
    # Billing
    # =========================================================================

    async def save_subscription(self, subscription: Subscription) -> None:
        async with self._session() as session:
            await session.merge(
                SubscriptionRow(
                    id=subscription.id,
                    user_id=subscription.user_id,
                    tier=subscription.tier.value,
                    status=subscription.status.value,
                    billing_cycle=subscription.billing_cycle.value,
                    current_period_start=subscription.current_period_start,
                    current_period_end=subscription.current_period_end,
                    trial_end=subscription.trial_end,
                    cancel_at_period_end=subscription.cancel_at_period_end,
                    canceled_at=subscription.canceled_at,
                    created_at=subscription.created_at,
                    updated_at=subscription.updated_at,
                    metadata_=subscription.metadata,
                )
            )

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        async with self._session() as session:
            row = await session.get(SubscriptionRow, subscription_id)
            return _subscription_from_row(row) if row else None

    async def find_current_subscription(self, user_id: str) -> Subscription | None:
        current = [
            SubscriptionStatus.TRIALING.value,
            SubscriptionStatus.ACTIVE.value,
            SubscriptionStatus.PAST_DUE.value,
        ]
        async with self._session() as session:
            result = await session.execute(
                select(SubscriptionRow)
                .where(SubscriptionRow.user_id == user_id, SubscriptionRow.status.in_(current))
                .order_by(SubscriptionRow.created_at.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _subscription_from_row(row) if row else None

    async def list_subscriptions(
        self, statuses: Iterable[SubscriptionStatus] | None = None
    ) -> list[Subscription]:
        query = select(SubscriptionRow).order_by(SubscriptionRow.created_at)
        if statuses is not None:
            query = query.where(SubscriptionRow.status.in_([s.value for s in statuses]))
        async with self._session() as session:
            result = await session.execute(query)
            return [_subscription_from_row(row) for row in result.scalars().all()]

    async def save_billing_cycle(self, cycle: BillingCycle) -> None:
        async with self._session() as session:
            await session.merge(
                BillingCycleRow(
                    id=cycle.id,
                    user_id=cycle.user_id,
                    subscription_id=cycle.subscription_id,
                    tier=cycle.tier.value,
                    start_date=cycle.start_date,
                    end_date=cycle.end_date,
                    subscription_fee=cycle.subscription_fee,
                    usage_charges=cycle.usage_charges,
                    total_amount=cycle.total_amount,
                    currency=cycle.currency,
                    status=cycle.status.value,
                    items=[item.to_dict() for item in cycle.items],
                    due_date=cycle.due_date,
                    paid_at=cycle.paid_at,
                )
            )

    async def get_billing_cycle(self, cycle_id: str) -> BillingCycle | None:
        async with self._session() as session:
            row = await session.get(BillingCycleRow, cycle_id)
            return _cycle_from_row(row) if row else None

    async def list_billing_cycles(self, user_id: str) -> list[BillingCycle]:
        async with self._session() as session:
            result = await session.execute(
                select(BillingCycleRow).where(BillingCycleRow.user_id == user_id)
            )
            return [_cycle_from_row(row) for row in result.scalars().all()]

    async def save_invoice(self, invoice: Invoice) -> None:
        async with self._session() as session:
            await session.merge(
                InvoiceRow(
                    id=invoice.id,
                    user_id=invoice.user_id,
                    subscription_id=invoice.subscription_id,
                    billing_cycle_id=invoice.billing_cycle_id,
                    amount=invoice.amount,
                    currency=invoice.currency,
                    status=invoice.status.value,
                    items=[item.to_dict() for item in invoice.items],
                    subtotal=invoice.subtotal,
                    taxes=invoice.taxes,
                    discounts=invoice.discounts,
                    total=invoice.total,
                    created_at=invoice.created_at,
                    due_date=invoice.due_date,
                    paid_at=invoice.paid_at,
                )
            )

    async def get_invoice(self, invoice_id: str) -> Invoice | None:
        async with self._session() as session:
            row = await session.get(InvoiceRow, invoice_id)
            return _invoice_from_row(row) if row else None

    async def list_invoices(self, user_id: str) -> list[Invoice]:
        async with self._session() as session:
            result = await session.execute(select(InvoiceRow).where(InvoiceRow.user_id == user_id))
            return [_invoice_from_row(row) for row in result.scalars().all()]
