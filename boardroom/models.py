"""SQLAlchemy models for debate transcripts, metering and billing."""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

PortableJSON = JSON().with_variant(JSONB(), "postgresql")

# Counters stored once per bucket (``daily_<name>`` and ``monthly_<name>``).
USAGE_COUNTERS = (
    "messages",
    "debates",
    "tokens",
    "cost",
    "debate_rounds",
    "max_personas_used",
    "exports_generated",
    "api_calls",
)


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamps, also on backends that drop the offset."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value


def _uuid() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        datetime: UTCDateTime(),
        dict[str, Any]: PortableJSON,
        list[dict[str, Any]]: PortableJSON,
    }


# =============================================================================
# TRANSCRIPTS
# =============================================================================


class Conversation(Base):
    """One debate run."""

    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="active")
    config: Mapped[dict[str, Any]] = mapped_column(default=dict)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    messages: Mapped[list["Message"]] = relationship(
        back_populates="conversation", cascade="all, delete-orphan"
    )


class Message(Base):
    """One completed debate turn."""

    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    conversation_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("conversations.id", ondelete="CASCADE"), index=True
    )
    sender: Mapped[str] = mapped_column(String(20), nullable=False)  # 'user', 'ai', 'system'
    content: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="completed")
    model: Mapped[str | None] = mapped_column(String(100), nullable=True)
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", default=dict)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    conversation: Mapped[Conversation] = relationship(back_populates="messages")


# =============================================================================
# METERING
# =============================================================================


class CostEventRow(Base):
    """Append-only log of metered operations."""

    __tablename__ = "cost_events"
    __table_args__ = (Index("ix_cost_events_user_timestamp", "user_id", "timestamp"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    tokens_used: Mapped[int] = mapped_column(Integer, default=0)
    actual_cost: Mapped[Decimal] = mapped_column(Numeric(12, 6), default=Decimal("0"))
    estimated_cost: Mapped[Decimal] = mapped_column(Numeric(12, 6), default=Decimal("0"))
    timestamp: Mapped[datetime] = mapped_column(nullable=False)
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", default=dict)


class UserUsageRow(Base):
    """Daily and monthly usage counters, one row per user."""

    __tablename__ = "user_usage"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    tier: Mapped[str] = mapped_column(String(20), nullable=False)
    last_updated: Mapped[datetime] = mapped_column(nullable=False)

    daily_period: Mapped[str] = mapped_column(String(10), nullable=False)
    daily_messages: Mapped[int] = mapped_column(Integer, default=0)
    daily_debates: Mapped[int] = mapped_column(Integer, default=0)
    daily_tokens: Mapped[int] = mapped_column(Integer, default=0)
    daily_cost: Mapped[Decimal] = mapped_column(Numeric(12, 6), default=Decimal("0"))
    daily_debate_rounds: Mapped[int] = mapped_column(Integer, default=0)
    daily_max_personas_used: Mapped[int] = mapped_column(Integer, default=0)
    daily_exports_generated: Mapped[int] = mapped_column(Integer, default=0)
    daily_api_calls: Mapped[int] = mapped_column(Integer, default=0)

    monthly_period: Mapped[str] = mapped_column(String(7), nullable=False)
    monthly_messages: Mapped[int] = mapped_column(Integer, default=0)
    monthly_debates: Mapped[int] = mapped_column(Integer, default=0)
    monthly_tokens: Mapped[int] = mapped_column(Integer, default=0)
    monthly_cost: Mapped[Decimal] = mapped_column(Numeric(12, 6), default=Decimal("0"))
    monthly_debate_rounds: Mapped[int] = mapped_column(Integer, default=0)
    monthly_max_personas_used: Mapped[int] = mapped_column(Integer, default=0)
    monthly_exports_generated: Mapped[int] = mapped_column(Integer, default=0)
    monthly_api_calls: Mapped[int] = mapped_column(Integer, default=0)

    patterns: Mapped[dict[str, Any]] = mapped_column(default=dict)


class UsageViolationRow(Base):
    """Audit trail of blocked actions. Rows are never updated."""

    __tablename__ = "usage_violations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    feature: Mapped[str] = mapped_column(String(50), nullable=False)
    limit: Mapped[int] = mapped_column(Integer, nullable=False)
    attempted: Mapped[int] = mapped_column(Integer, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(nullable=False)
    action: Mapped[str] = mapped_column(String(20), default="blocked")
    tier: Mapped[str] = mapped_column(String(20), nullable=False)


# =============================================================================
# BILLING
# =============================================================================


class SubscriptionRow(Base):
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    tier: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    billing_cycle: Mapped[str] = mapped_column(String(10), default="monthly")
    current_period_start: Mapped[datetime] = mapped_column(nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(nullable=False)
    trial_end: Mapped[datetime | None] = mapped_column(nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)
    canceled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", default=dict)

    billing_cycles: Mapped[list["BillingCycleRow"]] = relationship(back_populates="subscription")


class BillingCycleRow(Base):
    __tablename__ = "billing_cycles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    subscription_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("subscriptions.id", ondelete="CASCADE")
    )
    tier: Mapped[str] = mapped_column(String(20), nullable=False)
    start_date: Mapped[datetime] = mapped_column(nullable=False)
    end_date: Mapped[datetime] = mapped_column(nullable=False)
    subscription_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    usage_charges: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    status: Mapped[str] = mapped_column(String(20), default="pending")
    items: Mapped[list[dict[str, Any]]] = mapped_column(default=list)
    due_date: Mapped[datetime] = mapped_column(nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)

    subscription: Mapped[SubscriptionRow] = relationship(back_populates="billing_cycles")


class InvoiceRow(Base):
    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    subscription_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("subscriptions.id", ondelete="CASCADE")
    )
    billing_cycle_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("billing_cycles.id", ondelete="CASCADE")
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    status: Mapped[str] = mapped_column(String(20), default="draft")
    items: Mapped[list[dict[str, Any]]] = mapped_column(default=list)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    taxes: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    discounts: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    due_date: Mapped[datetime] = mapped_column(nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
