"""
Persistence contract shared by the meter, calculator, billing engine and
transcript recorder, plus an in-process implementation.

``MemoryStore`` hands out copies so callers never mutate stored state by
accident. ``SqlStore`` in ``boardroom.db`` is the database-backed version.
"""

from __future__ import annotations

import asyncio
import copy
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from .billing import BillingCycle, Invoice, Subscription, SubscriptionStatus
from .costs import CostEvent
from .tiers import SubscriptionTier
from .usage import UsageBucket, UsageDelta, UsagePatterns, UsagePeriod, UsageViolation, UserUsage


class ConversationStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


class MessageSender(StrEnum):
    USER = "user"
    AI = "ai"
    SYSTEM = "system"


@dataclass
class ConversationRecord:
    user_id: str
    title: str
    created_at: datetime
    updated_at: datetime
    status: ConversationStatus = ConversationStatus.ACTIVE
    config: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))


@dataclass
class MessageRecord:
    conversation_id: str
    sender: MessageSender
    content: str
    created_at: datetime
    status: str = "completed"
    model: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))


class Store(ABC):
    """Everything the metering and billing components persist."""

    # Conversations

    @abstractmethod
    async def create_conversation(self, conversation: ConversationRecord) -> ConversationRecord: ...

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> ConversationRecord | None: ...

    @abstractmethod
    async def set_conversation_status(
        self, conversation_id: str, status: ConversationStatus, now: datetime
    ) -> None: ...

    @abstractmethod
    async def list_conversations(self, user_id: str) -> list[ConversationRecord]: ...

    @abstractmethod
    async def add_message(self, message: MessageRecord) -> MessageRecord: ...

    @abstractmethod
    async def list_messages(self, conversation_id: str) -> list[MessageRecord]: ...

    # Cost events

    @abstractmethod
    async def add_cost_event(self, event: CostEvent) -> None: ...

    @abstractmethod
    async def list_cost_events(
        self, user_id: str, start: datetime | None = None, end: datetime | None = None
    ) -> list[CostEvent]:
        """Events for a user with ``start <= timestamp <= end``, oldest first."""

    # Usage aggregates

    @abstractmethod
    async def load_usage(self, user_id: str) -> UserUsage | None: ...

    @abstractmethod
    async def create_usage(self, usage: UserUsage) -> UserUsage:
        """Insert the aggregate unless one exists; return whichever is stored."""

    @abstractmethod
    async def reset_usage_period(
        self, user_id: str, period: UsagePeriod, new_key: str, now: datetime
    ) -> None:
        """Zero a bucket, but only if its period key differs from ``new_key``."""

    @abstractmethod
    async def increment_usage(
        self,
        user_id: str,
        delta: UsageDelta,
        now: datetime,
        patterns: UsagePatterns | None = None,
    ) -> UserUsage:
        """Apply ``delta`` to the daily and monthly buckets in one atomic step."""

    @abstractmethod
    async def update_usage_tier(self, user_id: str, tier: SubscriptionTier, now: datetime) -> None: ...

    @abstractmethod
    async def add_violation(self, violation: UsageViolation) -> None: ...

    @abstractmethod
    async def list_violations(self, user_id: str) -> list[UsageViolation]: ...

    # Billing

    @abstractmethod
    async def save_subscription(self, subscription: Subscription) -> None: ...

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Subscription | None: ...

    @abstractmethod
    async def find_current_subscription(self, user_id: str) -> Subscription | None:
        """The user's trialing, active or past-due subscription, if any."""

    @abstractmethod
    async def list_subscriptions(
        self, statuses: Iterable[SubscriptionStatus] | None = None
    ) -> list[Subscription]: ...

    @abstractmethod
    async def save_billing_cycle(self, cycle: BillingCycle) -> None: ...

    @abstractmethod
    async def get_billing_cycle(self, cycle_id: str) -> BillingCycle | None: ...

    @abstractmethod
    async def list_billing_cycles(self, user_id: str) -> list[BillingCycle]: ...

    @abstractmethod
    async def save_invoice(self, invoice: Invoice) -> None: ...

    @abstractmethod
    async def get_invoice(self, invoice_id: str) -> Invoice | None: ...

    @abstractmethod
    async def list_invoices(self, user_id: str) -> list[Invoice]: ...

    async def close(self) -> None:
        return None


class MemoryStore(Store):
    """Single-process store. A lock stands in for row-level locking."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.conversations: dict[str, ConversationRecord] = {}
        self.messages: list[MessageRecord] = []
        self.cost_events: list[CostEvent] = []
        self.usage: dict[str, UserUsage] = {}
        self.violations: list[UsageViolation] = []
        self.subscriptions: dict[str, Subscription] = {}
        self.billing_cycles: dict[str, BillingCycle] = {}
        self.invoices: dict[str, Invoice] = {}

    async def create_conversation(self, conversation: ConversationRecord) -> ConversationRecord:
        self.conversations[conversation.id] = copy.deepcopy(conversation)
        return conversation

    async def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        conversation = self.conversations.get(conversation_id)
        return copy.deepcopy(conversation) if conversation else None

    async def set_conversation_status(
        self, conversation_id: str, status: ConversationStatus, now: datetime
    ) -> None:
        conversation = self.conversations.get(conversation_id)
        if conversation is not None:
            conversation.status = status
            conversation.updated_at = now

    async def list_conversations(self, user_id: str) -> list[ConversationRecord]:
        return [copy.deepcopy(c) for c in self.conversations.values() if c.user_id == user_id]

    async def add_message(self, message: MessageRecord) -> MessageRecord:
        self.messages.append(copy.deepcopy(message))
        return message

    async def list_messages(self, conversation_id: str) -> list[MessageRecord]:
        return [copy.deepcopy(m) for m in self.messages if m.conversation_id == conversation_id]

    async def add_cost_event(self, event: CostEvent) -> None:
        self.cost_events.append(event)

    async def list_cost_events(
        self, user_id: str, start: datetime | None = None, end: datetime | None = None
    ) -> list[CostEvent]:
        events = [
            e
            for e in self.cost_events
            if e.user_id == user_id
            and (start is None or e.timestamp >= start)
            and (end is None or e.timestamp <= end)
        ]
        return sorted(events, key=lambda e: e.timestamp)

    async def load_usage(self, user_id: str) -> UserUsage | None:
        usage = self.usage.get(user_id)
        return copy.deepcopy(usage) if usage else None

    async def create_usage(self, usage: UserUsage) -> UserUsage:
        async with self._lock:
            stored = self.usage.setdefault(usage.user_id, copy.deepcopy(usage))
            return copy.deepcopy(stored)

    async def reset_usage_period(
        self, user_id: str, period: UsagePeriod, new_key: str, now: datetime
    ) -> None:
        async with self._lock:
            usage = self.usage.get(user_id)
            if usage is None:
                return
            attr = "daily" if period is UsagePeriod.DAILY else "monthly"
            if getattr(usage, attr).period != new_key:
                setattr(usage, attr, UsageBucket(period=new_key))
                usage.last_updated = now

    async def increment_usage(
        self,
        user_id: str,
        delta: UsageDelta,
        now: datetime,
        patterns: UsagePatterns | None = None,
    ) -> UserUsage:
        async with self._lock:
            usage = self.usage[user_id]
            usage.daily.apply(delta)
            usage.monthly.apply(delta)
            if patterns is not None:
                usage.patterns = copy.deepcopy(patterns)
            usage.last_updated = now
            return copy.deepcopy(usage)

    async def update_usage_tier(self, user_id: str, tier: SubscriptionTier, now: datetime) -> None:
        async with self._lock:
            usage = self.usage.get(user_id)
            if usage is not None and usage.tier != tier:
                usage.tier = tier
                usage.last_updated = now

    async def add_violation(self, violation: UsageViolation) -> None:
        self.violations.append(violation)

    async def list_violations(self, user_id: str) -> list[UsageViolation]:
        return [v for v in self.violations if v.user_id == user_id]

    async def save_subscription(self, subscription: Subscription) -> None:
        self.subscriptions[subscription.id] = copy.deepcopy(subscription)

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        subscription = self.subscriptions.get(subscription_id)
        return copy.deepcopy(subscription) if subscription else None

    async def find_current_subscription(self, user_id: str) -> Subscription | None:
        for subscription in self.subscriptions.values():
            if subscription.user_id == user_id and subscription.is_current:
                return copy.deepcopy(subscription)
        return None

    async def list_subscriptions(
        self, statuses: Iterable[SubscriptionStatus] | None = None
    ) -> list[Subscription]:
        wanted = set(statuses) if statuses is not None else None
        return [
            copy.deepcopy(s)
            for s in self.subscriptions.values()
            if wanted is None or s.status in wanted
        ]

    async def save_billing_cycle(self, cycle: BillingCycle) -> None:
        self.billing_cycles[cycle.id] = copy.deepcopy(cycle)

    async def get_billing_cycle(self, cycle_id: str) -> BillingCycle | None:
        cycle = self.billing_cycles.get(cycle_id)
        return copy.deepcopy(cycle) if cycle else None

    async def list_billing_cycles(self, user_id: str) -> list[BillingCycle]:
        return [copy.deepcopy(c) for c in self.billing_cycles.values() if c.user_id == user_id]

    async def save_invoice(self, invoice: Invoice) -> None:
        self.invoices[invoice.id] = copy.deepcopy(invoice)

    async def get_invoice(self, invoice_id: str) -> Invoice | None:
        invoice = self.invoices.get(invoice_id)
        return copy.deepcopy(invoice) if invoice else None

    async def list_invoices(self, user_id: str) -> list[Invoice]:
        return [copy.deepcopy(i) for i in self.invoices.values() if i.user_id == user_id]
