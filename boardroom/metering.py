"""
Event handlers that meter debate usage and persist transcripts.

Both handlers are attached to a debate's ``EventEmitter``. A failure inside a
handler is logged and never interrupts the debate stream.
"""

from __future__ import annotations

import logging

from .costs import CostCalculator
from .events import DebateEvent, DebateEventType
from .periods import Clock, utc_now
from .store import ConversationStatus, MessageRecord, MessageSender, Store
from .tiers import SubscriptionTier
from .usage import UsageMeter

logger = logging.getLogger(__name__)


class UsageRecorder:
    """Meters every completed turn as a message and the finished debate as a debate."""

    def __init__(
        self,
        meter: UsageMeter,
        calculator: CostCalculator,
        *,
        user_id: str,
        tier: SubscriptionTier | str,
    ) -> None:
        self._meter = meter
        self._calculator = calculator
        self._user_id = user_id
        self._tier = SubscriptionTier(tier)

    async def __call__(self, event: DebateEvent) -> None:
        if event.type is DebateEventType.MESSAGE_GENERATED:
            await self._record_turn(event)
        elif event.type is DebateEventType.DEBATE_COMPLETED:
            await self._record_debate(event)

    async def _record_turn(self, event: DebateEvent) -> None:
        data = event.data
        cost_event = await self._calculator.record_message_cost(
            self._user_id,
            self._tier,
            data["model"],
            data.get("inputTokens", 0),
            data.get("outputTokens", 0),
            metadata={
                "debate_id": event.debate_id,
                "persona": data.get("persona"),
                "round": data.get("round"),
            },
        )
        await self._meter.record_message(
            self._user_id,
            self._tier,
            cost_event.model,
            cost_event.tokens_used,
            cost_event.actual_cost,
        )

    async def _record_debate(self, event: DebateEvent) -> None:
        data = event.data
        personas = len(data.get("personas", []))
        rounds = data.get("currentRound") or data.get("maxRounds", 0)
        actual_tokens = sum(m.get("tokensUsed", 0) for m in data.get("messages", []))
        model = data.get("model") or next(
            (m["model"] for m in data.get("messages", []) if m.get("model")), ""
        )

        await self._calculator.record_debate_cost(
            self._user_id,
            self._tier,
            model,
            data["topic"],
            rounds,
            personas,
            actual_tokens=actual_tokens,
            metadata={"debate_id": event.debate_id},
        )
        # Token and cost totals were already metered turn by turn.
        await self._meter.record_debate(
            self._user_id, self._tier, rounds, personas, 0, 0, topic=data["topic"]
        )


class TranscriptRecorder:
    """Best-effort persistence of completed turns into a conversation."""

    def __init__(self, store: Store, conversation_id: str, *, clock: Clock = utc_now) -> None:
        self._store = store
        self._conversation_id = conversation_id
        self._clock = clock

    async def __call__(self, event: DebateEvent) -> None:
        try:
            if event.type is DebateEventType.MESSAGE_GENERATED:
                await self._save_turn(event)
            elif event.type is DebateEventType.DEBATE_COMPLETED:
                await self._store.set_conversation_status(
                    self._conversation_id, ConversationStatus.COMPLETED, self._clock()
                )
            elif event.type is DebateEventType.ERROR and "persona" not in event.data:
                await self._store.set_conversation_status(
                    self._conversation_id, ConversationStatus.ERROR, self._clock()
                )
            elif event.type is DebateEventType.STREAM_COMPLETE and event.data.get("status") == "cancelled":
                await self._store.set_conversation_status(
                    self._conversation_id, ConversationStatus.CANCELLED, self._clock()
                )
        except Exception as exc:
            logger.warning(
                "Failed to persist %s for conversation %s: %s",
                event.type.value,
                self._conversation_id,
                exc,
            )

    async def _save_turn(self, event: DebateEvent) -> None:
        data = event.data
        await self._store.add_message(
            MessageRecord(
                conversation_id=self._conversation_id,
                sender=MessageSender.AI,
                content=data["message"],
                created_at=self._clock(),
                model=data.get("model"),
                metadata={
                    "persona": data.get("persona"),
                    "round": data.get("round"),
                    "turn": data.get("turn"),
                    "confidence": data.get("confidence"),
                    "key_points": data.get("keyPoints", []),
                    "agrees_with": data.get("agreesWith", []),
                    "disagrees_with": data.get("disagreesWith", []),
                    "tokens_used": data.get("tokensUsed", 0),
                },
            )
        )
