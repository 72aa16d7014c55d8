"""
Turn-based debate scheduler.

A ``DebateScheduler`` drives one debate: it resolves the participants, runs
every persona once per round in a fixed order, and publishes a typed event for
each step. Events go to the injected ``EventEmitter`` first and are then queued
for the consumer iterating ``events()``.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from .completion import ChatMessage, TextCompletion
from .config import Settings, get_settings
from .errors import CompletionError, DebateConfigError
from .events import DebateEvent, DebateEventType, EventEmitter
from .periods import Clock, utc_now
from .personas import PERSONAS, Persona
from .selector import DebateMode, select_personas

logger = logging.getLogger(__name__)

ConfidenceScorer = Callable[[str], int]

MAX_KEY_POINTS = 3

_HEDGE_WORDS = (
    "might",
    "maybe",
    "perhaps",
    "possibly",
    "could",
    "uncertain",
    "unclear",
    "depends",
    "not sure",
)
_ASSERTIVE_WORDS = ("must", "clearly", "certainly", "definitely", "strongly", "will", "confident")
_AGREE_WORDS = ("agree", "echo", "support", "building on", "build on", "aligns with", "second")
_DISAGREE_WORDS = (
    "disagree",
    "don't agree",
    "do not agree",
    "push back",
    "not convinced",
    "concerned about",
    "differ",
)
_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(?P<text>.+)$")
_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")


class DebatePhase(StrEnum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


class TurnStatus(StrEnum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class DebateConfig:
    topic: str
    mode: DebateMode = DebateMode.EXPERT_PANEL
    selected_personas: tuple[str, ...] | None = None
    max_rounds: int = 2
    include_moderation: bool = True
    model: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DebateConfig:
        """Parse a request body. Accepts camelCase and snake_case keys."""

        def pick(*keys: str, default: Any = None) -> Any:
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return default

        topic = pick("topic")
        if not isinstance(topic, str):
            raise DebateConfigError("Topic is required")

        mode = pick("debateMode", "mode", default=DebateMode.EXPERT_PANEL.value)
        try:
            mode = DebateMode(mode)
        except ValueError as exc:
            raise DebateConfigError(f"Unknown debate mode: {mode}") from exc

        rounds = pick("maxRounds", "max_rounds", default=2)
        if isinstance(rounds, bool) or not isinstance(rounds, int):
            raise DebateConfigError("maxRounds must be an integer")

        selected = pick("selectedPersonas", "selected_personas")
        if selected is not None and (
            isinstance(selected, str) or not all(isinstance(name, str) for name in selected)
        ):
            raise DebateConfigError("selectedPersonas must be a list of names")

        return cls(
            topic=topic,
            mode=mode,
            selected_personas=tuple(selected) if selected is not None else None,
            max_rounds=rounds,
            include_moderation=bool(pick("includeModeration", "include_moderation", default=True)),
            model=pick("model"),
        )


@dataclass
class DebateTurnRecord:
    round: int
    turn_index: int
    persona: Persona
    timestamp: datetime
    content: str = ""
    status: TurnStatus = TurnStatus.PENDING
    confidence: int | None = None
    model: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    key_points: list[str] = field(default_factory=list)
    agrees_with: list[str] = field(default_factory=list)
    disagrees_with: list[str] = field(default_factory=list)

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict[str, Any]:
        return {
            "persona": self.persona.name,
            "message": self.content,
            "timestamp": self.timestamp.isoformat(),
            "round": self.round,
            "turn": self.turn_index,
            "status": self.status.value,
            "confidence": self.confidence,
            "keyPoints": list(self.key_points),
            "agreesWith": list(self.agrees_with),
            "disagreesWith": list(self.disagrees_with),
            "model": self.model,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "tokensUsed": self.tokens_used,
        }


@dataclass
class DebateState:
    topic: str
    mode: DebateMode
    personas: list[Persona]
    max_rounds: int
    model: str
    id: str = field(default_factory=lambda: str(uuid4()))
    current_round: int = 0
    current_turn: int = 0
    messages: list[DebateTurnRecord] = field(default_factory=list)
    is_complete: bool = False
    phase: DebatePhase = DebatePhase.IDLE

    @property
    def total_tokens(self) -> int:
        return sum(m.tokens_used for m in self.messages)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "topic": self.topic,
            "mode": self.mode.value,
            "personas": [p.name for p in self.personas],
            "maxRounds": self.max_rounds,
            "model": self.model,
            "currentRound": self.current_round,
            "currentTurn": self.current_turn,
            "messages": [m.to_dict() for m in self.messages],
            "isComplete": self.is_complete,
            "phase": self.phase.value,
        }


# =============================================================================
# Prompt assembly
# =============================================================================


def build_system_prompt(persona: Persona) -> str:
    return f"You are {persona.name}, {persona.title}.\n\n{persona.prompt}"


def build_turn_prompt(
    topic: str,
    context: Sequence[DebateTurnRecord],
    persona: Persona,
    round_number: int,
) -> str:
    """User prompt for one turn. ``context`` is every earlier completed turn in order."""
    if context:
        context_text = "\n".join(f"- {m.persona.name}: {m.content}" for m in context)
    else:
        context_text = "No previous context."

    if round_number > 1:
        rubric = "You are responding to the previous arguments and providing rebuttals or counter-arguments."
    else:
        rubric = "Present your initial position on this topic."

    if context:
        engage = "Reference and respond to the other executives' points where relevant"
    else:
        engage = "Present your initial perspective"

    return (
        f"DEBATE TOPIC: {topic}\n\n"
        f"CURRENT DEBATE CONTEXT:\n{context_text}\n\n"
        f"This is Round {round_number} of the debate. {rubric}\n\n"
        "Instructions:\n"
        f"1. Stay true to your persona and expertise areas: {', '.join(persona.expertise)}\n"
        f"2. {engage}\n"
        "3. Provide actionable insights from your role's perspective\n"
        "4. Be concise but thorough (2-3 paragraphs maximum)\n"
        "5. If you agree or disagree with specific points, be explicit about it\n\n"
        "Please provide a thoughtful response from your persona's perspective."
    )


# =============================================================================
# Turn analysis
# =============================================================================


def hedging_confidence(text: str) -> int:
    """Score 70-100 from how much the text hedges versus asserts."""
    lowered = text.lower()
    hedges = sum(lowered.count(word) for word in _HEDGE_WORDS)
    assertions = sum(lowered.count(word) for word in _ASSERTIVE_WORDS)
    return max(70, min(100, 85 - 3 * hedges + 2 * assertions))


def extract_key_points(text: str, limit: int = MAX_KEY_POINTS) -> list[str]:
    """Bullet items if there are any, otherwise the lead sentence of each paragraph."""
    bullets = [m.group("text").strip() for line in text.splitlines() if (m := _BULLET_RE.match(line))]
    if bullets:
        return bullets[:limit]

    points: list[str] = []
    for paragraph in re.split(r"\n\s*\n", text):
        paragraph = paragraph.strip()
        if not paragraph:
            continue
        points.append(_SENTENCE_RE.split(paragraph, maxsplit=1)[0])
        if len(points) == limit:
            break
    return points


def detect_stances(text: str, others: Sequence[Persona]) -> tuple[list[str], list[str]]:
    """Find sentences that name another participant next to agree/disagree wording."""
    agrees: list[str] = []
    disagrees: list[str] = []
    for sentence in _SENTENCE_RE.split(text):
        lowered = sentence.lower()
        for persona in others:
            if not re.search(rf"\b{re.escape(persona.first_name)}\b", sentence):
                continue
            if any(word in lowered for word in _DISAGREE_WORDS):
                if persona.name not in disagrees:
                    disagrees.append(persona.name)
            elif any(word in lowered for word in _AGREE_WORDS):
                if persona.name not in agrees:
                    agrees.append(persona.name)
    return agrees, disagrees


# =============================================================================
# Scheduler
# =============================================================================


_CLOSED = object()


class DebateScheduler:
    """Runs a single debate. Create one instance per debate."""

    def __init__(
        self,
        completion: TextCompletion,
        *,
        emitter: EventEmitter | None = None,
        settings: Settings | None = None,
        registry: Sequence[Persona] = PERSONAS,
        confidence_scorer: ConfidenceScorer = hedging_confidence,
        clock: Clock = utc_now,
    ) -> None:
        self._completion = completion
        self._emitter = emitter or EventEmitter()
        self._settings = settings or get_settings()
        self._registry = tuple(registry)
        self._score_confidence = confidence_scorer
        self._clock = clock

        self._state: DebateState | None = None
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self._resume = asyncio.Event()
        self._resume.set()

    @property
    def emitter(self) -> EventEmitter:
        return self._emitter

    @property
    def state(self) -> DebateState:
        if self._state is None:
            raise RuntimeError("Debate has not been prepared")
        return self._state

    @property
    def phase(self) -> DebatePhase:
        return self._state.phase if self._state else DebatePhase.IDLE

    @property
    def is_paused(self) -> bool:
        return not self._resume.is_set()

    def prepare(self, config: DebateConfig) -> DebateState:
        """Validate the request and resolve participants. No events are emitted."""
        if self._state is not None:
            raise RuntimeError("Debate already prepared")

        topic = config.topic.strip()
        if len(topic) < self._settings.min_topic_length:
            raise DebateConfigError(
                f"Topic must be at least {self._settings.min_topic_length} characters"
            )

        max_allowed = self._settings.max_debate_rounds
        if not 1 <= config.max_rounds <= max_allowed:
            raise DebateConfigError(f"maxRounds must be between 1 and {max_allowed}")

        try:
            mode = DebateMode(config.mode)
        except ValueError as exc:
            raise DebateConfigError(f"Unknown debate mode: {config.mode}") from exc

        personas = select_personas(topic, mode, config.selected_personas, self._registry)
        if not personas:
            raise DebateConfigError("No personas could be resolved for this debate")

        self._state = DebateState(
            topic=topic,
            mode=mode,
            personas=personas,
            max_rounds=config.max_rounds,
            model=config.model or self._settings.default_model,
        )
        logger.debug(
            "Prepared debate %s: %d personas, %d rounds", self._state.id, len(personas), config.max_rounds
        )
        return self._state

    async def events(self) -> AsyncIterator[DebateEvent]:
        """Start the debate if needed and yield its events until the channel closes."""
        if self._state is None:
            raise RuntimeError("Debate has not been prepared")
        if self._task is None and self._state.phase is not DebatePhase.CANCELLED:
            self._task = asyncio.create_task(self._drive())
        try:
            while True:
                item = await self._queue.get()
                if item is _CLOSED:
                    return
                yield item
        finally:
            if self._task is not None and not self._task.done():
                self._task.cancel()

    async def run(self, config: DebateConfig | None = None) -> DebateState:
        if config is not None:
            self.prepare(config)
        async for _ in self.events():
            pass
        return self.state

    def pause(self) -> None:
        """Do not start another turn until ``resume()``. An in-flight turn finishes."""
        self._resume.clear()

    def resume(self) -> None:
        self._resume.set()

    def cancel(self) -> None:
        """Abandon the debate. A turn in progress is discarded."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        elif self._task is None and self._state is not None:
            self._state.phase = DebatePhase.CANCELLED
            self._queue.put_nowait(_CLOSED)
        self._resume.set()

    async def _publish(self, type: DebateEventType, data: dict[str, Any]) -> None:
        event = DebateEvent(type=type, data=data, debate_id=self.state.id, timestamp=self._clock())
        await self._emitter.emit(event)
        self._queue.put_nowait(event)

    async def _drive(self) -> None:
        state = self.state
        try:
            state.phase = DebatePhase.CONNECTING
            await self._publish(DebateEventType.DEBATE_STARTED, state.to_dict())
            state.phase = DebatePhase.ACTIVE

            for round_number in range(1, state.max_rounds + 1):
                state.current_round = round_number
                await self._publish(
                    DebateEventType.ROUND_STARTED,
                    {"round": round_number, "personas": [p.name for p in state.personas]},
                )

                completed = 0
                for turn_index, persona in enumerate(state.personas, start=1):
                    await self._resume.wait()
                    state.current_turn = turn_index
                    await self._publish(
                        DebateEventType.TURN_STARTED,
                        {
                            "persona": persona.name,
                            "round": round_number,
                            "turn": turn_index,
                            "personaDetails": persona.to_dict(),
                        },
                    )
                    if await self._run_turn(persona, round_number, turn_index) is not None:
                        completed += 1

                await self._publish(
                    DebateEventType.ROUND_COMPLETED,
                    {"round": round_number, "messagesInRound": completed},
                )

            state.is_complete = True
            state.phase = DebatePhase.COMPLETED
            await self._publish(DebateEventType.DEBATE_COMPLETED, state.to_dict())
        except asyncio.CancelledError:
            state.phase = DebatePhase.CANCELLED
            logger.info("Debate %s cancelled in round %d", state.id, state.current_round)
            raise
        except Exception as exc:
            state.phase = DebatePhase.ERROR
            logger.exception("Debate %s failed", state.id)
            await self._publish(DebateEventType.ERROR, {"error": str(exc)})
        finally:
            self._queue.put_nowait(_CLOSED)

    async def _run_turn(
        self, persona: Persona, round_number: int, turn_index: int
    ) -> DebateTurnRecord | None:
        state = self.state
        record = DebateTurnRecord(
            round=round_number,
            turn_index=turn_index,
            persona=persona,
            timestamp=self._clock(),
            model=state.model,
        )
        system_prompt = build_system_prompt(persona)
        prompt = build_turn_prompt(state.topic, state.messages, persona, round_number)

        def on_delta(chunk: str) -> None:
            record.content += chunk

        timeout = self._settings.turn_timeout_seconds
        retries = 0
        while True:
            record.status = TurnStatus.STREAMING
            record.content = ""
            try:
                async with asyncio.timeout(timeout):
                    completion = await self._completion.complete(
                        system_prompt,
                        [ChatMessage(role="user", content=prompt)],
                        model=state.model,
                        on_delta=on_delta,
                    )
                break
            except TimeoutError:
                error = f"Turn timed out after {timeout:g}s"
            except CompletionError as exc:
                if exc.transient and retries < self._settings.turn_max_retries:
                    retries += 1
                    logger.warning("Retrying %s (round %d): %s", persona.name, round_number, exc)
                    continue
                error = str(exc)
            except Exception as exc:
                logger.exception("Completion failed for %s", persona.name)
                error = str(exc) or type(exc).__name__

            record.status = TurnStatus.ERROR
            await self._publish(
                DebateEventType.ERROR,
                {"persona": persona.name, "error": error, "round": round_number, "turn": turn_index},
            )
            return None

        others = [p for p in state.personas if p is not persona]
        agrees, disagrees = detect_stances(completion.text, others)
        record.content = completion.text
        record.model = completion.model
        record.input_tokens = completion.input_tokens
        record.output_tokens = completion.output_tokens
        record.confidence = self._score_confidence(completion.text)
        record.key_points = extract_key_points(completion.text)
        record.agrees_with = agrees
        record.disagrees_with = disagrees
        record.timestamp = self._clock()
        record.status = TurnStatus.COMPLETED
        state.messages.append(record)

        await self._publish(DebateEventType.MESSAGE_GENERATED, record.to_dict())
        return record
