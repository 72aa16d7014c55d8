"""Shared test fixtures and configuration for pytest."""

import asyncio
import re
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta

import pytest

from boardroom.completion import ChatMessage, Completion, TextCompletion
from boardroom.config import Settings
from boardroom.costs import CostCalculator
from boardroom.billing import BillingEngine
from boardroom.store import MemoryStore
from boardroom.usage import UsageMeter

START = datetime(2026, 4, 15, 12, 0, tzinfo=UTC)

_SPEAKER_RE = re.compile(r"^You are (?P<name>[^,]+),")


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)

    def set(self, moment: datetime) -> None:
        self.now = moment


def speaker(system_prompt: str) -> str:
    match = _SPEAKER_RE.match(system_prompt)
    return match.group("name") if match else "moderator"


class FakeCompletion(TextCompletion):
    """Deterministic completion. ``respond`` maps (system prompt, user prompt) to text.

    ``errors`` are raised in order by the first calls; ``delay`` makes each
    call sleep before answering.
    """

    def __init__(
        self,
        respond: Callable[[str, str], str] | None = None,
        *,
        errors: Sequence[BaseException] = (),
        delay: float = 0.0,
    ) -> None:
        self.respond = respond or (lambda system, prompt: f"{speaker(system)} thinks we must focus on execution.")
        self.errors = list(errors)
        self.delay = delay
        self.calls: list[tuple[str, str]] = []
        self.closed = False

    async def complete(self, system_prompt, messages: Sequence[ChatMessage], *, model=None, on_delta=None):
        prompt = messages[-1].content
        self.calls.append((system_prompt, prompt))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)

        text = self.respond(system_prompt, prompt)
        if on_delta is not None:
            on_delta(text)
        return Completion(text=text, model=model or "mixtral-8x7b", input_tokens=100, output_tokens=50)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        turn_timeout_seconds=1.0,
        turn_max_retries=1,
        summary_timeout_seconds=1.0,
        redis_rate_limit_enabled=False,
        redis_publish_enabled=False,
        openrouter_api_key="test-key",
        default_model="mistralai/mixtral-8x7b-instruct",
    )


@pytest.fixture
def completion() -> FakeCompletion:
    return FakeCompletion()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def meter(store: MemoryStore, clock: FixedClock) -> UsageMeter:
    return UsageMeter(store, clock=clock)


@pytest.fixture
def calculator(store: MemoryStore, meter: UsageMeter, clock: FixedClock) -> CostCalculator:
    return CostCalculator(store, meter=meter, clock=clock)


@pytest.fixture
def billing(store: MemoryStore, meter: UsageMeter, clock: FixedClock) -> BillingEngine:
    return BillingEngine(store, meter, clock=clock)
