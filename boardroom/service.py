"""
Composition root.

``Services`` is built once per process and owns the store, the metering and
billing engines, the completion client and the optional Redis connection.
``start_debate`` is the single entry point for running a debate on behalf of
a user.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .billing import BillingEngine
from .completion import OpenRouterClient, TextCompletion
from .config import Settings, get_settings
from .costs import CostCalculator
from .db import SqlStore, create_engine, create_session_factory, init_db
from .errors import RateLimitExceededError, UsageLimitExceededError
from .events import DebateEvent, EventEmitter, RedisEventPublisher
from .metering import TranscriptRecorder, UsageRecorder
from .periods import Clock, utc_now
from .rate_limit import DebateRateLimiter
from .redis_client import create_redis_client
from .scheduler import DebateConfig, DebateScheduler
from .store import ConversationRecord, Store
from .stream import open_debate_stream
from .summary import DebateSummarizer
from .tiers import SubscriptionTier, is_model_available
from .usage import UsageAction, UsageMeter

if TYPE_CHECKING:
    from redis.asyncio import Redis
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)


@dataclass
class DebateSession:
    """A started debate: the scheduler for pause/cancel and its event stream."""

    conversation: ConversationRecord
    scheduler: DebateScheduler
    events: AsyncIterator[DebateEvent]

    @property
    def debate_id(self) -> str:
        return self.scheduler.state.id


class Services:
    def __init__(
        self,
        settings: Settings,
        store: Store,
        completion: TextCompletion,
        *,
        redis: Redis | None = None,
        engine: AsyncEngine | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.settings = settings
        self.store = store
        self.completion = completion
        self.redis = redis
        self.engine = engine
        self.clock = clock

        self.meter = UsageMeter(store, clock=clock)
        self.calculator = CostCalculator(store, meter=self.meter, clock=clock)
        self.billing = BillingEngine(
            store,
            self.meter,
            tax_rate=settings.tax_rate,
            currency=settings.currency,
            clock=clock,
        )
        self.summarizer = DebateSummarizer(completion, timeout_seconds=settings.summary_timeout_seconds)
        self.rate_limiter = DebateRateLimiter(
            redis,
            limit=settings.debate_rate_limit,
            window_seconds=settings.debate_rate_window_seconds,
            enabled=settings.redis_rate_limit_enabled,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        store: Store | None = None,
        completion: TextCompletion | None = None,
    ) -> Services:
        settings = settings or get_settings()

        engine = None
        if store is None:
            engine = create_engine(settings)
            store = SqlStore(create_session_factory(engine))

        if completion is None:
            completion = OpenRouterClient(
                api_key=settings.openrouter_api_key,
                base_url=settings.openrouter_base_url,
                default_model=settings.default_model,
                referer=settings.openrouter_referer,
                title=settings.openrouter_title,
                temperature=settings.temperature,
                max_tokens=settings.max_tokens,
            )

        redis = None
        if settings.redis_rate_limit_enabled or settings.redis_publish_enabled:
            redis = create_redis_client(settings.redis_url)

        return cls(settings, store, completion, redis=redis, engine=engine)

    async def init_db(self) -> None:
        if self.engine is None:
            raise RuntimeError("No database engine configured")
        await init_db(self.engine)

    async def start_debate(
        self,
        user_id: str,
        tier: SubscriptionTier | str,
        config: DebateConfig,
        *,
        include_summary: bool = True,
    ) -> DebateSession:
        """Validate, authorise and start a debate.

        Raises ``DebateConfigError``, ``RateLimitExceededError`` or
        ``UsageLimitExceededError`` before any event is produced.
        """
        tier = SubscriptionTier(tier)
        emitter = EventEmitter()
        scheduler = DebateScheduler(
            self.completion, emitter=emitter, settings=self.settings, clock=self.clock
        )
        state = scheduler.prepare(config)

        if not await self.rate_limiter.acquire(user_id):
            raise RateLimitExceededError(
                f"Too many debates started; limit is {self.settings.debate_rate_limit} "
                f"per {self.settings.debate_rate_window_seconds}s"
            )

        enforcement = await self.meter.enforce_limit(
            user_id,
            tier,
            UsageAction.DEBATE,
            rounds=state.max_rounds,
            personas=len(state.personas),
        )
        if not enforcement.allowed:
            raise UsageLimitExceededError(
                f"Debate blocked by the {tier} tier limits", enforcement.violation
            )

        if not is_model_available(tier, state.model):
            raise UsageLimitExceededError(f"Model {state.model} is not available on the {tier} tier")

        now = self.clock()
        conversation = await self.store.create_conversation(
            ConversationRecord(
                user_id=user_id,
                title=state.topic[:255],
                created_at=now,
                updated_at=now,
                config={
                    "debate_id": state.id,
                    "mode": state.mode.value,
                    "personas": [p.name for p in state.personas],
                    "max_rounds": state.max_rounds,
                    "model": state.model,
                },
            )
        )

        emitter.on_event(UsageRecorder(self.meter, self.calculator, user_id=user_id, tier=tier))
        emitter.on_event(TranscriptRecorder(self.store, conversation.id, clock=self.clock))
        if self.settings.redis_publish_enabled and self.redis is not None:
            emitter.on_event(RedisEventPublisher(self.redis))

        logger.info(
            "Starting debate %s for %s (%s, %d personas, %d rounds)",
            state.id,
            user_id,
            state.mode.value,
            len(state.personas),
            state.max_rounds,
        )
        events = open_debate_stream(
            scheduler, summarizer=self.summarizer, include_summary=include_summary
        )
        return DebateSession(conversation=conversation, scheduler=scheduler, events=events)

    async def aclose(self) -> None:
        await self.completion.aclose()
        await self.store.close()
        if self.redis is not None:
            await self.redis.aclose()
        if self.engine is not None:
            await self.engine.dispose()
