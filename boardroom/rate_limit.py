"""Redis-backed per-user debate rate limiting."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

_RATE_LIMIT_LUA: str | None = None
_LUA_PATH: Final[Path] = Path(__file__).with_name("lua") / "rate_limit.lua"


def _load_lua() -> str:
    global _RATE_LIMIT_LUA
    if _RATE_LIMIT_LUA is None:
        _RATE_LIMIT_LUA = _LUA_PATH.read_text()
    return _RATE_LIMIT_LUA


def rate_limit_key(scope: str, user_id: str, bucket: int) -> str:
    return f"ratelimit:{scope}:{user_id}:{bucket}"


class DebateRateLimiter:
    """Fixed-window limit on debates started per user.

    Admits every request when disabled or when Redis cannot be reached.
    """

    def __init__(
        self,
        redis: Redis | None,
        *,
        limit: int = 10,
        window_seconds: int = 60,
        enabled: bool = True,
        scope: str = "debate",
    ) -> None:
        self._redis = redis
        self._limit = limit
        self._window = window_seconds
        self._enabled = enabled and redis is not None
        self._scope = scope

    async def acquire(self, user_id: str) -> bool:
        """Take one slot for ``user_id``. Returns True if allowed."""
        if not self._enabled:
            return True

        bucket = int(time.time() // self._window)
        key = rate_limit_key(self._scope, user_id, bucket)
        try:
            result = await self._redis.eval(_load_lua(), 1, key, self._limit, self._window)
        except Exception as exc:
            # If Redis is unavailable, do not block debates.
            logger.warning("Rate limit check failed, allowing request: %s", exc)
            return True
        return int(result) == 1
