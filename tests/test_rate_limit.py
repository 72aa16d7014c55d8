import pytest

from boardroom.rate_limit import DebateRateLimiter, rate_limit_key


class CountingRedis:
    """Applies the fixed-window script semantics to an in-memory counter."""

    def __init__(self) -> None:
        self.counts: dict[str, int] = {}
        self.scripts: list[str] = []

    async def eval(self, script, numkeys, key, limit, window):
        self.scripts.append(script)
        self.counts[key] = self.counts.get(key, 0) + 1
        return 0 if self.counts[key] > int(limit) else 1


class BrokenRedis:
    async def eval(self, *args):
        raise ConnectionError("redis is down")


def test_key_layout() -> None:
    assert rate_limit_key("debate", "u1", 42) == "ratelimit:debate:u1:42"


@pytest.mark.asyncio
async def test_limit_applies_per_user() -> None:
    redis = CountingRedis()
    limiter = DebateRateLimiter(redis, limit=2, window_seconds=60)

    assert await limiter.acquire("u1") is True
    assert await limiter.acquire("u1") is True
    assert await limiter.acquire("u1") is False
    assert await limiter.acquire("u2") is True
    assert "INCR" in redis.scripts[0]
    assert all(key.startswith("ratelimit:debate:") for key in redis.counts)


@pytest.mark.asyncio
async def test_fails_open_when_redis_errors() -> None:
    limiter = DebateRateLimiter(BrokenRedis(), limit=1)
    assert await limiter.acquire("u1") is True
    assert await limiter.acquire("u1") is True


@pytest.mark.asyncio
@pytest.mark.parametrize("limiter", [DebateRateLimiter(None), DebateRateLimiter(CountingRedis(), limit=0, enabled=False)])
async def test_disabled_limiter_admits_everything(limiter: DebateRateLimiter) -> None:
    assert await limiter.acquire("u1") is True
