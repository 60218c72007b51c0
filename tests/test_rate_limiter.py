import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from bookflow.infra.security import InMemoryRateLimiter, RedisRateLimiter


class FakePipeline:
    def __init__(self, redis: "FakeRedis") -> None:
        self.redis = redis
        self.commands: list[tuple[str, tuple]] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def incr(self, key: str):
        self.commands.append(("incr", (key,)))

    def expire(self, key: str, seconds: int):
        self.commands.append(("expire", (key, seconds)))

    async def execute(self):
        if self.redis.broken:
            raise RedisConnectionError("redis down")
        results = []
        for name, args in self.commands:
            if name == "incr":
                self.redis.counters[args[0]] = self.redis.counters.get(args[0], 0) + 1
                results.append(self.redis.counters[args[0]])
            else:
                self.redis.ttls[args[0]] = args[1]
                results.append(True)
        return results


class FakeRedis:
    def __init__(self, broken: bool = False) -> None:
        self.counters: dict[str, int] = {}
        self.ttls: dict[str, int] = {}
        self.broken = broken
        self.closed = False

    def pipeline(self, transaction: bool = True):  # noqa: ARG002
        return FakePipeline(self)

    async def scan_iter(self, match: str | None = None, count: int | None = None):  # noqa: ARG002
        for key in list(self.counters):
            yield key

    async def delete(self, *keys: str):
        for key in keys:
            self.counters.pop(key, None)

    async def aclose(self):
        self.closed = True


@pytest.mark.anyio
async def test_inmemory_rate_limiter_blocks_after_limit():
    limiter = InMemoryRateLimiter(requests_per_minute=2, cleanup_minutes=1)

    assert await limiter.allow("client-1")
    assert await limiter.allow("client-1")
    assert not await limiter.allow("client-1")
    assert await limiter.allow("client-2")

    await limiter.reset()
    assert await limiter.allow("client-1")


@pytest.mark.anyio
async def test_redis_rate_limiter_blocks_after_limit():
    fake_redis = FakeRedis()
    limiter = RedisRateLimiter("redis://localhost:6379/0", requests_per_minute=1, redis_client=fake_redis)

    assert await limiter.allow("client-3")
    assert not await limiter.allow("client-3")
    assert all(ttl == 61 for ttl in fake_redis.ttls.values())

    await limiter.reset()
    assert fake_redis.counters == {}
    await limiter.close()
    assert fake_redis.closed


@pytest.mark.anyio
async def test_redis_rate_limiter_fails_open():
    limiter = RedisRateLimiter(
        "redis://localhost:6379/0",
        requests_per_minute=1,
        redis_client=FakeRedis(broken=True),
    )

    assert await limiter.allow("client-4")
    assert await limiter.allow("client-4")


def test_booking_routes_are_rate_limited(client):
    limiter = client.app.state.rate_limiter
    original = limiter.requests_per_minute
    limiter.requests_per_minute = 1
    try:
        first = client.get("/bookings/unknown")
        second = client.get("/bookings/unknown")
        health = client.get("/healthz")
    finally:
        limiter.requests_per_minute = original

    assert first.status_code == 404
    assert second.status_code == 429
    assert second.headers["Retry-After"] == "60"
    assert second.json()["retryable"] is True
    assert health.status_code == 200
