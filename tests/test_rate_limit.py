from __future__ import annotations

import asyncio

import pytest
from _pytest.monkeypatch import MonkeyPatch

import deepsearch.services.rate_limit as rate_limit
from deepsearch.core.errors import StoreError
from deepsearch.services.rate_limit import (
    FixedWindowRateLimiter,
    RateLimitConfig,
    check_rate_limit,
    daily_quota_exceeded,
    rate_limit_key,
    record_rate_limit,
    window_start_ms,
)
from deepsearch.services.redis_store import RedisStore

from conftest import FakeRedis


WINDOW_MS = 60_000


def test_window_start_and_key() -> None:
    assert window_start_ms(125_000, WINDOW_MS) == 120_000
    assert rate_limit_key("model-provider", 120_000) == "rate_limit:model-provider:120000"
    assert rate_limit_key("  ", 0) == "rate_limit:global:0"
    assert rate_limit_key("x" * 300, 0).startswith("rate_limit:sha256:")


def test_boundary_then_next_window(store: RedisStore) -> None:
    config = RateLimitConfig(max_requests=3, window_ms=WINDOW_MS)
    now = 1_000_000

    async def _run() -> None:
        for i in range(3):
            r = await record_rate_limit(store, "u", config, now_ms=now + i)
            assert r.allowed
            assert r.remaining == 3 - (i + 1)

        blocked = await check_rate_limit(store, "u", max_requests=3, window_ms=WINDOW_MS, now_ms=now + 10)
        assert not blocked.allowed
        assert blocked.remaining == 0
        assert blocked.total_hits == 3

        later = blocked.reset_time
        fresh = await record_rate_limit(store, "u", config, now_ms=later)
        assert fresh.allowed
        assert fresh.remaining == 2
        assert fresh.total_hits == 1

    asyncio.run(_run())


def test_record_sets_expiry_on_counter(fake_redis: FakeRedis, store: RedisStore) -> None:
    config = RateLimitConfig(max_requests=1, window_ms=1_500)
    r = asyncio.run(record_rate_limit(store, "s", config, now_ms=3_000))
    key = rate_limit_key("s", 3_000)
    assert fake_redis.data[key] == "1"
    assert fake_redis.ttls[key] == 2
    assert r.reset_time == 4_500
    assert r.retry_after == 1_500
    assert r.retry_after_seconds == 2


def test_hit_over_limit_is_rejected(store: RedisStore) -> None:
    config = RateLimitConfig(max_requests=1, window_ms=WINDOW_MS)

    async def _run() -> None:
        assert (await record_rate_limit(store, "u", config, now_ms=0)).allowed
        second = await record_rate_limit(store, "u", config, now_ms=1)
        assert not second.allowed
        assert second.total_hits == 2

    asyncio.run(_run())


def test_limiter_waits_for_next_window(monkeypatch: MonkeyPatch, store: RedisStore) -> None:
    clock = {"now": 10_000}
    slept: list[float] = []

    async def _fake_sleep(seconds: float) -> None:
        slept.append(seconds)
        clock["now"] += int(seconds * 1000)

    monkeypatch.setattr(rate_limit, "_now_ms", lambda: clock["now"])
    monkeypatch.setattr(rate_limit.asyncio, "sleep", _fake_sleep)

    limiter = FixedWindowRateLimiter(
        store, RateLimitConfig(max_requests=1, window_ms=WINDOW_MS, max_retries=1)
    )

    async def _run() -> None:
        first = await limiter.acquire("p")
        assert first is not None and first.allowed
        second = await limiter.acquire("p")
        assert second is not None and second.allowed

    asyncio.run(_run())
    assert slept == [50.0]


def test_limiter_gives_up_after_retries(store: RedisStore) -> None:
    limiter = FixedWindowRateLimiter(store, RateLimitConfig(max_requests=1, window_ms=WINDOW_MS))

    async def _run() -> None:
        assert (await limiter.acquire("p")) is not None
        rejected = await limiter.acquire("p")
        assert rejected is not None
        assert not rejected.allowed

    asyncio.run(_run())


def test_limiter_fails_open_when_store_is_down(fake_redis: FakeRedis) -> None:
    fake_redis.fail = True
    store = RedisStore(fake_redis)
    limiter = FixedWindowRateLimiter(store, RateLimitConfig(max_requests=1, window_ms=WINDOW_MS))
    assert asyncio.run(limiter.acquire("p")) is None

    strict = FixedWindowRateLimiter(
        store, RateLimitConfig(max_requests=1, window_ms=WINDOW_MS), fail_open=False
    )
    with pytest.raises(StoreError):
        _ = asyncio.run(strict.acquire("p"))


def test_disabled_limiter_admits_without_touching_store(fake_redis: FakeRedis) -> None:
    limiter = FixedWindowRateLimiter(
        RedisStore(fake_redis), RateLimitConfig(max_requests=1, window_ms=WINDOW_MS), enabled=False
    )
    assert asyncio.run(limiter.acquire()) is None
    assert fake_redis.data == {}


def test_daily_quota_exceeded() -> None:
    assert daily_quota_exceeded(count=5, limit=5, is_admin=False)
    assert not daily_quota_exceeded(count=4, limit=5, is_admin=False)
    assert not daily_quota_exceeded(count=500, limit=5, is_admin=True)
