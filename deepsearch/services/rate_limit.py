from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import time
from dataclasses import dataclass

from deepsearch.core.errors import StoreError
from deepsearch.services.redis_store import RedisStore


logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _safe_subject(raw: str) -> str:
    s = raw.strip() or "global"
    if len(s) <= 200:
        return s
    digest = hashlib.sha256(s.encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


def window_start_ms(now_ms: int, window_ms: int) -> int:
    return (now_ms // window_ms) * window_ms


def rate_limit_key(subject_key: str, window_start: int) -> str:
    return f"rate_limit:{_safe_subject(subject_key)}:{window_start}"


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int
    window_ms: int
    max_retries: int = 0


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: int
    total_hits: int
    retry_after: int

    @property
    def retry_after_seconds(self) -> int:
        return int(math.ceil(self.retry_after / 1000.0))


def _result(*, count: int, allowed: bool, max_requests: int, window_start: int, window_ms: int, now_ms: int) -> RateLimitResult:
    reset_time = window_start + window_ms
    return RateLimitResult(
        allowed=allowed,
        remaining=max(0, max_requests - count),
        reset_time=reset_time,
        total_hits=count,
        retry_after=max(0, reset_time - now_ms),
    )


async def check_rate_limit(
    store: RedisStore,
    subject_key: str,
    *,
    max_requests: int,
    window_ms: int,
    now_ms: int | None = None,
) -> RateLimitResult:
    """Read-only view of the current window; does not count as a hit."""
    if window_ms <= 0:
        raise ValueError("window_ms must be > 0")
    now = _now_ms() if now_ms is None else now_ms
    start = window_start_ms(now, window_ms)
    count = await store.get_int(rate_limit_key(subject_key, start))
    return _result(
        count=count,
        allowed=count < max_requests,
        max_requests=max_requests,
        window_start=start,
        window_ms=window_ms,
        now_ms=now,
    )


async def record_rate_limit(
    store: RedisStore,
    subject_key: str,
    config: RateLimitConfig,
    *,
    now_ms: int | None = None,
) -> RateLimitResult:
    """Count one hit in the current window.

    The counter is bumped with an atomic INCR and the admission decision is
    taken from the post-increment value, so concurrent callers cannot both
    pass on a stale read.
    """
    if config.window_ms <= 0:
        raise ValueError("window_ms must be > 0")
    now = _now_ms() if now_ms is None else now_ms
    start = window_start_ms(now, config.window_ms)
    ttl_s = int(math.ceil(config.window_ms / 1000.0))
    count = await store.incr_with_expiry(rate_limit_key(subject_key, start), ttl_s)
    return _result(
        count=count,
        allowed=count <= config.max_requests,
        max_requests=config.max_requests,
        window_start=start,
        window_ms=config.window_ms,
        now_ms=now,
    )


class FixedWindowRateLimiter:
    def __init__(
        self,
        store: RedisStore,
        config: RateLimitConfig,
        *,
        enabled: bool = True,
        fail_open: bool = True,
    ):
        self._store: RedisStore = store
        self._config: RateLimitConfig = config
        self._enabled: bool = bool(enabled)
        self._fail_open: bool = bool(fail_open)

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    async def check(self, subject_key: str) -> RateLimitResult:
        return await check_rate_limit(
            self._store,
            subject_key,
            max_requests=self._config.max_requests,
            window_ms=self._config.window_ms,
        )

    async def acquire(self, subject_key: str = "global") -> RateLimitResult | None:
        """Take a slot, waiting out the window up to ``max_retries`` times.

        Returns None when the limiter is disabled or the store failed and the
        limiter is configured to fail open.
        """
        if not self._enabled or self._config.max_requests <= 0:
            return None

        attempts = max(0, int(self._config.max_retries)) + 1
        result: RateLimitResult | None = None
        for attempt in range(attempts):
            try:
                result = await record_rate_limit(self._store, subject_key, self._config)
            except StoreError:
                if self._fail_open:
                    logger.warning("rate limit store unavailable; admitting %s", subject_key)
                    return None
                raise
            if result.allowed:
                return result
            if attempt + 1 < attempts:
                logger.info(
                    "rate limit hit for %s (hits=%d), retrying in %dms",
                    subject_key,
                    result.total_hits,
                    result.retry_after,
                )
                await asyncio.sleep(result.retry_after / 1000.0)
        return result


def daily_quota_exceeded(*, count: int, limit: int, is_admin: bool) -> bool:
    if is_admin:
        return False
    return count >= limit
