from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, TypeVar, cast

import redis.asyncio as redis_async

from deepsearch.core.config import settings
from deepsearch.core.errors import StoreError


logger = logging.getLogger(__name__)

T = TypeVar("T")


class _AsyncPipeline(Protocol):
    def incr(self, name: str, amount: int = 1) -> object: ...

    def expire(self, name: str, time: int) -> object: ...

    async def execute(self) -> list[object]: ...


class AsyncKV(Protocol):
    """The slice of ``redis.asyncio.Redis`` this service relies on."""

    async def get(self, name: str) -> object: ...

    async def set(self, name: str, value: str, ex: int | None = None) -> object: ...

    def pipeline(self, transaction: bool = True) -> _AsyncPipeline: ...

    async def ping(self) -> object: ...


class RedisStore:
    def __init__(self, client: AsyncKV):
        self._client: AsyncKV = client

    @property
    def client(self) -> AsyncKV:
        return self._client

    async def use(self, fn: Callable[[AsyncKV], T | Awaitable[T]]) -> T:
        """Run ``fn`` against the client; backend failures surface as StoreError."""
        try:
            out = fn(self._client)
            if inspect.isawaitable(out):
                return await cast(Awaitable[T], out)
            return cast(T, out)
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"Redis operation failed: {type(e).__name__}") from e

    async def get_int(self, key: str) -> int:
        raw = await self.use(lambda c: c.get(key))
        if raw is None:
            return 0
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            return int(cast(str | int, raw))
        except (TypeError, ValueError):
            logger.warning("non-integer counter value at %s", key)
            return 0

    async def incr_with_expiry(self, key: str, ttl_seconds: int) -> int:
        """Atomically INCR then EXPIRE in one MULTI block; returns the new count."""

        async def _run(c: AsyncKV) -> list[object]:
            pipe = c.pipeline(transaction=True)
            _ = pipe.incr(key)
            _ = pipe.expire(key, max(1, int(ttl_seconds)))
            return await pipe.execute()

        results = await self.use(_run)
        if not results:
            raise StoreError("Redis pipeline returned no results")
        count = results[0]
        if not isinstance(count, int):
            raise StoreError("Redis INCR returned a non-integer")
        return count

    async def ping(self) -> bool:
        return bool(await self.use(lambda c: c.ping()))

    async def get_json(self, key: str) -> Any | None:
        raw = await self.use(lambda c: c.get(key))
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            return json.loads(cast(str, raw))
        except Exception:
            logger.warning("discarding undecodable cache entry at %s", key)
            return None

    async def set_json(self, key: str, value: object, *, ttl_seconds: int) -> None:
        payload = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
        _ = await self.use(lambda c: c.set(key, payload, ex=max(1, int(ttl_seconds))))


_store: RedisStore | None = None


def get_redis_store() -> RedisStore:
    global _store
    if _store is None:
        client = redis_async.Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=1.0,
            socket_timeout=2.0,
            health_check_interval=30,
        )
        _store = RedisStore(cast(AsyncKV, cast(object, client)))
    return _store


async def close_redis_store() -> None:
    global _store
    if _store is None:
        return
    client = _store.client
    _store = None
    try:
        await client.aclose()  # type: ignore[attr-defined]
    except Exception:
        logger.debug("redis client close failed", exc_info=True)
