# pyright: reportUnusedFunction=false
import os
import sys
import tempfile
from collections.abc import Iterator
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Settings are read at import time, so the test database must be chosen first.
_TMP_DIR = tempfile.mkdtemp(prefix="deepsearch-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{Path(_TMP_DIR) / 'test.db'}")
os.environ.setdefault("OPENAI_MODE", "fake")
os.environ.setdefault("AUTH_ACCESS_TOKEN_SECRET", "test-secret")


class FakeRedisError(ConnectionError):
    pass


class _FakePipeline:
    def __init__(self, owner: "FakeRedis"):
        self._owner: FakeRedis = owner
        self._ops: list[tuple[str, str, int]] = []

    def incr(self, name: str, amount: int = 1) -> "_FakePipeline":
        self._ops.append(("incr", name, amount))
        return self

    def expire(self, name: str, time: int) -> "_FakePipeline":
        self._ops.append(("expire", name, time))
        return self

    async def execute(self) -> list[object]:
        self._owner.check()
        out: list[object] = []
        for op, name, arg in self._ops:
            if op == "incr":
                value = int(self._owner.data.get(name, "0")) + arg
                self._owner.data[name] = str(value)
                out.append(value)
            else:
                self._owner.ttls[name] = arg
                out.append(True)
        self._ops = []
        return out


class FakeRedis:
    """In-memory stand-in for the slice of redis.asyncio the store adapter uses."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.fail: bool = False

    def check(self) -> None:
        if self.fail:
            raise FakeRedisError("redis is down")

    async def get(self, name: str) -> object:
        self.check()
        return self.data.get(name)

    async def set(self, name: str, value: str, ex: int | None = None) -> object:
        self.check()
        self.data[name] = value
        if ex is not None:
            self.ttls[name] = ex
        return True

    def pipeline(self, transaction: bool = True) -> _FakePipeline:
        _ = transaction
        return _FakePipeline(self)

    async def ping(self) -> object:
        self.check()
        return True


def _ensure_test_schema() -> None:
    from deepsearch.db.base import Base
    from deepsearch.db.session import engine

    Base.metadata.create_all(bind=engine)


_ensure_test_schema()


@pytest.fixture(autouse=True)
def _isolate_db() -> None:
    from deepsearch.db.base import Base
    from deepsearch.db.session import engine

    tables = list(Base.metadata.sorted_tables)
    if not tables:
        return

    with engine.begin() as conn:
        for t in reversed(tables):
            _ = conn.execute(t.delete())


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def store(fake_redis: FakeRedis):
    from deepsearch.services.redis_store import RedisStore

    return RedisStore(fake_redis)


@pytest.fixture
def restore_settings() -> Iterator[None]:
    from deepsearch.core.config import settings

    snapshot = settings.model_dump()
    try:
        yield
    finally:
        for k, v in snapshot.items():
            setattr(settings, k, v)
