from __future__ import annotations

# pyright: reportUnusedFunction=false

import asyncio
import os
import time
from typing import Literal

from fastapi import APIRouter
from pydantic import BaseModel, Field
from sqlalchemy import text

from deepsearch.db.session import engine
from deepsearch.services.redis_store import get_redis_store

router = APIRouter(tags=["health"])


class DependencyStatus(BaseModel):
    status: Literal["ok", "error"]
    latency_ms: int | None = None
    detail: str | None = Field(default=None, description="Short hint, never secrets")


class HealthDependencies(BaseModel):
    db: DependencyStatus
    redis: DependencyStatus


class HealthResponse(BaseModel):
    status: Literal["ok", "degraded"] = Field(
        description="ok only when every dependency is ok"
    )
    dependencies: HealthDependencies


_DEFAULT_TIMEOUT_S = 0.5


def _safe_exc_detail(exc: BaseException) -> str:
    return type(exc).__name__


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _check_db() -> DependencyStatus:
    start = time.perf_counter()
    try:
        with engine.connect() as conn:
            _ = conn.execute(text("SELECT 1")).scalar_one()
    except Exception as exc:
        return DependencyStatus(status="error", latency_ms=_elapsed_ms(start), detail=_safe_exc_detail(exc))
    return DependencyStatus(status="ok", latency_ms=_elapsed_ms(start))


async def _check_redis(*, timeout_s: float) -> DependencyStatus:
    start = time.perf_counter()
    try:
        ok = await asyncio.wait_for(get_redis_store().ping(), timeout=timeout_s)
    except Exception as exc:
        return DependencyStatus(status="error", latency_ms=_elapsed_ms(start), detail=_safe_exc_detail(exc))
    if not ok:
        return DependencyStatus(status="error", latency_ms=_elapsed_ms(start), detail="unexpected_response")
    return DependencyStatus(status="ok", latency_ms=_elapsed_ms(start))


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    timeout_s = float(os.getenv("HEALTH_TIMEOUT_S", str(_DEFAULT_TIMEOUT_S)))

    try:
        db = await asyncio.wait_for(asyncio.to_thread(_check_db), timeout=timeout_s)
    except TimeoutError as exc:
        db = DependencyStatus(status="error", detail=_safe_exc_detail(exc))
    redis = await _check_redis(timeout_s=timeout_s)

    dependencies = HealthDependencies(db=db, redis=redis)
    overall_ok = all(d.status == "ok" for d in [dependencies.db, dependencies.redis])
    status: Literal["ok", "degraded"] = "ok" if overall_ok else "degraded"
    return HealthResponse(status=status, dependencies=dependencies)
