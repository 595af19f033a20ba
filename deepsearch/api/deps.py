# pyright: reportMissingImports=false
# pyright: reportCallInDefaultInitializer=false
from __future__ import annotations

from functools import lru_cache
from typing import NoReturn

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from deepsearch.core.config import settings
from deepsearch.core.security import resolve_session
from deepsearch.db.session import SessionLocal
from deepsearch.services.chat_pipeline import ChatPipeline
from deepsearch.services.chat_service import ChatService, build_chat_service
from deepsearch.services.rate_limit import FixedWindowRateLimiter, RateLimitConfig
from deepsearch.services.redis_store import get_redis_store


_bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str = "Unauthorized") -> NoReturn:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def require_user_id(
    creds: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> str:
    """Same session rules as the chat pipeline: 401 without a valid token, 400 without a subject."""
    authorization = f"{creds.scheme} {creds.credentials}" if creds is not None else None
    session = resolve_session(authorization, secret=settings.auth_access_token_secret)
    if session is None:
        _unauthorized()
    if not session.user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User ID not found")
    return session.user_id


@lru_cache
def get_chat_service() -> ChatService:
    return build_chat_service(settings)


def _provider_limiter() -> FixedWindowRateLimiter | None:
    if not settings.global_rate_limit_enabled:
        return None
    return FixedWindowRateLimiter(
        get_redis_store(),
        RateLimitConfig(
            max_requests=settings.global_rate_limit_max_requests,
            window_ms=settings.global_rate_limit_window_ms,
            max_retries=settings.global_rate_limit_max_retries,
        ),
        fail_open=settings.global_rate_limit_fail_open,
    )


def get_chat_pipeline() -> ChatPipeline:
    return ChatPipeline(
        settings=settings,
        session_factory=SessionLocal,
        chat_service=get_chat_service(),
        provider_limiter=_provider_limiter(),
    )
