from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import NoReturn

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from sqlalchemy.orm import Session

from deepsearch.core.config import Settings
from deepsearch.core.errors import (
    ChatPipelineError,
    ChatServiceError,
    MissingUserId,
    ParseRequestError,
    SaveChatError,
    TooManyRequests,
    Unauthorized,
    UserNotFound,
)
from deepsearch.core.security import resolve_session
from deepsearch.db.queries import (
    get_daily_request_count,
    get_user_by_id,
    reserve_daily_request,
    upsert_chat,
)
from deepsearch.metrics.prometheus import record_quota_rejection
from deepsearch.services.chat_service import ChatService, append_response_messages
from deepsearch.services.chat_types import FinishEvent, StreamPart, UIMessage
from deepsearch.services.data_stream import encode_error, encode_new_chat_created, encode_part
from deepsearch.services.rate_limit import FixedWindowRateLimiter, daily_quota_exceeded


logger = logging.getLogger(__name__)

DEFAULT_CHAT_TITLE = "New Chat"
CHAT_TITLE_MAX_CHARS = 50
PROVIDER_RATE_LIMIT_SUBJECT = "model-provider"

_STREAM_ERROR_MESSAGE = "Oops, an error occurred!"


class ChatRequestBody(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    messages: list[UIMessage] = Field(min_length=1)
    chat_id: str | None = Field(default=None, alias="chatId", max_length=255)
    is_new_chat: bool | None = Field(default=None, alias="isNewChat")

    @field_validator("chat_id")
    @classmethod
    def _blank_chat_id_is_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None


def derive_chat_title(messages: Sequence[UIMessage]) -> str:
    for m in messages:
        if m.role == "user":
            return m.text()[:CHAT_TITLE_MAX_CHARS] or DEFAULT_CHAT_TITLE
    return DEFAULT_CHAT_TITLE


def parse_chat_request(raw: object) -> ChatRequestBody:
    try:
        return ChatRequestBody.model_validate(raw)
    except ValidationError as e:
        raise ParseRequestError(f"invalid chat request: {e.error_count()} validation error(s)") from e


@dataclass
class PreparedChat:
    """Everything decided before the first byte is streamed."""

    user_id: str
    chat_id: str
    is_new_chat: bool
    title: str
    messages: list[UIMessage]
    parts: AsyncIterator[StreamPart]
    stop: asyncio.Event = field(default_factory=asyncio.Event)


SessionFactory = Callable[[], Session]
BodyReader = Callable[[], Awaitable[object]]


class ChatPipeline:
    """authenticate -> load user -> quota -> reserve request -> parse body
    -> initial snapshot -> orchestration -> stream -> final snapshot.

    ``prepare`` raises a ChatPipelineError subclass for anything that goes
    wrong before streaming; ``stream`` reports later failures in-band.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: SessionFactory,
        chat_service: ChatService,
        provider_limiter: FixedWindowRateLimiter | None = None,
        new_chat_id: Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        self._settings: Settings = settings
        self._session_factory: SessionFactory = session_factory
        self._chat_service: ChatService = chat_service
        self._provider_limiter: FixedWindowRateLimiter | None = provider_limiter
        self._new_chat_id: Callable[[], str] = new_chat_id

    def _authenticate(self, authorization: str | None) -> str:
        session = resolve_session(authorization, secret=self._settings.auth_access_token_secret)
        if session is None:
            raise Unauthorized()
        if not session.user_id:
            raise MissingUserId()
        return session.user_id

    def _load_user_and_check_quota(self, user_id: str) -> bool:
        """Reject early when today's quota is already used up; returns is_admin."""
        with self._session_factory() as db:
            user = get_user_by_id(db, user_id)
            if user is None:
                raise UserNotFound()
            if user.is_admin:
                return True
            count = get_daily_request_count(db, user_id)
        limit = int(self._settings.daily_request_limit)
        if daily_quota_exceeded(count=count, limit=limit, is_admin=False):
            self._reject_daily(user_id, limit)
        return False

    def _reserve_request(self, user_id: str, *, is_admin: bool) -> None:
        limit = None if is_admin else int(self._settings.daily_request_limit)
        with self._session_factory() as db:
            reserved = reserve_daily_request(db, user_id, limit=limit)
        if not reserved:
            self._reject_daily(user_id, int(self._settings.daily_request_limit))

    def _reject_daily(self, user_id: str, limit: int) -> NoReturn:
        record_quota_rejection("daily")
        logger.info("daily quota exhausted user_id=%s limit=%d", user_id, limit)
        raise TooManyRequests()

    def _save_chat(
        self, *, user_id: str, chat_id: str, title: str, messages: Sequence[UIMessage]
    ) -> None:
        try:
            with self._session_factory() as db:
                _ = upsert_chat(
                    db, user_id=user_id, chat_id=chat_id, title=title, messages=messages
                )
        except SaveChatError:
            raise
        except Exception as e:
            raise SaveChatError(f"failed to save chat {chat_id}: {type(e).__name__}") from e

    async def _acquire_provider_slot(self) -> None:
        if self._provider_limiter is None:
            return
        result = await self._provider_limiter.acquire(PROVIDER_RATE_LIMIT_SUBJECT)
        if result is not None and not result.allowed:
            record_quota_rejection("provider")
            raise TooManyRequests(retry_after_seconds=result.retry_after_seconds)

    async def prepare(
        self,
        *,
        authorization: str | None,
        read_body: BodyReader,
        trace_id: str | None = None,
    ) -> PreparedChat:
        user_id = self._authenticate(authorization)
        is_admin = await asyncio.to_thread(self._load_user_and_check_quota, user_id)
        await self._acquire_provider_slot()

        # Count and insert share one transaction so concurrent requests cannot
        # overshoot the quota. Committed on its own; a later failure still counts.
        await asyncio.to_thread(self._reserve_request, user_id, is_admin=is_admin)

        try:
            raw = await read_body()
        except Exception as e:
            raise ParseRequestError("request body is not valid JSON") from e
        body = parse_chat_request(raw)

        is_new_chat = body.chat_id is None or bool(body.is_new_chat)
        chat_id = body.chat_id or self._new_chat_id()
        title = derive_chat_title(body.messages)
        messages = list(body.messages)

        # Saved before the model runs so the chat exists even if the stream breaks.
        await asyncio.to_thread(
            self._save_chat, user_id=user_id, chat_id=chat_id, title=title, messages=messages
        )
        logger.info("chat %s saved (new=%s, messages=%d)", chat_id, is_new_chat, len(messages))

        async def _on_finish(event: FinishEvent) -> None:
            updated = append_response_messages(messages, event.response_messages)
            await asyncio.to_thread(
                self._save_chat, user_id=user_id, chat_id=chat_id, title=title, messages=updated
            )
            logger.info(
                "chat %s finished reason=%s prompt_tokens=%s completion_tokens=%s",
                chat_id,
                event.finish_reason,
                event.usage.prompt_tokens,
                event.usage.completion_tokens,
            )

        stop = asyncio.Event()
        try:
            parts = self._chat_service.stream_text(
                messages, trace_id=trace_id or chat_id, on_finish=_on_finish, stop=stop
            )
        except ChatPipelineError:
            raise
        except Exception as e:
            raise ChatServiceError(f"failed to start chat stream: {type(e).__name__}") from e

        return PreparedChat(
            user_id=user_id,
            chat_id=chat_id,
            is_new_chat=is_new_chat,
            title=title,
            messages=messages,
            parts=parts,
            stop=stop,
        )

    async def stream(self, prepared: PreparedChat) -> AsyncIterator[str]:
        if prepared.is_new_chat:
            yield encode_new_chat_created(prepared.chat_id)

        try:
            async for part in prepared.parts:
                yield encode_part(part)
        except asyncio.CancelledError:
            # Client went away: stop the model and any pending tool calls.
            prepared.stop.set()
            logger.info("chat %s stream cancelled by client", prepared.chat_id)
            raise
        except ChatPipelineError as e:
            logger.error("chat %s stream failed [%s]: %s", prepared.chat_id, e.tag, e.message)
            yield encode_error(e.public_message if isinstance(e, SaveChatError) else _STREAM_ERROR_MESSAGE)
        except Exception:
            logger.exception("chat %s stream failed", prepared.chat_id)
            yield encode_error(_STREAM_ERROR_MESSAGE)
        finally:
            prepared.stop.set()
            aclose = getattr(prepared.parts, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception:
                    logger.debug("closing chat stream failed", exc_info=True)
