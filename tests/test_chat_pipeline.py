# pyright: reportMissingImports=false, reportPrivateUsage=false

from __future__ import annotations

import asyncio
import contextlib
import threading
import uuid
from collections.abc import AsyncGenerator, Iterator
from datetime import UTC, datetime
from typing import Any, cast

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select, update

from deepsearch.api.deps import get_chat_pipeline
from deepsearch.core.config import settings
from deepsearch.core.errors import TooManyRequests
from deepsearch.core.security import encode_access_token
from deepsearch.db.models import Chat, Message, Request, User
from deepsearch.db.queries import upsert_chat
from deepsearch.db.session import SessionLocal
from deepsearch.main import app
from deepsearch.services.chat_pipeline import ChatPipeline, PreparedChat, derive_chat_title
from deepsearch.services.chat_service import ChatService, ChatTools, FakeChatProvider, StepCapture
from deepsearch.services.chat_types import UIMessage
from deepsearch.services.data_stream import NEW_CHAT_CREATED, parse_data_stream
from deepsearch.services.scraper import CrawlResponse


class CountingProvider(FakeChatProvider):
    def __init__(self) -> None:
        self.calls: int = 0

    async def stream_step(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, object]] | None,
        stop: asyncio.Event,
        capture: StepCapture,
    ) -> AsyncGenerator[str, None]:
        self.calls += 1
        async for ch in super().stream_step(messages, tools=tools, stop=stop, capture=capture):
            yield ch


async def _no_search(_query: str) -> list[Any]:
    return []


async def _no_scrape(_urls: list[str]) -> CrawlResponse:
    return CrawlResponse(results=[])


def _make_pipeline(provider: CountingProvider, **kwargs: Any) -> ChatPipeline:
    service = ChatService(
        provider=provider,
        tools=ChatTools(search=_no_search, scrape=_no_scrape),
        max_steps=3,
    )
    return ChatPipeline(
        settings=settings, session_factory=SessionLocal, chat_service=service, **kwargs
    )


@contextlib.contextmanager
def _serving(pipeline: ChatPipeline) -> Iterator[None]:
    app.dependency_overrides[get_chat_pipeline] = lambda: pipeline
    try:
        yield
    finally:
        app.dependency_overrides.pop(get_chat_pipeline, None)


@pytest.fixture
def provider() -> Iterator[CountingProvider]:
    p = CountingProvider()
    app.dependency_overrides[get_chat_pipeline] = lambda: _make_pipeline(p)
    try:
        yield p
    finally:
        app.dependency_overrides.pop(get_chat_pipeline, None)


def _create_user(*, is_admin: bool = False) -> str:
    user_id = f"user-{uuid.uuid4().hex}"
    with SessionLocal() as db:
        db.add(User(id=user_id, email=f"{user_id}@example.com", is_admin=is_admin))
        db.commit()
    return user_id


def _auth(user_id: str) -> dict[str, str]:
    token = encode_access_token({"sub": user_id}, settings.auth_access_token_secret, 300)
    return {"Authorization": f"Bearer {token}"}


def _add_requests_today(user_id: str, n: int) -> None:
    now = datetime.now(UTC).replace(tzinfo=None)
    with SessionLocal() as db:
        for _ in range(n):
            db.add(Request(user_id=user_id, timestamp=now))
        db.commit()


def _request_count(user_id: str) -> int:
    with SessionLocal() as db:
        return int(
            db.execute(
                select(func.count()).select_from(Request).where(Request.user_id == user_id)
            ).scalar_one()
        )


def _hello_body(**extra: object) -> dict[str, object]:
    body: dict[str, object] = {"messages": [{"id": "m1", "role": "user", "content": "Hello"}]}
    body.update(extra)
    return body


def test_new_chat_streams_and_persists_two_messages(provider: CountingProvider) -> None:
    user_id = _create_user()
    client = TestClient(app)

    resp = client.post("/api/chat", json=_hello_body(), headers=_auth(user_id))
    assert resp.status_code == 200, resp.text
    assert resp.headers.get("x-vercel-ai-data-stream") == "v1"
    assert resp.headers.get("content-type", "").startswith("text/plain")

    lines = parse_data_stream(resp.text)
    data_events = [v for code, v in lines if code == "2"]
    assert len(data_events) == 1
    event = cast(list[dict[str, str]], data_events[0])[0]
    assert event["type"] == NEW_CHAT_CREATED
    chat_id = event["chatId"]

    assert lines[0][0] == "2"
    text = "".join(cast(str, v) for code, v in lines if code == "0")
    assert text == "AI: Hello"
    assert lines[-1][0] == "d"
    assert provider.calls == 1

    with SessionLocal() as db:
        chats = list(db.execute(select(Chat).where(Chat.user_id == user_id)).scalars())
        assert [c.id for c in chats] == [chat_id]
        assert chats[0].title == "Hello"
        messages = list(
            db.execute(
                select(Message).where(Message.chat_id == chat_id).order_by(Message.order)
            ).scalars()
        )
    assert [(m.role, m.order) for m in messages] == [("user", 0), ("assistant", 1)]
    assert messages[1].parts == [{"type": "text", "text": "AI: Hello"}]
    assert _request_count(user_id) == 1


def test_existing_chat_does_not_emit_new_chat_event(provider: CountingProvider) -> None:
    user_id = _create_user()
    chat_id = f"chat-{uuid.uuid4().hex}"
    client = TestClient(app)

    resp = client.post("/api/chat", json=_hello_body(chatId=chat_id), headers=_auth(user_id))
    assert resp.status_code == 200, resp.text
    assert [v for code, v in parse_data_stream(resp.text) if code == "2"] == []

    with SessionLocal() as db:
        chat = db.get(Chat, chat_id)
        assert chat is not None
        assert chat.user_id == user_id


def test_is_new_chat_flag_emits_event_for_client_chosen_id(provider: CountingProvider) -> None:
    user_id = _create_user()
    chat_id = f"chat-{uuid.uuid4().hex}"
    client = TestClient(app)

    resp = client.post(
        "/api/chat", json=_hello_body(chatId=chat_id, isNewChat=True), headers=_auth(user_id)
    )
    assert resp.status_code == 200, resp.text
    events = [v for code, v in parse_data_stream(resp.text) if code == "2"]
    assert events == [[{"type": NEW_CHAT_CREATED, "chatId": chat_id}]]


def test_daily_quota_exhausted_returns_429_without_recording(
    provider: CountingProvider, restore_settings: None
) -> None:
    settings.daily_request_limit = 5
    user_id = _create_user()
    _add_requests_today(user_id, 5)
    client = TestClient(app)

    resp = client.post("/api/chat", json=_hello_body(), headers=_auth(user_id))
    assert resp.status_code == 429, resp.text
    assert _request_count(user_id) == 5
    assert provider.calls == 0
    with SessionLocal() as db:
        assert db.execute(select(func.count()).select_from(Chat)).scalar_one() == 0


def test_admin_is_exempt_from_daily_quota(
    provider: CountingProvider, restore_settings: None
) -> None:
    settings.daily_request_limit = 1
    user_id = _create_user(is_admin=True)
    _add_requests_today(user_id, 3)
    client = TestClient(app)

    resp = client.post("/api/chat", json=_hello_body(), headers=_auth(user_id))
    assert resp.status_code == 200, resp.text
    assert _request_count(user_id) == 4


def test_foreign_chat_id_fails_save_and_leaves_chat_untouched(provider: CountingProvider) -> None:
    owner = _create_user()
    intruder = _create_user()
    chat_id = f"chat-{uuid.uuid4().hex}"
    original = [
        UIMessage(id="a", role="user", content="secret question"),
        UIMessage(id="b", role="assistant", content="secret answer"),
    ]
    with SessionLocal() as db:
        _ = upsert_chat(db, user_id=owner, chat_id=chat_id, title="mine", messages=original)

    client = TestClient(app)
    resp = client.post("/api/chat", json=_hello_body(chatId=chat_id), headers=_auth(intruder))
    assert resp.status_code == 500
    assert resp.text == "Failed to save chat"
    assert provider.calls == 0

    with SessionLocal() as db:
        chat = db.get(Chat, chat_id)
        assert chat is not None
        assert chat.user_id == owner
        assert chat.title == "mine"
        parts = [m.parts for m in chat.messages]
    assert parts == [
        [{"type": "text", "text": "secret question"}],
        [{"type": "text", "text": "secret answer"}],
    ]
    # The request was recorded before the save failed.
    assert _request_count(intruder) == 1


def test_missing_or_invalid_token_is_401(provider: CountingProvider) -> None:
    client = TestClient(app)
    assert client.post("/api/chat", json=_hello_body()).status_code == 401

    bad = client.post(
        "/api/chat", json=_hello_body(), headers={"Authorization": "Bearer not-a-token"}
    )
    assert bad.status_code == 401
    assert bad.text == "Unauthorized"


def test_token_without_subject_is_400(provider: CountingProvider) -> None:
    token = encode_access_token({"sub": ""}, settings.auth_access_token_secret, 300)
    client = TestClient(app)
    resp = client.post(
        "/api/chat", json=_hello_body(), headers={"Authorization": f"Bearer {token}"}
    )
    assert resp.status_code == 400
    assert resp.text == "User ID not found"


def test_unknown_user_is_404(provider: CountingProvider) -> None:
    client = TestClient(app)
    resp = client.post("/api/chat", json=_hello_body(), headers=_auth("nobody"))
    assert resp.status_code == 404
    assert resp.text == "User not found"


def test_invalid_body_is_400_and_still_counts(provider: CountingProvider) -> None:
    user_id = _create_user()
    client = TestClient(app)

    resp = client.post("/api/chat", json={"messages": []}, headers=_auth(user_id))
    assert resp.status_code == 400

    resp = client.post(
        "/api/chat",
        content=b"{not json",
        headers={**_auth(user_id), "Content-Type": "application/json"},
    )
    assert resp.status_code == 400
    assert _request_count(user_id) == 2
    assert provider.calls == 0


def test_provider_limiter_rejection_is_429_with_retry_after(store: Any) -> None:
    from deepsearch.services.rate_limit import FixedWindowRateLimiter, RateLimitConfig

    p = CountingProvider()
    limiter = FixedWindowRateLimiter(store, RateLimitConfig(max_requests=1, window_ms=60_000))
    service = ChatService(provider=p, tools=ChatTools(search=_no_search, scrape=_no_scrape))
    pipeline = ChatPipeline(
        settings=settings,
        session_factory=SessionLocal,
        chat_service=service,
        provider_limiter=limiter,
    )
    app.dependency_overrides[get_chat_pipeline] = lambda: pipeline
    try:
        user_id = _create_user()
        client = TestClient(app)
        first = client.post("/api/chat", json=_hello_body(), headers=_auth(user_id))
        assert first.status_code == 200, first.text
        second = client.post("/api/chat", json=_hello_body(), headers=_auth(user_id))
        assert second.status_code == 429
        assert int(second.headers["Retry-After"]) >= 0
    finally:
        app.dependency_overrides.pop(get_chat_pipeline, None)

    # Rejected by the provider limiter before the request was recorded.
    assert _request_count(user_id) == 1
    assert p.calls == 1


def test_concurrent_requests_cannot_overshoot_daily_quota(
    monkeypatch: pytest.MonkeyPatch, restore_settings: None
) -> None:
    settings.daily_request_limit = 5
    user_id = _create_user()
    _add_requests_today(user_id, 4)
    provider = CountingProvider()
    pipeline = _make_pipeline(provider)

    # Both requests pass the read-only quota check before either records itself.
    barrier = threading.Barrier(2, timeout=5)
    check_quota = pipeline._load_user_and_check_quota

    def _check_then_wait(uid: str) -> bool:
        is_admin = check_quota(uid)
        _ = barrier.wait()
        return is_admin

    monkeypatch.setattr(pipeline, "_load_user_and_check_quota", _check_then_wait)

    async def _body() -> object:
        return _hello_body()

    async def _attempt() -> str:
        try:
            _ = await pipeline.prepare(
                authorization=_auth(user_id)["Authorization"], read_body=_body
            )
        except TooManyRequests:
            return "rejected"
        return "accepted"

    async def _run() -> list[str]:
        return list(await asyncio.gather(_attempt(), _attempt()))

    assert sorted(asyncio.run(_run())) == ["accepted", "rejected"]
    assert _request_count(user_id) == 5


class FailingProvider(CountingProvider):
    async def stream_step(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, object]] | None,
        stop: asyncio.Event,
        capture: StepCapture,
    ) -> AsyncGenerator[str, None]:
        self.calls += 1
        capture.text += "par"
        yield "par"
        raise httpx.ReadError("connection reset by peer")


def test_provider_failure_mid_stream_is_reported_in_band() -> None:
    user_id = _create_user()
    chat_id = f"chat-{uuid.uuid4().hex}"
    pipeline = _make_pipeline(FailingProvider(), new_chat_id=lambda: chat_id)

    with _serving(pipeline):
        resp = TestClient(app).post("/api/chat", json=_hello_body(), headers=_auth(user_id))

    assert resp.status_code == 200, resp.text
    lines = parse_data_stream(resp.text)
    assert [code for code, _ in lines] == ["2", "f", "0", "3"]
    assert lines[0][1] == [{"type": NEW_CHAT_CREATED, "chatId": chat_id}]
    assert lines[2:] == [("0", "par"), ("3", "Oops, an error occurred!")]

    # Only the snapshot taken before the model ran exists.
    with SessionLocal() as db:
        chat = db.get(Chat, chat_id)
        assert chat is not None
        assert [m.role for m in chat.messages] == ["user"]


class HijackingProvider(CountingProvider):
    """Hands the chat to another user while the answer is streaming."""

    def __init__(self, chat_id: str, new_owner: str) -> None:
        super().__init__()
        self.chat_id: str = chat_id
        self.new_owner: str = new_owner

    async def stream_step(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, object]] | None,
        stop: asyncio.Event,
        capture: StepCapture,
    ) -> AsyncGenerator[str, None]:
        with SessionLocal() as db:
            _ = db.execute(
                update(Chat).where(Chat.id == self.chat_id).values(user_id=self.new_owner)
            )
            db.commit()
        async for ch in super().stream_step(messages, tools=tools, stop=stop, capture=capture):
            yield ch


def test_final_save_failure_is_reported_and_initial_snapshot_kept() -> None:
    user_id = _create_user()
    other = _create_user()
    chat_id = f"chat-{uuid.uuid4().hex}"
    pipeline = _make_pipeline(HijackingProvider(chat_id, other), new_chat_id=lambda: chat_id)

    with _serving(pipeline):
        resp = TestClient(app).post("/api/chat", json=_hello_body(), headers=_auth(user_id))

    assert resp.status_code == 200, resp.text
    lines = parse_data_stream(resp.text)
    text = "".join(cast(str, v) for code, v in lines if code == "0")
    assert text == "AI: Hello"
    assert lines[-1] == ("3", "Failed to save chat")

    with SessionLocal() as db:
        chat = db.get(Chat, chat_id)
        assert chat is not None
        assert chat.user_id == other
        assert [(m.role, m.parts) for m in chat.messages] == [
            ("user", [{"type": "text", "text": "Hello"}])
        ]


class StallingProvider(CountingProvider):
    async def stream_step(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, object]] | None,
        stop: asyncio.Event,
        capture: StepCapture,
    ) -> AsyncGenerator[str, None]:
        self.calls += 1
        capture.text += "par"
        yield "par"
        _ = await asyncio.Event().wait()


def test_cancelled_consumer_stops_model_and_skips_final_snapshot() -> None:
    user_id = _create_user()
    chat_id = f"chat-{uuid.uuid4().hex}"
    pipeline = _make_pipeline(StallingProvider(), new_chat_id=lambda: chat_id)

    async def _body() -> object:
        return _hello_body()

    async def _run() -> tuple[PreparedChat, list[str]]:
        prepared = await pipeline.prepare(
            authorization=_auth(user_id)["Authorization"], read_body=_body
        )
        lines: list[str] = []
        got_text = asyncio.Event()

        async def _consume() -> None:
            async for line in pipeline.stream(prepared):
                lines.append(line)
                if line.startswith("0:"):
                    got_text.set()

        task = asyncio.create_task(_consume())
        _ = await got_text.wait()
        _ = task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return prepared, lines

    prepared, lines = asyncio.run(_run())

    assert prepared.stop.is_set()
    assert [line[:2] for line in lines] == ["2:", "f:", "0:"]
    with SessionLocal() as db:
        chat = db.get(Chat, chat_id)
        assert chat is not None
        assert [m.role for m in chat.messages] == ["user"]
    assert _request_count(user_id) == 1


def test_derive_chat_title() -> None:
    long_text = "x" * 80
    assert derive_chat_title([UIMessage(role="user", content=long_text)]) == "x" * 50
    assert derive_chat_title([UIMessage(role="assistant", content="hi")]) == "New Chat"
    assert (
        derive_chat_title([UIMessage(role="user", parts=[{"type": "text", "text": "From parts"}])])
        == "From parts"
    )
