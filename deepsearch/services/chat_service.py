from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import math
import time
import uuid
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol, cast

import httpx

from deepsearch.core.config import Settings
from deepsearch.core.errors import ChatPipelineError, ChatServiceError
from deepsearch.metrics.prometheus import LLMChatMetricLabels, record_llm_chat_stream
from deepsearch.services.chat_types import (
    Finish,
    FinishEvent,
    StepFinish,
    StepStart,
    StreamPart,
    TextDelta,
    ToolCall,
    ToolResult,
    UIMessage,
    Usage,
)
from deepsearch.services.scraper import CrawlResponse
from deepsearch.services.search import SearchResult


logger = logging.getLogger(__name__)


SYSTEM_PROMPT = """You are a meticulous research assistant with access to the web.
The current date is {current_date}.

Rules:
- Always call searchWeb before answering anything that may depend on recent or time-sensitive information.
- After searching, always call scrapePages on the 4 to 6 most relevant result URLs to read them in full; snippets are not enough.
- Cite every claim that comes from the web with an inline markdown link, e.g. [TypeScript 5.8 release notes](https://devblogs.microsoft.com/typescript/).
- Never invent URLs. Only link pages you received from a tool.
- You have a limited number of tool rounds. Once you have enough material, stop calling tools and write the answer.
"""

TOOL_SEARCH_WEB = "searchWeb"
TOOL_SCRAPE_PAGES = "scrapePages"

TOOLS: list[dict[str, object]] = [
    {
        "type": "function",
        "function": {
            "name": TOOL_SEARCH_WEB,
            "description": "Search the web. Returns ranked results with title, link, snippet and date.",
            "parameters": {
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "The query to search the web for"},
                },
                "required": ["query"],
                "additionalProperties": False,
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": TOOL_SCRAPE_PAGES,
            "description": "Fetch the full text of web pages. Use this on search results to read them in detail.",
            "parameters": {
                "type": "object",
                "properties": {
                    "urls": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "The URLs to scrape",
                    },
                },
                "required": ["urls"],
                "additionalProperties": False,
            },
        },
    },
]


def build_system_prompt(now: datetime | None = None) -> str:
    ts = now or datetime.now(UTC)
    return SYSTEM_PROMPT.format(current_date=ts.strftime("%Y-%m-%d"))


# ---------------------------------------------------------------------------
# Provider layer
# ---------------------------------------------------------------------------


@dataclass
class PendingToolCall:
    id: str
    name: str
    arguments: str = ""


@dataclass
class StepCapture:
    """Filled in by a provider while it streams one model step."""

    text: str = ""
    finish_reason: str | None = None
    tool_calls: list[PendingToolCall] = field(default_factory=list)

    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None


class ChatProvider(Protocol):
    name: str
    model: str

    def stream_step(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, object]] | None,
        stop: asyncio.Event,
        capture: StepCapture,
    ) -> AsyncGenerator[str, None]: ...


class FakeChatProvider:
    """Deterministic echo model for development (OPENAI_MODE=fake)."""

    name: str = "fake"
    model: str = "fake"

    async def stream_step(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, object]] | None,
        stop: asyncio.Event,
        capture: StepCapture,
    ) -> AsyncGenerator[str, None]:
        _ = tools
        last_user = ""
        for m in reversed(messages):
            if m.get("role") == "user" and isinstance(m.get("content"), str):
                last_user = cast(str, m["content"])
                break
        reply = f"AI: {last_user}"
        for ch in reply:
            if stop.is_set():
                return
            await asyncio.sleep(0)
            capture.text += ch
            yield ch
        capture.finish_reason = "stop"
        capture.prompt_tokens = sum(len(str(m.get("content") or "")) for m in messages)
        capture.completion_tokens = len(reply)
        capture.total_tokens = capture.prompt_tokens + capture.completion_tokens


class _SSELineStream(Protocol):
    def aiter_lines(self) -> AsyncIterator[str]: ...


async def _iter_sse_data(resp: _SSELineStream) -> AsyncIterator[str]:
    buf: list[str] = []
    async for line in resp.aiter_lines():
        line = str(line)

        if line == "":
            if buf:
                yield "\n".join(buf)
                buf = []
            continue

        if line.startswith(":"):
            continue

        if line.startswith("data:"):
            buf.append(line[len("data:") :].lstrip())
            continue

        continue

    if buf:
        yield "\n".join(buf)


def _maybe_capture_usage_from_obj(obj: dict[str, object], capture: StepCapture) -> None:
    usage_raw = obj.get("usage")
    if not isinstance(usage_raw, dict):
        return
    usage = cast(dict[str, object], usage_raw)

    prompt_obj = usage.get("prompt_tokens")
    completion_obj = usage.get("completion_tokens")
    total_obj = usage.get("total_tokens")

    prompt = prompt_obj if isinstance(prompt_obj, int) and prompt_obj >= 0 else None
    completion = completion_obj if isinstance(completion_obj, int) and completion_obj >= 0 else None
    total = total_obj if isinstance(total_obj, int) and total_obj >= 0 else None

    if total is None and prompt is not None and completion is not None:
        total = int(prompt + completion)

    if prompt is not None:
        capture.prompt_tokens = int(prompt)
    if completion is not None:
        capture.completion_tokens = int(completion)
    if total is not None:
        capture.total_tokens = int(total)


def _apply_chat_completions_chunk(obj: dict[str, object], capture: StepCapture) -> str | None:
    """Fold one streamed chunk into ``capture``; returns the text delta, if any."""
    choices_obj = obj.get("choices")
    if not isinstance(choices_obj, list) or not choices_obj:
        return None
    c0_raw = cast(object, choices_obj[0])
    if not isinstance(c0_raw, dict):
        return None
    c0 = cast(dict[str, object], c0_raw)

    finish = c0.get("finish_reason")
    if isinstance(finish, str) and finish:
        capture.finish_reason = finish

    delta_raw = c0.get("delta")
    if not isinstance(delta_raw, dict):
        return None
    delta = cast(dict[str, object], delta_raw)

    tool_calls_raw = delta.get("tool_calls")
    if isinstance(tool_calls_raw, list):
        for tc_obj in cast(list[object], tool_calls_raw):
            if not isinstance(tc_obj, dict):
                continue
            tc = cast(dict[str, object], tc_obj)
            idx_obj = tc.get("index")
            idx = idx_obj if isinstance(idx_obj, int) and idx_obj >= 0 else len(capture.tool_calls)
            while len(capture.tool_calls) <= idx:
                capture.tool_calls.append(PendingToolCall(id="", name=""))
            pending = capture.tool_calls[idx]
            tc_id = tc.get("id")
            if isinstance(tc_id, str) and tc_id:
                pending.id = tc_id
            fn_raw = tc.get("function")
            if isinstance(fn_raw, dict):
                fn = cast(dict[str, object], fn_raw)
                name = fn.get("name")
                if isinstance(name, str) and name:
                    pending.name = name
                args = fn.get("arguments")
                if isinstance(args, str):
                    pending.arguments += args

    content_obj = delta.get("content")
    if isinstance(content_obj, str) and content_obj != "":
        capture.text += content_obj
        return content_obj
    return None


def _normalize_openai_base_url(raw: str) -> str:
    u = raw.strip().rstrip("/")
    if u == "":
        raise ValueError("OPENAI_BASE_URL must not be empty")
    if not u.endswith("/v1"):
        u = u + "/v1"
    return u


def _clamp_timeout_seconds(raw: float | int | None) -> float:
    try:
        t = float(raw) if raw is not None else 60.0
    except Exception:
        t = 60.0
    if not math.isfinite(t) or t <= 0:
        t = 60.0
    return float(max(1.0, min(300.0, t)))


class OpenAICompatibleProvider:
    """Streams chat completions (with tool calls) from any OpenAI-compatible endpoint."""

    name: str = "openai_compatible"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model: str,
        timeout_s: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url: str = _normalize_openai_base_url(base_url)
        self._api_key: str = api_key
        self.model: str = model
        self._timeout_s: float = _clamp_timeout_seconds(timeout_s)
        self._transport: httpx.AsyncBaseTransport | None = transport

    async def stream_step(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, object]] | None,
        stop: asyncio.Event,
        capture: StepCapture,
    ) -> AsyncGenerator[str, None]:
        headers = {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"}
        payload: dict[str, object] = {
            "model": self.model,
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"

        timeout = httpx.Timeout(self._timeout_s, connect=min(10.0, self._timeout_s))
        async with httpx.AsyncClient(
            base_url=self._base_url, timeout=timeout, trust_env=False, transport=self._transport
        ) as client:
            if stop.is_set():
                return

            async with client.stream(
                "POST", "chat/completions", headers=headers, json=payload
            ) as resp:
                if resp.status_code >= 400:
                    _ = await resp.aread()
                    _ = resp.raise_for_status()
                async for data in _iter_sse_data(resp):
                    if stop.is_set():
                        return
                    if data.strip() == "[DONE]":
                        return
                    try:
                        obj = cast(object, json.loads(data))
                    except Exception:
                        continue
                    if not isinstance(obj, dict):
                        continue
                    obj_dict = cast(dict[str, object], obj)
                    _maybe_capture_usage_from_obj(obj_dict, capture)
                    delta = _apply_chat_completions_chunk(obj_dict, capture)
                    if delta is None:
                        continue
                    yield delta


def build_chat_provider(s: Settings) -> ChatProvider:
    mode = s.openai_mode.strip().lower()
    if mode != "openai":
        return FakeChatProvider()
    if not (s.openai_base_url and s.openai_api_key and s.openai_model):
        raise ChatServiceError(
            "OPENAI_MODE=openai requires OPENAI_BASE_URL/OPENAI_API_KEY/OPENAI_MODEL"
        )
    return OpenAICompatibleProvider(
        base_url=s.openai_base_url,
        api_key=s.openai_api_key,
        model=s.openai_model,
        timeout_s=s.openai_timeout_seconds,
    )


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


SearchFn = Callable[[str], Awaitable[list[SearchResult]]]
ScrapeFn = Callable[[list[str]], Awaitable[CrawlResponse]]


class ChatTools:
    def __init__(self, *, search: SearchFn, scrape: ScrapeFn):
        self._search: SearchFn = search
        self._scrape: ScrapeFn = scrape

    async def execute(self, name: str, args: dict[str, Any]) -> object:
        """Run a tool; failures become an ``{"error": ...}`` result for the model."""
        try:
            if name == TOOL_SEARCH_WEB:
                query = args.get("query")
                if not isinstance(query, str) or query.strip() == "":
                    return {"error": "query must be a non-empty string"}
                results = await self._search(query)
                return [r.to_dict() for r in results]
            if name == TOOL_SCRAPE_PAGES:
                urls_raw = args.get("urls")
                if not isinstance(urls_raw, list) or not urls_raw:
                    return {"error": "urls must be a non-empty list"}
                urls = [str(u) for u in cast(list[object], urls_raw)]
                response = await self._scrape(urls)
                return response.to_dict()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("tool %s failed: %s", name, e)
            return {"error": f"{name} failed: {e}"}
        return {"error": f"unknown tool {name!r}"}


def build_default_tools() -> ChatTools:
    from deepsearch.services.redis_store import get_redis_store
    from deepsearch.services.scraper import cached_bulk_crawl
    from deepsearch.services.search import search_web

    async def _scrape(urls: list[str]) -> CrawlResponse:
        return await cached_bulk_crawl(get_redis_store(), urls)

    return ChatTools(search=search_web, scrape=_scrape)


# ---------------------------------------------------------------------------
# Message conversion
# ---------------------------------------------------------------------------


def _tool_invocation(part: dict[str, Any]) -> dict[str, Any] | None:
    if part.get("type") != "tool-invocation":
        return None
    inv = part.get("toolInvocation")
    return cast(dict[str, Any], inv) if isinstance(inv, dict) else None


def _assistant_to_provider(msg: UIMessage) -> list[dict[str, Any]]:
    if not msg.parts:
        return [{"role": "assistant", "content": msg.content}]

    out: list[dict[str, Any]] = []
    text_buf: list[str] = []
    calls: list[dict[str, Any]] = []

    def _flush() -> None:
        if not text_buf and not calls:
            return
        entry: dict[str, Any] = {"role": "assistant", "content": "".join(text_buf) or None}
        if calls:
            entry["tool_calls"] = [
                {
                    "id": c["toolCallId"],
                    "type": "function",
                    "function": {
                        "name": c["toolName"],
                        "arguments": json.dumps(c.get("args") or {}, ensure_ascii=False),
                    },
                }
                for c in calls
            ]
        out.append(entry)
        for c in calls:
            out.append(
                {
                    "role": "tool",
                    "tool_call_id": c["toolCallId"],
                    "content": json.dumps(c.get("result"), ensure_ascii=False),
                }
            )
        text_buf.clear()
        calls.clear()

    for part in msg.parts:
        inv = _tool_invocation(part)
        if inv is not None:
            # Calls without a result cannot be replayed to the provider.
            if inv.get("state") == "result" and inv.get("toolCallId") and inv.get("toolName"):
                calls.append(inv)
            continue
        if part.get("type") == "text" and isinstance(part.get("text"), str):
            if calls:
                _flush()
            text_buf.append(cast(str, part["text"]))
    _flush()
    return out or [{"role": "assistant", "content": msg.content}]


def to_provider_messages(messages: Sequence[UIMessage]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for m in messages:
        if m.role == "assistant":
            out.extend(_assistant_to_provider(m))
        elif m.role in ("user", "system"):
            out.append({"role": m.role, "content": m.text()})
    return out


def _decode_tool_content(raw: object) -> object:
    if not isinstance(raw, str):
        return raw
    try:
        return cast(object, json.loads(raw))
    except Exception:
        return raw


def append_response_messages(
    messages: Sequence[UIMessage], response_messages: Sequence[dict[str, Any]]
) -> list[UIMessage]:
    """Fold provider response messages into one trailing assistant UI message."""
    merged = list(messages)
    if not response_messages:
        return merged

    parts: list[dict[str, Any]] = []
    by_call_id: dict[str, dict[str, Any]] = {}
    texts: list[str] = []

    for rm in response_messages:
        role = rm.get("role")
        if role == "assistant":
            content = rm.get("content")
            if isinstance(content, str) and content != "":
                parts.append({"type": "text", "text": content})
                texts.append(content)
            for tc in cast(list[dict[str, Any]], rm.get("tool_calls") or []):
                fn = cast(dict[str, Any], tc.get("function") or {})
                inv: dict[str, Any] = {
                    "state": "call",
                    "toolCallId": tc.get("id", ""),
                    "toolName": fn.get("name", ""),
                    "args": _decode_tool_content(fn.get("arguments") or "{}"),
                }
                part = {"type": "tool-invocation", "toolInvocation": inv}
                parts.append(part)
                by_call_id[str(inv["toolCallId"])] = inv
        elif role == "tool":
            inv_found = by_call_id.get(str(rm.get("tool_call_id", "")))
            if inv_found is not None:
                inv_found["state"] = "result"
                inv_found["result"] = _decode_tool_content(rm.get("content"))

    merged.append(
        UIMessage(id=str(uuid.uuid4()), role="assistant", content="".join(texts), parts=parts)
    )
    return merged


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


_FINISH_REASONS = {
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
    "content_filter": "content-filter",
}


def _map_finish_reason(raw: str | None, *, has_tool_calls: bool) -> str:
    if has_tool_calls:
        return "tool-calls"
    if raw is None:
        return "unknown"
    return _FINISH_REASONS.get(raw, "other")


def _add(a: int | None, b: int | None) -> int | None:
    if a is None and b is None:
        return None
    return int(a or 0) + int(b or 0)


def _parse_args(raw: str) -> dict[str, Any] | None:
    if raw.strip() == "":
        return {}
    try:
        obj = cast(object, json.loads(raw))
    except Exception:
        return None
    return cast(dict[str, Any], obj) if isinstance(obj, dict) else None


OnFinish = Callable[[FinishEvent], Awaitable[None]]


class ChatService:
    def __init__(
        self,
        *,
        provider: ChatProvider,
        tools: ChatTools,
        max_steps: int = 10,
        system_prompt: Callable[[], str] = build_system_prompt,
    ):
        if max_steps < 1:
            raise ValueError("max_steps must be >= 1")
        self._provider: ChatProvider = provider
        self._tools: ChatTools = tools
        self._max_steps: int = int(max_steps)
        self._system_prompt: Callable[[], str] = system_prompt

    @property
    def provider(self) -> ChatProvider:
        return self._provider

    def stream_text(
        self,
        messages: Sequence[UIMessage],
        *,
        trace_id: str | None = None,
        on_finish: OnFinish | None = None,
        stop: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamPart]:
        """Build the model request and return its event stream.

        Construction problems raise ChatServiceError here, before anything is
        streamed; provider failures during iteration raise it from the iterator.
        """
        try:
            if not messages:
                raise ValueError("messages must not be empty")
            provider_messages: list[dict[str, Any]] = [
                {"role": "system", "content": self._system_prompt()}
            ]
            provider_messages.extend(to_provider_messages(messages))
        except ChatServiceError:
            raise
        except Exception as e:
            raise ChatServiceError(f"failed to build chat request: {e}") from e

        return self._run(
            provider_messages,
            trace_id=trace_id,
            on_finish=on_finish,
            stop=stop or asyncio.Event(),
        )

    async def _run(
        self,
        provider_messages: list[dict[str, Any]],
        *,
        trace_id: str | None,
        on_finish: OnFinish | None,
        stop: asyncio.Event,
    ) -> AsyncIterator[StreamPart]:
        start_mono = time.monotonic()
        ttft_ms: int | None = None
        output_chars = 0
        tool_call_count = 0
        interrupted = False
        error: str | None = None
        total = StepCapture()

        response_messages: list[dict[str, Any]] = []
        final_reason = "unknown"
        all_text: list[str] = []

        logger.info(
            "chat stream start trace_id=%s provider=%s model=%s max_steps=%d",
            trace_id,
            self._provider.name,
            self._provider.model,
            self._max_steps,
        )
        try:
            for step_index in range(self._max_steps):
                # The last step is offered no tools so the model has to answer.
                offer_tools = TOOLS if step_index < self._max_steps - 1 else None
                step = StepCapture()
                yield StepStart(message_id=f"msg-{uuid.uuid4().hex}")

                async with contextlib.aclosing(
                    self._provider.stream_step(
                        provider_messages, tools=offer_tools, stop=stop, capture=step
                    )
                ) as deltas:
                    async for delta in deltas:
                        if stop.is_set():
                            break
                        if ttft_ms is None:
                            ttft_ms = int((time.monotonic() - start_mono) * 1000)
                        output_chars += len(delta)
                        yield TextDelta(text=delta)

                if stop.is_set():
                    interrupted = True
                    return

                total.prompt_tokens = _add(total.prompt_tokens, step.prompt_tokens)
                total.completion_tokens = _add(total.completion_tokens, step.completion_tokens)
                total.total_tokens = _add(total.total_tokens, step.total_tokens)
                step_usage = Usage(step.prompt_tokens, step.completion_tokens, step.total_tokens)

                calls = [c for c in step.tool_calls if c.name]
                for c in calls:
                    if not c.id:
                        c.id = f"call_{uuid.uuid4().hex[:24]}"

                assistant_msg: dict[str, Any] = {"role": "assistant", "content": step.text or None}
                if calls:
                    assistant_msg["tool_calls"] = [
                        {
                            "id": c.id,
                            "type": "function",
                            "function": {"name": c.name, "arguments": c.arguments or "{}"},
                        }
                        for c in calls
                    ]
                if step.text or calls:
                    provider_messages.append(assistant_msg)
                    response_messages.append(assistant_msg)
                if step.text:
                    all_text.append(step.text)

                final_reason = _map_finish_reason(step.finish_reason, has_tool_calls=bool(calls))
                if not calls:
                    yield StepFinish(finish_reason=final_reason, usage=step_usage)
                    break

                parsed = [(c, _parse_args(c.arguments)) for c in calls]
                for c, args in parsed:
                    yield ToolCall(tool_call_id=c.id, tool_name=c.name, args=args or {})

                async def _exec(c: PendingToolCall, args: dict[str, Any] | None) -> object:
                    if args is None:
                        return {"error": "tool arguments are not valid JSON"}
                    return await self._tools.execute(c.name, args)

                results = await asyncio.gather(*(_exec(c, a) for c, a in parsed))
                tool_call_count += len(calls)

                for (c, args), result in zip(parsed, results):
                    tool_msg = {
                        "role": "tool",
                        "tool_call_id": c.id,
                        "content": json.dumps(result, ensure_ascii=False, default=str),
                    }
                    provider_messages.append(tool_msg)
                    response_messages.append(tool_msg)
                    yield ToolResult(
                        tool_call_id=c.id, tool_name=c.name, args=args or {}, result=result
                    )

                yield StepFinish(finish_reason=final_reason, usage=step_usage)
                if stop.is_set():
                    interrupted = True
                    return

            usage = Usage(total.prompt_tokens, total.completion_tokens, total.total_tokens)
            yield Finish(finish_reason=final_reason, usage=usage)

            if on_finish is not None:
                await on_finish(
                    FinishEvent(
                        finish_reason=final_reason,
                        usage=usage,
                        text="".join(all_text),
                        response_messages=response_messages,
                    )
                )
        except asyncio.CancelledError:
            interrupted = True
            raise
        except ChatPipelineError as e:
            error = str(e)
            raise
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            raise ChatServiceError(f"model provider failed: {type(e).__name__}") from e
        finally:
            latency_ms = max(0, int((time.monotonic() - start_mono) * 1000))
            logger.info(
                "chat stream end trace_id=%s reason=%s latency_ms=%d tools=%d interrupted=%s error=%s",
                trace_id,
                final_reason,
                latency_ms,
                tool_call_count,
                interrupted,
                error,
            )
            try:
                record_llm_chat_stream(
                    labels=LLMChatMetricLabels(
                        provider=self._provider.name or "unknown",
                        model=self._provider.model or "unknown",
                    ),
                    latency_ms=latency_ms,
                    ttft_ms=ttft_ms,
                    tool_calls=tool_call_count,
                    output_chars=output_chars,
                    interrupted=interrupted,
                    error=error,
                    prompt_tokens=total.prompt_tokens,
                    completion_tokens=total.completion_tokens,
                )
            except Exception:
                logger.debug("metrics recording failed", exc_info=True)


def build_chat_service(s: Settings, *, tools: ChatTools | None = None) -> ChatService:
    return ChatService(
        provider=build_chat_provider(s),
        tools=tools or build_default_tools(),
        max_steps=s.chat_max_steps,
    )
