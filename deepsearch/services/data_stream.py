"""Line encoder for the browser's data stream protocol.

Each line is ``<code>:<json>\\n``. Codes used here:

    0  text delta            2  data array (out-of-band events)
    3  error message         9  tool call
    a  tool result           f  step start
    e  step finish           d  message finish
"""

from __future__ import annotations

import json
from typing import TypedDict

from deepsearch.services.chat_types import (
    Finish,
    StepFinish,
    StepStart,
    StreamPart,
    TextDelta,
    ToolCall,
    ToolResult,
    Usage,
)


DATA_STREAM_HEADERS: dict[str, str] = {"x-vercel-ai-data-stream": "v1"}

NEW_CHAT_CREATED = "NEW_CHAT_CREATED"


class NewChatCreatedData(TypedDict):
    type: str
    chatId: str


def _line(code: str, value: object) -> str:
    return f"{code}:{json.dumps(value, separators=(',', ':'), ensure_ascii=False, default=str)}\n"


def _usage(u: Usage) -> dict[str, int]:
    return {"promptTokens": int(u.prompt_tokens or 0), "completionTokens": int(u.completion_tokens or 0)}


def encode_data(*values: object) -> str:
    return _line("2", list(values))


def encode_new_chat_created(chat_id: str) -> str:
    payload: NewChatCreatedData = {"type": NEW_CHAT_CREATED, "chatId": chat_id}
    return encode_data(payload)


def encode_error(message: str) -> str:
    return _line("3", message)


def encode_part(part: StreamPart) -> str:
    if isinstance(part, TextDelta):
        return _line("0", part.text)
    if isinstance(part, StepStart):
        return _line("f", {"messageId": part.message_id})
    if isinstance(part, ToolCall):
        return _line(
            "9", {"toolCallId": part.tool_call_id, "toolName": part.tool_name, "args": part.args}
        )
    if isinstance(part, ToolResult):
        return _line("a", {"toolCallId": part.tool_call_id, "result": part.result})
    if isinstance(part, StepFinish):
        return _line(
            "e",
            {
                "finishReason": part.finish_reason,
                "usage": _usage(part.usage),
                "isContinued": bool(part.is_continued),
            },
        )
    if isinstance(part, Finish):
        return _line("d", {"finishReason": part.finish_reason, "usage": _usage(part.usage)})
    raise TypeError(f"unsupported stream part {type(part).__name__}")


def parse_data_stream(body: str) -> list[tuple[str, object]]:
    """Split an encoded stream back into ``(code, value)`` pairs."""
    out: list[tuple[str, object]] = []
    for line in body.split("\n"):
        if not line:
            continue
        code, sep, raw = line.partition(":")
        if not sep:
            raise ValueError(f"malformed data stream line: {line[:40]!r}")
        out.append((code, json.loads(raw)))
    return out
