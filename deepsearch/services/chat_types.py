from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, TypeAlias

from pydantic import BaseModel, ConfigDict, Field


Role: TypeAlias = Literal["system", "user", "assistant", "tool"]


class UIMessage(BaseModel):
    """A message as the browser sends it: flat ``content`` plus optional structured ``parts``."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    role: Role
    content: str = ""
    parts: list[dict[str, Any]] | None = None
    created_at: str | None = Field(default=None, alias="createdAt")

    def resolved_parts(self) -> list[dict[str, Any]]:
        if self.parts:
            return [dict(p) for p in self.parts]
        return [{"type": "text", "text": self.content}]

    def text(self) -> str:
        if self.content:
            return self.content
        chunks: list[str] = []
        for p in self.parts or []:
            if p.get("type") == "text" and isinstance(p.get("text"), str):
                chunks.append(p["text"])
        return "".join(chunks)


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None


# Stream parts yielded by the chat service; the pipeline encodes them for the wire.


@dataclass(frozen=True)
class StepStart:
    message_id: str


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCall:
    tool_call_id: str
    tool_name: str
    args: dict[str, Any]


@dataclass(frozen=True)
class ToolResult:
    tool_call_id: str
    tool_name: str
    args: dict[str, Any]
    result: Any


@dataclass(frozen=True)
class StepFinish:
    finish_reason: str
    usage: Usage
    is_continued: bool = False


@dataclass(frozen=True)
class Finish:
    finish_reason: str
    usage: Usage


StreamPart: TypeAlias = StepStart | TextDelta | ToolCall | ToolResult | StepFinish | Finish


@dataclass
class FinishEvent:
    """Handed to ``on_finish`` once the model is done.

    ``response_messages`` are provider-format messages (assistant turns with
    ``tool_calls`` and the matching ``tool`` results) in the order they happened.
    """

    finish_reason: str
    usage: Usage
    text: str
    response_messages: list[dict[str, Any]] = field(default_factory=list)
