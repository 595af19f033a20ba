from __future__ import annotations

from deepsearch.services.chat_types import Finish, StepFinish, StepStart, TextDelta, ToolCall, ToolResult, Usage
from deepsearch.services.data_stream import (
    encode_error,
    encode_new_chat_created,
    encode_part,
    parse_data_stream,
)


def test_encodes_each_part_on_its_own_line() -> None:
    usage = Usage(prompt_tokens=3, completion_tokens=4)
    lines = [
        encode_new_chat_created("chat-1"),
        encode_part(StepStart(message_id="msg-1")),
        encode_part(TextDelta(text="héllo\n")),
        encode_part(ToolCall(tool_call_id="c1", tool_name="searchWeb", args={"query": "q"})),
        encode_part(ToolResult(tool_call_id="c1", tool_name="searchWeb", args={"query": "q"}, result=[])),
        encode_part(StepFinish(finish_reason="tool-calls", usage=usage)),
        encode_part(Finish(finish_reason="stop", usage=Usage())),
        encode_error("Oops, an error occurred!"),
    ]
    assert all(line.endswith("\n") and line.count("\n") == 1 for line in lines)
    assert lines[0] == '2:[{"type":"NEW_CHAT_CREATED","chatId":"chat-1"}]\n'
    assert lines[2] == '0:"héllo\\n"\n'

    parsed = parse_data_stream("".join(lines))
    assert [code for code, _ in parsed] == ["2", "f", "0", "9", "a", "e", "d", "3"]
    assert parsed[3][1] == {"toolCallId": "c1", "toolName": "searchWeb", "args": {"query": "q"}}
    assert parsed[5][1] == {
        "finishReason": "tool-calls",
        "usage": {"promptTokens": 3, "completionTokens": 4},
        "isContinued": False,
    }
    assert parsed[6][1] == {"finishReason": "stop", "usage": {"promptTokens": 0, "completionTokens": 0}}
    assert parsed[7][1] == "Oops, an error occurred!"
