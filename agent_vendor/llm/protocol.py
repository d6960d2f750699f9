"""Data-stream wire format understood by the web client.

Each frame is ``<code>:<json>\\n``. The response carries the
``x-vercel-ai-data-stream: v1`` header so the client parses it as such.
"""

import json
from typing import Any

from agent_vendor.llm.events import (
    Finish,
    ReasoningDelta,
    Source,
    StepFinish,
    StepStart,
    StreamEvent,
    TextDelta,
    ToolCall,
    ToolCallDelta,
    ToolCallStart,
    ToolResult,
    Usage,
)

DATA_STREAM_HEADERS = {
    "x-vercel-ai-data-stream": "v1",
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


def frame(code: str, value: Any) -> str:
    return f"{code}:{json.dumps(value, separators=(',', ':'), default=str)}\n"


def _usage(usage: Usage) -> dict[str, int]:
    return {"promptTokens": usage.prompt_tokens, "completionTokens": usage.completion_tokens}


def encode_event(event: StreamEvent) -> str | None:
    """Encode one event, or return None for events the client never sees."""
    if isinstance(event, TextDelta):
        return frame("0", event.text) if event.text else None
    if isinstance(event, ReasoningDelta):
        if event.signature:
            return frame("j", {"signature": event.signature})
        return frame("g", event.text) if event.text else None
    if isinstance(event, StepStart):
        return frame("f", {"messageId": event.message_id})
    if isinstance(event, Source):
        return frame("h", {"sourceType": "url", "id": event.id, "url": event.url, "title": event.title})
    if isinstance(event, ToolCallStart):
        return frame("b", {"toolCallId": event.tool_call_id, "toolName": event.tool_name})
    if isinstance(event, ToolCallDelta):
        return frame("c", {"toolCallId": event.tool_call_id, "argsTextDelta": event.args_text_delta})
    if isinstance(event, ToolCall):
        return frame("9", {"toolCallId": event.tool_call_id, "toolName": event.tool_name, "args": event.args})
    if isinstance(event, ToolResult):
        return frame("a", {"toolCallId": event.tool_call_id, "result": event.result})
    if isinstance(event, StepFinish):
        return frame("e", {
            "finishReason": event.finish_reason,
            "usage": _usage(event.usage),
            "isContinued": event.is_continued,
        })
    if isinstance(event, Finish):
        return frame("d", {"finishReason": event.finish_reason, "usage": _usage(event.usage)})
    return None


def encode_error(message: str) -> str:
    return frame("3", message)
