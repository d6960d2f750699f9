"""Request-scoped bookkeeping for one streamed chat generation.

A ChatContext is created per POST and shared only by that request's
producer task and its finish/error handlers.
"""

from dataclasses import dataclass, field
from typing import Any

from agent_vendor.llm.events import (
    ReasoningDelta,
    RunningTally,
    Source,
    StepFinish,
    StepStart,
    StreamEvent,
    TextDelta,
    ToolCall,
    ToolCallStart,
    ToolResult,
    UsageUpdate,
)
from agent_vendor.llm.messages import source_part
from agent_vendor.schemas.chat import UIMessage
from agent_vendor.services.model_registry import ModelInfo


class PartialAssistantMessage:
    """Assistant UI message built incrementally from stream events.

    Its id tracks the latest step so a saved partial lines up with the id
    the finished message would have had.
    """

    def __init__(self) -> None:
        self.id: str | None = None
        self.sources: list[dict[str, Any]] = []
        self.parts: list[dict[str, Any]] = []
        self._invocations: dict[str, dict[str, Any]] = {}
        self._step = -1

    @property
    def has_content(self) -> bool:
        return bool(self.sources) or any(p["type"] != "step-start" for p in self.parts)

    def _append_text(self, kind: str, text: str) -> None:
        key = "text" if kind == "text" else "reasoning"
        if self.parts and self.parts[-1]["type"] == kind:
            self.parts[-1][key] += text
        else:
            self.parts.append({"type": kind, key: text})

    def apply(self, event: StreamEvent) -> None:
        if isinstance(event, StepStart):
            self.id = event.message_id
            self._step += 1
            self.parts.append({"type": "step-start"})
        elif isinstance(event, TextDelta):
            self._append_text("text", event.text)
        elif isinstance(event, ReasoningDelta) and event.text:
            self._append_text("reasoning", event.text)
        elif isinstance(event, Source):
            self.sources.append(source_part(event))
        elif isinstance(event, (ToolCallStart, ToolCall)):
            invocation = self._invocations.get(event.tool_call_id)
            if invocation is None:
                invocation = {
                    "state": "partial-call",
                    "step": self._step,
                    "toolCallId": event.tool_call_id,
                    "toolName": event.tool_name,
                    "args": {},
                }
                self._invocations[event.tool_call_id] = invocation
                self.parts.append({"type": "tool-invocation", "toolInvocation": invocation})
            if isinstance(event, ToolCall):
                invocation["state"] = "call"
                invocation["args"] = event.args
        elif isinstance(event, ToolResult):
            invocation = self._invocations.get(event.tool_call_id)
            if invocation is not None:
                invocation["state"] = "result"
                invocation["result"] = event.result

    def to_ui_message(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": "assistant",
            "parts": [*self.sources, *self.parts],
            "attachments": [],
        }


@dataclass
class ChatContext:
    chat_id: str
    user_id: str
    agent_id: str
    creator_id: str
    model_id: str
    model: ModelInfo | None
    user_message: UIMessage
    tally: RunningTally = field(default_factory=RunningTally)
    partial: PartialAssistantMessage = field(default_factory=PartialAssistantMessage)
    saved_message_ids: set[str] = field(default_factory=set)
    billed: bool = False

    def observe(self, event: StreamEvent) -> None:
        if isinstance(event, UsageUpdate):
            self.tally.observe(event.usage)
        elif isinstance(event, StepFinish):
            self.tally.commit(event.usage)
        self.partial.apply(event)

    def accumulated_messages(self) -> list[dict[str, Any]]:
        if self.partial.id is None or not self.partial.has_content:
            return []
        return [self.partial.to_ui_message()]
