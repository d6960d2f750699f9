"""Provider-neutral stream events and request-scoped usage tracking."""

from dataclasses import dataclass, field
from typing import Any


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
        }


# ---------------------------------------------------------------------------
# Events emitted by a provider for one model call
# ---------------------------------------------------------------------------


@dataclass
class TextDelta:
    text: str


@dataclass
class ReasoningDelta:
    text: str
    signature: str | None = None


@dataclass
class ToolCallStart:
    tool_call_id: str
    tool_name: str


@dataclass
class ToolCallDelta:
    tool_call_id: str
    args_text_delta: str


@dataclass
class ToolCall:
    tool_call_id: str
    tool_name: str
    args: dict[str, Any]


@dataclass
class UsageUpdate:
    """Usage observed so far within the current model call."""

    usage: Usage


@dataclass
class StepEnd:
    """Final event of one model call."""

    finish_reason: str  # stop, length, tool-calls, error, other
    usage: Usage


# ---------------------------------------------------------------------------
# Events added by the multi-step loop
# ---------------------------------------------------------------------------


@dataclass
class StepStart:
    message_id: str


@dataclass
class Source:
    id: str
    url: str
    title: str | None = None


@dataclass
class ToolResult:
    tool_call_id: str
    tool_name: str
    args: dict[str, Any]
    result: Any
    is_error: bool = False


@dataclass
class StepFinish:
    message_id: str
    finish_reason: str
    usage: Usage
    is_continued: bool
    response_message: dict[str, Any]


@dataclass
class Finish:
    finish_reason: str
    usage: Usage
    response_messages: list[dict[str, Any]] = field(default_factory=list)
    sources: list[Source] = field(default_factory=list)


StreamEvent = (
    TextDelta
    | ReasoningDelta
    | ToolCallStart
    | ToolCallDelta
    | ToolCall
    | UsageUpdate
    | StepEnd
    | StepStart
    | Source
    | ToolResult
    | StepFinish
    | Finish
)


class RunningTally:
    """Token usage observed during one generation.

    Completed steps are committed; the in-flight step is tracked separately so
    an error mid-step still reports what the provider has counted so far.
    """

    def __init__(self) -> None:
        self._committed = Usage()
        self._current = Usage()

    def observe(self, usage: Usage) -> None:
        self._current = usage

    def commit(self, usage: Usage) -> None:
        self._committed = self._committed + usage
        self._current = Usage()

    @property
    def usage(self) -> Usage:
        return self._committed + self._current

    @property
    def total_tokens(self) -> int:
        return self.usage.total_tokens

    def to_dict(self) -> dict[str, int]:
        return self.usage.to_dict()
