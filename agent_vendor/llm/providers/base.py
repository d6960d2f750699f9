"""Provider protocol shared by the Anthropic and OpenAI adapters."""

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from agent_vendor.llm.events import StreamEvent


@dataclass(frozen=True)
class ToolSpec:
    """What a model sees of a tool: name, description and JSON-schema input."""

    name: str
    description: str
    parameters: dict[str, Any]


@dataclass
class GenerationRequest:
    model: str
    system: str
    messages: list[dict[str, Any]]
    tools: list[ToolSpec] = field(default_factory=list)
    max_tokens: int = 4096
    params: dict[str, Any] = field(default_factory=dict)
    provider_options: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class LLMProvider(Protocol):
    """One streamed model call per ``stream_step``.

    Implementations yield TextDelta, ReasoningDelta, ToolCallStart,
    ToolCallDelta, ToolCall and UsageUpdate events, and always finish with
    exactly one StepEnd.
    """

    name: str

    def stream_step(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]: ...

    async def complete(self, model: str, system: str, prompt: str, max_tokens: int = 256) -> str: ...


def options_for(provider: str, provider_options: dict[str, Any] | None) -> dict[str, Any]:
    """Return options for ``provider``, accepting both keyed and flat shapes.

    ``{"anthropic": {"thinking": ...}}`` and ``{"thinking": ...}`` are equivalent
    for the Anthropic adapter.
    """
    if not provider_options:
        return {}
    scoped = provider_options.get(provider)
    if isinstance(scoped, dict):
        return dict(scoped)
    return {k: v for k, v in provider_options.items() if k not in ("anthropic", "openai")}
