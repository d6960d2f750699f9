"""Anthropic Messages API adapter."""

import json
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack
from typing import Any

import anthropic
import structlog
from anthropic._exceptions import OverloadedError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from agent_vendor.llm.events import (
    ReasoningDelta,
    StepEnd,
    StreamEvent,
    TextDelta,
    ToolCall,
    ToolCallDelta,
    ToolCallStart,
    Usage,
    UsageUpdate,
)
from agent_vendor.llm.providers.base import GenerationRequest, options_for

logger = structlog.get_logger(__name__)

_SUPPORTED_PARAMS = ("temperature", "top_p", "top_k")

_STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool-calls",
    "refusal": "content-filter",
}


def _thinking_option(value: dict[str, Any]) -> dict[str, Any]:
    budget = value.get("budget_tokens", value.get("budgetTokens"))
    thinking = {"type": value.get("type", "enabled")}
    if budget is not None:
        thinking["budget_tokens"] = int(budget)
    return thinking


def _result_text(result: Any) -> str:
    return result if isinstance(result, str) else json.dumps(result, default=str)


def to_anthropic_messages(messages: list[dict[str, Any]]) -> tuple[list[str], list[dict[str, Any]]]:
    """Split core messages into extra system text and Anthropic message params."""
    system: list[str] = []
    converted: list[dict[str, Any]] = []

    for message in messages:
        role = message["role"]
        if role == "system":
            system.append(message["content"])
            continue

        blocks: list[dict[str, Any]] = []
        for block in message["content"]:
            kind = block["type"]
            if kind == "text":
                blocks.append({"type": "text", "text": block["text"]})
            elif kind == "image":
                blocks.append({"type": "image", "source": {"type": "url", "url": block["url"]}})
            elif kind == "reasoning":
                # Thinking blocks can only be replayed with their signature
                if block.get("signature"):
                    blocks.append({"type": "thinking", "thinking": block["text"], "signature": block["signature"]})
            elif kind == "tool-call":
                blocks.append({
                    "type": "tool_use",
                    "id": block["toolCallId"],
                    "name": block["toolName"],
                    "input": block.get("args") or {},
                })
            elif kind == "tool-result":
                blocks.append({
                    "type": "tool_result",
                    "tool_use_id": block["toolCallId"],
                    "content": _result_text(block.get("result")),
                    "is_error": bool(block.get("isError", False)),
                })

        if not blocks:
            continue
        converted.append({"role": "user" if role in ("user", "tool") else "assistant", "content": blocks})

    return system, converted


class AnthropicProvider:
    name = "anthropic"

    def __init__(self, api_key: str | None = None, client: Any | None = None):
        self._client = client or anthropic.AsyncAnthropic(api_key=api_key)

    def _build_kwargs(self, request: GenerationRequest) -> dict[str, Any]:
        extra_system, messages = to_anthropic_messages(request.messages)
        system = "\n\n".join(s for s in [request.system, *extra_system] if s)

        params = dict(request.params)
        kwargs: dict[str, Any] = {
            "model": request.model,
            "system": system,
            "messages": messages,
            "max_tokens": int(params.pop("max_tokens", request.max_tokens)),
        }
        for key in _SUPPORTED_PARAMS:
            if key in params:
                kwargs[key] = params[key]

        if request.tools:
            kwargs["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters}
                for t in request.tools
            ]

        options = options_for(self.name, request.provider_options)
        if isinstance(options.get("thinking"), dict):
            kwargs["thinking"] = _thinking_option(options.pop("thinking"))
            # Extended thinking rejects sampling overrides
            for key in _SUPPORTED_PARAMS:
                kwargs.pop(key, None)
        kwargs.update(options)
        return kwargs

    @retry(
        retry=retry_if_exception_type((OverloadedError, anthropic.RateLimitError)),
        stop=stop_after_attempt(4),
        wait=wait_exponential(multiplier=2, min=2, max=30),
        reraise=True,
        before_sleep=lambda rs: logger.warning(
            "claude_overloaded_retrying",
            attempt=rs.attempt_number,
            sleep_seconds=rs.next_action.sleep,
        ),
    )
    async def _open_stream(self, stack: AsyncExitStack, kwargs: dict[str, Any]) -> Any:
        return await stack.enter_async_context(self._client.messages.stream(**kwargs))

    async def stream_step(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]:
        kwargs = self._build_kwargs(request)
        tool_blocks: dict[int, str] = {}
        input_tokens = 0
        output_tokens = 0

        async with AsyncExitStack() as stack:
            stream = await self._open_stream(stack, kwargs)
            async for event in stream:
                if event.type == "message_start":
                    input_tokens = event.message.usage.input_tokens
                    yield UsageUpdate(Usage(input_tokens, output_tokens))
                elif event.type == "content_block_start":
                    block = event.content_block
                    if block.type == "tool_use":
                        tool_blocks[event.index] = block.id
                        yield ToolCallStart(tool_call_id=block.id, tool_name=block.name)
                elif event.type == "content_block_delta":
                    delta = event.delta
                    if delta.type == "text_delta":
                        yield TextDelta(delta.text)
                    elif delta.type == "thinking_delta":
                        yield ReasoningDelta(delta.thinking)
                    elif delta.type == "signature_delta":
                        yield ReasoningDelta("", signature=delta.signature)
                    elif delta.type == "input_json_delta" and event.index in tool_blocks:
                        yield ToolCallDelta(tool_blocks[event.index], delta.partial_json)
                elif event.type == "message_delta":
                    output_tokens = event.usage.output_tokens
                    yield UsageUpdate(Usage(input_tokens, output_tokens))

            final = await stream.get_final_message()

        for block in final.content:
            if block.type == "tool_use":
                yield ToolCall(tool_call_id=block.id, tool_name=block.name, args=dict(block.input or {}))

        yield StepEnd(
            finish_reason=_STOP_REASONS.get(final.stop_reason, "other"),
            usage=Usage(final.usage.input_tokens, final.usage.output_tokens),
        )

    async def complete(self, model: str, system: str, prompt: str, max_tokens: int = 256) -> str:
        response = await self._client.messages.create(
            model=model,
            system=system,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=max_tokens,
        )
        return "".join(block.text for block in response.content if block.type == "text")
