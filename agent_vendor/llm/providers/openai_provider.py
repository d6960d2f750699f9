"""OpenAI Chat Completions adapter."""

import json
from collections.abc import AsyncIterator
from typing import Any

import structlog
from openai import AsyncOpenAI

from agent_vendor.core.exceptions import ProviderError
from agent_vendor.llm.events import (
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

_SUPPORTED_PARAMS = ("temperature", "top_p", "presence_penalty", "frequency_penalty", "seed")

_FINISH_REASONS = {
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
    "content_filter": "content-filter",
}


def _result_text(result: Any) -> str:
    return result if isinstance(result, str) else json.dumps(result, default=str)


def to_openai_messages(system: str, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    converted: list[dict[str, Any]] = []
    if system:
        converted.append({"role": "system", "content": system})

    for message in messages:
        role = message["role"]
        if role == "system":
            converted.append({"role": "system", "content": message["content"]})
        elif role == "user":
            blocks = message["content"]
            if all(b["type"] == "text" for b in blocks):
                converted.append({"role": "user", "content": "\n".join(b["text"] for b in blocks)})
            else:
                converted.append({
                    "role": "user",
                    "content": [
                        {"type": "text", "text": b["text"]}
                        if b["type"] == "text"
                        else {"type": "image_url", "image_url": {"url": b["url"]}}
                        for b in blocks
                    ],
                })
        elif role == "assistant":
            text = "".join(b["text"] for b in message["content"] if b["type"] == "text")
            tool_calls = [
                {
                    "id": b["toolCallId"],
                    "type": "function",
                    "function": {"name": b["toolName"], "arguments": json.dumps(b.get("args") or {})},
                }
                for b in message["content"]
                if b["type"] == "tool-call"
            ]
            entry: dict[str, Any] = {"role": "assistant", "content": text or None}
            if tool_calls:
                entry["tool_calls"] = tool_calls
            if text or tool_calls:
                converted.append(entry)
        elif role == "tool":
            for b in message["content"]:
                converted.append({
                    "role": "tool",
                    "tool_call_id": b["toolCallId"],
                    "content": _result_text(b.get("result")),
                })

    return converted


class OpenAIProvider:
    name = "openai"

    def __init__(self, api_key: str | None = None, client: Any | None = None):
        self._client = client or AsyncOpenAI(api_key=api_key)

    def _build_kwargs(self, request: GenerationRequest) -> dict[str, Any]:
        params = dict(request.params)
        kwargs: dict[str, Any] = {
            "model": request.model,
            "messages": to_openai_messages(request.system, request.messages),
            "max_completion_tokens": int(params.pop("max_tokens", request.max_tokens)),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        for key in _SUPPORTED_PARAMS:
            if key in params:
                kwargs[key] = params[key]
        if request.tools:
            kwargs["tools"] = [
                {
                    "type": "function",
                    "function": {"name": t.name, "description": t.description, "parameters": t.parameters},
                }
                for t in request.tools
            ]
        kwargs.update(options_for(self.name, request.provider_options))
        return kwargs

    async def stream_step(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]:
        stream = await self._client.chat.completions.create(**self._build_kwargs(request))

        calls: dict[int, dict[str, str]] = {}
        finish_reason = "other"
        usage = Usage()

        async for chunk in stream:
            if chunk.usage is not None:
                usage = Usage(chunk.usage.prompt_tokens, chunk.usage.completion_tokens)
                yield UsageUpdate(usage)
            if not chunk.choices:
                continue

            choice = chunk.choices[0]
            delta = choice.delta
            if delta is not None and delta.content:
                yield TextDelta(delta.content)
            for tc in (delta.tool_calls if delta is not None else None) or []:
                call = calls.get(tc.index)
                if call is None:
                    call = {"id": tc.id, "name": tc.function.name, "args": ""}
                    calls[tc.index] = call
                    yield ToolCallStart(tool_call_id=call["id"], tool_name=call["name"])
                if tc.function is not None and tc.function.arguments:
                    call["args"] += tc.function.arguments
                    yield ToolCallDelta(call["id"], tc.function.arguments)
            if choice.finish_reason:
                finish_reason = _FINISH_REASONS.get(choice.finish_reason, "other")

        for index in sorted(calls):
            call = calls[index]
            try:
                args = json.loads(call["args"]) if call["args"] else {}
            except json.JSONDecodeError as e:
                raise ProviderError(f"Malformed tool arguments for {call['name']}: {e}") from e
            yield ToolCall(tool_call_id=call["id"], tool_name=call["name"], args=args)

        yield StepEnd(finish_reason=finish_reason, usage=usage)

    async def complete(self, model: str, system: str, prompt: str, max_tokens: int = 256) -> str:
        response = await self._client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            max_completion_tokens=max_tokens,
        )
        return response.choices[0].message.content or ""
