"""Multi-step generation loop and output pacing.

``run_stream`` drives a provider through up to ``max_steps`` model calls,
executing tool calls between steps and feeding their results back.
``smooth_stream`` re-chunks text deltas on word boundaries so clients see
an even flow instead of provider-sized bursts.
"""

import asyncio
import re
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import replace
from typing import Any

import structlog

from agent_vendor.core.exceptions import ProviderError
from agent_vendor.llm.events import (
    Finish,
    ReasoningDelta,
    Source,
    StepEnd,
    StepFinish,
    StepStart,
    StreamEvent,
    TextDelta,
    ToolCall,
    ToolResult,
    Usage,
)
from agent_vendor.llm.providers.base import GenerationRequest, LLMProvider
from agent_vendor.tools.registry import ToolOutcome, ToolSet

logger = structlog.get_logger(__name__)

_WORD = re.compile(r"\S+\s+")


def generate_id() -> str:
    return str(uuid.uuid4())


def _assistant_message(
    message_id: str,
    text: list[str],
    reasoning: list[str],
    signature: str | None,
    tool_calls: list[ToolCall],
) -> dict[str, Any]:
    content: list[dict[str, Any]] = []
    if reasoning:
        content.append({"type": "reasoning", "text": "".join(reasoning), "signature": signature})
    if text:
        content.append({"type": "text", "text": "".join(text)})
    for call in tool_calls:
        content.append({
            "type": "tool-call",
            "toolCallId": call.tool_call_id,
            "toolName": call.tool_name,
            "args": call.args,
        })
    return {"role": "assistant", "id": message_id, "content": content}


async def run_stream(
    provider: LLMProvider,
    request: GenerationRequest,
    tool_set: ToolSet,
    max_steps: int = 20,
    id_factory: Callable[[], str] = generate_id,
) -> AsyncIterator[StreamEvent]:
    """Stream every event of a (possibly multi-step) generation, ending with Finish."""
    response_messages: list[dict[str, Any]] = []
    sources: list[Source] = []
    total = Usage()
    finish_reason = "other"

    for step in range(max_steps):
        message_id = id_factory()
        yield StepStart(message_id)

        text: list[str] = []
        reasoning: list[str] = []
        signature: str | None = None
        tool_calls: list[ToolCall] = []
        step_end: StepEnd | None = None

        step_request = replace(request, messages=[*request.messages, *response_messages])
        async for event in provider.stream_step(step_request):
            if isinstance(event, StepEnd):
                step_end = event
                continue
            if isinstance(event, TextDelta):
                text.append(event.text)
            elif isinstance(event, ReasoningDelta):
                reasoning.append(event.text)
                signature = event.signature or signature
            elif isinstance(event, ToolCall):
                tool_calls.append(event)
            yield event

        if step_end is None:
            raise ProviderError(f"{provider.name} stream ended without a finish event")

        assistant = _assistant_message(message_id, text, reasoning, signature, tool_calls)
        response_messages.append(assistant)
        total = total + step_end.usage
        finish_reason = step_end.finish_reason

        if tool_calls:
            outcomes: dict[str, ToolOutcome] = {}

            async def _execute(call: ToolCall) -> tuple[ToolCall, ToolOutcome]:
                return call, await tool_set.execute(call.tool_name, call.args)

            for pending in asyncio.as_completed([_execute(c) for c in tool_calls]):
                call, outcome = await pending
                outcomes[call.tool_call_id] = outcome
                for source in outcome.sources:
                    sources.append(source)
                    yield source
                yield ToolResult(
                    tool_call_id=call.tool_call_id,
                    tool_name=call.tool_name,
                    args=call.args,
                    result=outcome.result,
                    is_error=outcome.is_error,
                )

            response_messages.append({
                "role": "tool",
                "content": [
                    {
                        "type": "tool-result",
                        "toolCallId": c.tool_call_id,
                        "toolName": c.tool_name,
                        "result": outcomes[c.tool_call_id].result,
                        "isError": outcomes[c.tool_call_id].is_error,
                    }
                    for c in tool_calls
                ],
            })

        is_continued = bool(tool_calls) and finish_reason == "tool-calls" and step + 1 < max_steps
        yield StepFinish(
            message_id=message_id,
            finish_reason=finish_reason,
            usage=step_end.usage,
            is_continued=is_continued,
            response_message=assistant,
        )
        if not is_continued:
            break

    logger.debug("generation_finished", finish_reason=finish_reason, total_tokens=total.total_tokens)
    yield Finish(
        finish_reason=finish_reason,
        usage=total,
        response_messages=response_messages,
        sources=sources,
    )


async def smooth_stream(
    events: AsyncIterator[StreamEvent],
    delay_ms: int = 10,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> AsyncIterator[StreamEvent]:
    """Emit text one word (plus trailing whitespace) at a time.

    Pending text is flushed before any non-text event so ordering is kept.
    """
    delay = delay_ms / 1000
    buffer = ""

    async for event in events:
        if isinstance(event, TextDelta):
            buffer += event.text
            while (match := _WORD.search(buffer)) is not None:
                chunk, buffer = buffer[: match.end()], buffer[match.end():]
                yield TextDelta(chunk)
                if delay:
                    await sleep(delay)
            continue

        if buffer:
            yield TextDelta(buffer)
            buffer = ""
        yield event

    if buffer:
        yield TextDelta(buffer)
