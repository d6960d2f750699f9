"""Conversion between client UI messages and provider-neutral core messages.

UI messages carry ``parts`` (text, reasoning, source, tool-invocation,
step-start). Core messages are what providers consume::

    {"role": "user", "content": [{"type": "text", "text": "..."}]}
    {"role": "assistant", "id": "...", "content": [text | reasoning | tool-call]}
    {"role": "tool", "content": [{"type": "tool-result", ...}]}
"""

from typing import Any

from agent_vendor.llm.events import Source
from agent_vendor.schemas.chat import UIMessage


def get_most_recent_user_message(messages: list[UIMessage]) -> UIMessage | None:
    for message in reversed(messages):
        if message.role == "user":
            return message
    return None


def flatten_text(message: UIMessage | None) -> str:
    """Join the text parts of a message into plain text."""
    if message is None:
        return ""
    texts = [p.get("text", "") for p in message.parts if p.get("type") == "text"]
    if not texts:
        return message.content
    return "\n".join(t for t in texts if t)


def get_trailing_message_id(response_messages: list[dict[str, Any]]) -> str | None:
    """Return the id of the last assistant message in a provider response."""
    for message in reversed(response_messages):
        if message.get("role") == "assistant":
            return message.get("id")
    return None


def _user_content(message: UIMessage) -> list[dict[str, Any]]:
    content: list[dict[str, Any]] = []
    for part in message.parts:
        if part.get("type") == "text" and part.get("text"):
            content.append({"type": "text", "text": part["text"]})
    if not content and message.content:
        content.append({"type": "text", "text": message.content})
    for attachment in message.attachments:
        if attachment.content_type and attachment.content_type.startswith("image/"):
            content.append({"type": "image", "url": attachment.url, "media_type": attachment.content_type})
        else:
            content.append({"type": "text", "text": f"[Attachment: {attachment.name or attachment.url}]"})
    return content


def _assistant_messages(message: UIMessage) -> list[dict[str, Any]]:
    """Split one UI assistant message into per-step assistant/tool messages."""
    result: list[dict[str, Any]] = []
    content: list[dict[str, Any]] = []
    tool_results: list[dict[str, Any]] = []

    def flush() -> None:
        nonlocal content, tool_results
        if content:
            result.append({"role": "assistant", "id": message.id, "content": content})
        if tool_results:
            result.append({"role": "tool", "content": tool_results})
        content = []
        tool_results = []

    for part in message.parts:
        kind = part.get("type")
        if kind == "step-start":
            flush()
        elif kind == "text" and part.get("text"):
            content.append({"type": "text", "text": part["text"]})
        elif kind == "reasoning":
            for detail in part.get("details") or [{"text": part.get("reasoning", "")}]:
                if detail.get("text"):
                    content.append({
                        "type": "reasoning",
                        "text": detail["text"],
                        "signature": detail.get("signature"),
                    })
        elif kind == "tool-invocation":
            invocation = part.get("toolInvocation", {})
            # Calls that never produced a result cannot be replayed to a provider
            if invocation.get("state") != "result":
                continue
            content.append({
                "type": "tool-call",
                "toolCallId": invocation["toolCallId"],
                "toolName": invocation["toolName"],
                "args": invocation.get("args", {}),
            })
            tool_results.append({
                "type": "tool-result",
                "toolCallId": invocation["toolCallId"],
                "toolName": invocation["toolName"],
                "result": invocation.get("result"),
            })
    flush()

    if not result and message.content:
        result.append({"role": "assistant", "id": message.id, "content": [{"type": "text", "text": message.content}]})
    return result


def to_core_messages(messages: list[UIMessage]) -> list[dict[str, Any]]:
    core: list[dict[str, Any]] = []
    for message in messages:
        if message.role == "system":
            text = flatten_text(message)
            if text:
                core.append({"role": "system", "content": text})
        elif message.role == "user":
            content = _user_content(message)
            if content:
                core.append({"role": "user", "content": content})
        else:
            core.extend(_assistant_messages(message))
    return core


def source_part(source: Source) -> dict[str, Any]:
    return {
        "type": "source",
        "source": {"sourceType": "url", "id": source.id, "url": source.url, "title": source.title},
    }


def append_response_messages(
    response_messages: list[dict[str, Any]],
    sources: list[Source] | None = None,
) -> dict[str, Any] | None:
    """Materialize the assistant UI message for a finished generation.

    Source citations become the leading parts, followed by each step's
    content in order. Tool results are folded into their invocation parts.
    """
    assistant_id = get_trailing_message_id(response_messages)
    if assistant_id is None:
        return None

    parts: list[dict[str, Any]] = [source_part(s) for s in sources or []]
    invocations: dict[str, dict[str, Any]] = {}
    step = 0

    for message in response_messages:
        if message.get("role") == "assistant":
            parts.append({"type": "step-start"})
            for block in message.get("content", []):
                kind = block.get("type")
                if kind == "text":
                    parts.append({"type": "text", "text": block["text"]})
                elif kind == "reasoning":
                    parts.append({
                        "type": "reasoning",
                        "reasoning": block["text"],
                        "details": [{"type": "text", "text": block["text"], "signature": block.get("signature")}],
                    })
                elif kind == "tool-call":
                    invocation = {
                        "state": "call",
                        "step": step,
                        "toolCallId": block["toolCallId"],
                        "toolName": block["toolName"],
                        "args": block.get("args", {}),
                    }
                    invocations[block["toolCallId"]] = invocation
                    parts.append({"type": "tool-invocation", "toolInvocation": invocation})
            step += 1
        elif message.get("role") == "tool":
            for block in message.get("content", []):
                invocation = invocations.get(block.get("toolCallId"))
                if invocation is not None:
                    invocation["state"] = "result"
                    invocation["result"] = block.get("result")

    return {"id": assistant_id, "role": "assistant", "parts": parts, "attachments": []}
