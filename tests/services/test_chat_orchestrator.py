"""Tests for ChatOrchestrator: the POST /api/chat lifecycle.

Driven through scripted fakes (see tests/conftest.py). Covers:

- happy path: chat created, user + assistant messages saved, one transaction
- rate limiting short-circuits everything else
- auth, body, credit, user-message and ownership rejections
- ordering of chat creation, user message, model call, assistant message
- idempotent chat creation across repeated requests
- mid-stream failure reconciliation (partial save, partial billing, error frame)
- success-path persistence failures never reach the client
- tool loop, search opt-out and generation parameter forwarding
"""

import asyncio
import json
from decimal import Decimal

import pytest

from agent_vendor.core import tasks
from agent_vendor.llm.events import StepEnd, StepStart, TextDelta, ToolCall, ToolCallStart, Usage, UsageUpdate
from agent_vendor.schemas.chat import UIMessage
from agent_vendor.services.chat_context import ChatContext
from agent_vendor.services.credit_ledger import ERROR_USAGE_DESCRIPTION, INSUFFICIENT_CREDITS_MESSAGE
from agent_vendor.services.model_registry import ModelInfo

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


async def test_new_chat_happy_path(chat_env):
    response, body = await chat_env.post()

    assert response.status_code == 200
    assert response.headers["x-vercel-ai-data-stream"] == "v1"
    assert chat_env.streamed_text(body) == "Hello there, how can I help?"

    chat = chat_env.store.chats["chat-1"]
    assert chat.title == "New Chat"
    assert chat.user_id == "user-1"
    assert chat.agent_id == "agent-1"

    [user_message] = chat_env.store.messages_by_role("user")
    assert user_message.id == "msg-user-1"
    assert user_message.parts == [{"type": "text", "text": "Hello"}]

    [assistant] = chat_env.store.messages_by_role("assistant")
    assert assistant.id == "assistant-1"
    assert assistant.model_id == "model-1"
    assert {"type": "text", "text": "Hello there, how can I help?"} in assistant.parts

    [record] = chat_env.credits.records
    assert record.message_id == "assistant-1"
    assert record.type == "usage"
    assert (record.input_tokens, record.output_tokens) == (10, 5)
    assert record.cost_per_million_input_tokens == Decimal("3")
    assert record.description is None

    await tasks.drain()
    assert chat_env.title_service.calls == [("chat-1", "msg-user-1")]


async def test_stream_frames_follow_data_stream_protocol(chat_env):
    _, body = await chat_env.post()

    codes = [code for code, _ in chat_env.frames(body)]
    assert codes[0] == "f"
    assert codes[-2:] == ["e", "d"]
    assert "3" not in codes

    finish = dict(chat_env.frames(body))["d"]
    assert finish == {"finishReason": "stop", "usage": {"promptTokens": 10, "completionTokens": 5}}


async def test_stream_is_word_chunked(chat_env):
    _, body = await chat_env.post()

    chunks = [value for code, value in chat_env.frames(body) if code == "0"]
    assert chunks[:3] == ["Hello ", "there, ", "how "]


# ---------------------------------------------------------------------------
# Rejections
# ---------------------------------------------------------------------------


async def test_rate_limited_request_does_no_other_work(chat_env):
    chat_env.rate_limiter.allowed = False
    chat_env.rate_limiter.limit = 100

    response, _ = await chat_env.post()

    assert response.status_code == 429
    assert chat_env.calls == ["rate_limit"]
    assert response.headers["X-RateLimit-Limit"] == "100"
    assert response.headers["X-RateLimit-Remaining"] == "0"
    assert response.headers["X-RateLimit-Reset"] == str(chat_env.rate_limiter.reset_at_ms)

    payload = json.loads(response.body)
    assert payload["error"] == "Too many requests"
    assert payload["limit"] == 100
    assert payload["remaining"] == 0
    assert payload["reset"] > 0


async def test_rate_limit_keys_on_first_forwarded_ip(chat_env):
    await chat_env.post(headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1"})
    assert chat_env.rate_limiter.keys == ["203.0.113.9"]


async def test_unauthenticated_request_is_rejected_after_rate_limit(chat_env):
    chat_env.authenticator.user_id = None

    response, _ = await chat_env.post()

    assert response.status_code == 401
    assert chat_env.calls == ["rate_limit", "auth"]


async def test_malformed_body_is_rejected(chat_env):
    response = await chat_env.orchestrator().handle(chat_env.request(b"{not json"))
    assert response.status_code == 400
    assert response.body == b"Invalid request body"

    response = await chat_env.orchestrator().handle(chat_env.request(chat_env.body(messages=[])))
    assert response.status_code == 400
    assert "save_chat" not in chat_env.calls


async def test_insufficient_credits_has_no_side_effects(chat_env):
    chat_env.credits.credits_available = False

    response, _ = await chat_env.post()

    assert response.status_code == 402
    assert response.body.decode() == INSUFFICIENT_CREDITS_MESSAGE
    assert "save_chat" not in chat_env.calls
    assert not any(c.startswith("save_messages") for c in chat_env.calls)
    assert "llm" not in chat_env.calls
    assert chat_env.store.chats == {}


async def test_no_user_message_is_rejected(chat_env):
    body = chat_env.body(messages=[{"id": "a-0", "role": "assistant", "content": "Hi!"}])

    response, _ = await chat_env.post(body)

    assert response.status_code == 400
    assert response.body == b"No user message found"
    assert "llm" not in chat_env.calls


async def test_existing_chat_owned_by_another_user_is_rejected(chat_env):
    await chat_env.store.save_chat("chat-1", "someone-else", "Theirs", "agent-1")
    chat_env.calls.clear()

    response, _ = await chat_env.post()

    assert response.status_code == 401
    assert not any(c.startswith("save_") for c in chat_env.calls)


async def test_provisioning_failure_returns_500(chat_env):
    chat_env.models.fail = True

    response, _ = await chat_env.post()

    assert response.status_code == 500
    assert "save_chat" not in chat_env.calls
    assert "llm" not in chat_env.calls


async def test_chat_creation_failure_returns_500(chat_env):
    chat_env.store.fail_save_chat = True

    response, _ = await chat_env.post()

    assert response.status_code == 500
    assert response.body == b"Failed to create chat"
    assert not any(c.startswith("save_messages") for c in chat_env.calls)
    assert chat_env.title_service.calls == []


async def test_unknown_model_without_registry_row_is_rejected(chat_env):
    chat_env.models.model = None

    response, _ = await chat_env.post(chat_env.body(selectedChatModel="mystery-model"))

    assert response.status_code == 400
    assert "save_chat" not in chat_env.calls


async def test_provider_is_inferred_when_model_row_is_missing(chat_env):
    chat_env.models.model = None

    response, _ = await chat_env.post()

    assert response.status_code == 200
    assert chat_env.provider_names == ["anthropic"]
    # No billing metadata, so nothing to record
    assert chat_env.credits.records == []


# ---------------------------------------------------------------------------
# Ordering and idempotency
# ---------------------------------------------------------------------------


async def test_writes_happen_in_dependency_order(chat_env):
    await chat_env.post()

    calls = chat_env.calls
    assert calls.index("rate_limit") < calls.index("auth") < calls.index("has_credits")
    assert calls.index("save_chat") < calls.index("save_messages:user")
    assert calls.index("save_messages:user") < calls.index("llm")
    assert calls.index("llm") < calls.index("save_messages:assistant")
    assert calls.index("save_messages:assistant") < calls.index("record_usage")


async def test_repeated_requests_create_chat_once(chat_env, make_text_step):
    await chat_env.post()
    chat_env.provider.steps = [make_text_step("Second answer.", prompt_tokens=20, completion_tokens=4)]
    second_body = chat_env.body(
        messages=[
            {"id": "msg-user-1", "role": "user", "content": "Hello"},
            {"id": "assistant-1", "role": "assistant", "content": "Hello there, how can I help?"},
            {"id": "msg-user-2", "role": "user", "content": "Tell me more"},
        ]
    )

    response, _ = await chat_env.post(second_body)

    assert response.status_code == 200
    assert chat_env.calls.count("save_chat") == 1
    assert list(chat_env.store.chats) == ["chat-1"]
    assert [m.id for m in chat_env.store.messages_by_role("user")] == ["msg-user-1", "msg-user-2"]


# ---------------------------------------------------------------------------
# Transaction type
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("creator_id", "expected"),
    [("user-1", "self_usage"), ("creator-1", "usage")],
)
async def test_transaction_type_follows_creator(chat_env, creator_id, expected):
    await chat_env.post(chat_env.body(creatorId=creator_id))

    [record] = chat_env.credits.records
    assert record.type == expected


# ---------------------------------------------------------------------------
# Mid-stream failure
# ---------------------------------------------------------------------------


async def test_error_before_any_output_bills_partial_tally(chat_env):
    chat_env.provider.steps = [[
        UsageUpdate(Usage(120, 0)),
        UsageUpdate(Usage(120, 30)),
        RuntimeError("provider exploded"),
    ]]

    response, body = await chat_env.post()

    assert response.status_code == 200
    assert chat_env.store.messages_by_role("assistant") == []

    [record] = chat_env.credits.records
    assert (record.input_tokens, record.output_tokens) == (120, 30)
    assert record.description == ERROR_USAGE_DESCRIPTION
    assert record.message_id == "msg-user-1"

    code, message = chat_env.frames(body)[-1]
    assert code == "3"
    assert message == (
        'Error: provider exploded (Usage tally: {"promptTokens":120,"completionTokens":30,"totalTokens":150})'
    )


async def test_error_after_partial_text_saves_partial_message(chat_env):
    chat_env.provider.steps = [[
        UsageUpdate(Usage(50, 0)),
        TextDelta("Partial answer that "),
        UsageUpdate(Usage(50, 8)),
        ConnectionError("stream reset"),
    ]]

    _, body = await chat_env.post()

    [partial] = chat_env.store.messages_by_role("assistant")
    assert partial.id == "assistant-1"
    assert {"type": "text", "text": "Partial answer that "} in partial.parts

    [record] = chat_env.credits.records
    assert record.message_id == "assistant-1"
    assert (record.input_tokens, record.output_tokens) == (50, 8)
    assert chat_env.frames(body)[-1][0] == "3"


async def test_error_with_no_usage_records_nothing(chat_env):
    chat_env.provider.steps = [[RuntimeError("refused")]]

    _, body = await chat_env.post()

    assert chat_env.credits.records == []
    assert "Usage tally" in chat_env.frames(body)[-1][1]


async def test_error_path_skips_messages_saved_on_finish(chat_env):
    orchestrator = chat_env.orchestrator()
    user_message = UIMessage(id="msg-user-1", role="user", content="Hello")
    ctx = ChatContext(
        chat_id="chat-1",
        user_id="user-1",
        agent_id="agent-1",
        creator_id="creator-1",
        model_id="model-1",
        model=chat_env.models.model,
        user_message=user_message,
    )
    ctx.observe(StepStart("assistant-1"))
    ctx.observe(TextDelta("done"))
    ctx.tally.observe(Usage(10, 5))
    ctx.saved_message_ids.add("assistant-1")
    ctx.billed = True

    message = await orchestrator.on_error(ctx, TimeoutError())

    assert not any(c.startswith("save_messages") for c in chat_env.calls)
    assert chat_env.credits.records == []
    assert message.startswith("Error: Generation timed out")


async def test_error_path_failures_are_contained(chat_env):
    chat_env.store.fail_roles = {"assistant"}
    chat_env.credits.fail_record = True
    chat_env.provider.steps = [[
        UsageUpdate(Usage(5, 0)),
        TextDelta("Half "),
        RuntimeError("boom"),
    ]]

    response, body = await chat_env.post()

    assert response.status_code == 200
    assert chat_env.frames(body)[-1][0] == "3"
    assert "record_usage" in chat_env.calls


async def test_stream_timeout_goes_through_error_path(chat_env):
    chat_env.settings.chat_stream_timeout_seconds = 0.05

    class SlowProvider(type(chat_env.provider)):
        async def stream_step(self, request):
            self.calls.append("llm")
            yield UsageUpdate(Usage(7, 0))
            await asyncio.sleep(1)
            yield StepEnd(finish_reason="stop", usage=Usage(7, 1))

    chat_env.provider = SlowProvider(chat_env.calls)

    _, body = await chat_env.post()

    code, message = chat_env.frames(body)[-1]
    assert code == "3"
    assert message.startswith("Error: Generation timed out")
    [record] = chat_env.credits.records
    assert record.input_tokens == 7


async def test_slow_billing_after_finish_is_not_billed_again(chat_env):
    chat_env.settings.chat_stream_timeout_seconds = 0.2

    class CommitThenStallLedger(type(chat_env.credits)):
        async def record_usage(self, record):
            # Row committed, cache refresh still pending
            self.records.append(record)
            await asyncio.sleep(0.5)
            return Decimal("-0.01")

    chat_env.credits = CommitThenStallLedger(chat_env.calls)

    _, body = await chat_env.post()

    codes = [code for code, _ in chat_env.frames(body)]
    assert codes[-1] == "d"
    assert "3" not in codes
    [record] = chat_env.credits.records
    assert record.message_id == "assistant-1"
    assert record.description is None
    [assistant] = chat_env.store.messages_by_role("assistant")
    assert assistant.id == "assistant-1"


# ---------------------------------------------------------------------------
# Success-path persistence failures
# ---------------------------------------------------------------------------


async def test_assistant_save_failure_is_not_surfaced(chat_env):
    chat_env.store.fail_roles = {"assistant"}

    response, body = await chat_env.post()

    assert response.status_code == 200
    codes = [code for code, _ in chat_env.frames(body)]
    assert codes[-1] == "d"
    assert "3" not in codes
    assert chat_env.credits.records == []


async def test_billing_failure_is_not_surfaced(chat_env):
    chat_env.credits.fail_record = True

    _, body = await chat_env.post()

    assert [code for code, _ in chat_env.frames(body)][-1] == "d"
    assert len(chat_env.store.messages_by_role("assistant")) == 1


# ---------------------------------------------------------------------------
# Tools and generation settings
# ---------------------------------------------------------------------------


async def test_tool_call_loop_streams_calls_and_results(chat_env):
    chat_env.models.tool_names = ["calculator"]
    chat_env.provider.steps = [
        [
            UsageUpdate(Usage(30, 0)),
            ToolCallStart(tool_call_id="call-1", tool_name="calculator"),
            ToolCall(tool_call_id="call-1", tool_name="calculator", args={"expression": "6 * 7"}),
            StepEnd(finish_reason="tool-calls", usage=Usage(30, 12)),
        ],
        [
            UsageUpdate(Usage(60, 0)),
            TextDelta("The answer is 42."),
            StepEnd(finish_reason="stop", usage=Usage(60, 6)),
        ],
    ]

    _, body = await chat_env.post()

    frames = chat_env.frames(body)
    codes = [code for code, _ in frames]
    assert codes.count("f") == 2
    assert {"toolCallId": "call-1", "result": {"result": "42"}} in [v for c, v in frames if c == "a"]

    second_request = chat_env.provider.requests[1]
    tool_message = second_request.messages[-1]
    assert tool_message["role"] == "tool"
    assert tool_message["content"][0]["result"] == {"result": "42"}

    [assistant] = chat_env.store.messages_by_role("assistant")
    assert assistant.id == "assistant-2"
    invocation = next(p for p in assistant.parts if p["type"] == "tool-invocation")["toolInvocation"]
    assert invocation["state"] == "result"

    [record] = chat_env.credits.records
    assert (record.input_tokens, record.output_tokens) == (90, 18)


async def test_search_disabled_removes_search_tools(chat_env):
    chat_env.models.tool_names = ["searchTool", "retrieveTool", "calculator"]

    await chat_env.post(chat_env.body(searchEnabled=False))

    request = chat_env.provider.requests[0]
    assert [t.name for t in request.tools] == ["calculator"]
    assert "searchTool" not in request.system


async def test_search_enabled_by_default(chat_env):
    chat_env.models.tool_names = ["searchTool", "retrieveTool"]

    await chat_env.post()

    request = chat_env.provider.requests[0]
    assert [t.name for t in request.tools] == ["searchTool", "retrieveTool"]
    assert "searchTool" in request.system


async def test_model_without_tool_support_gets_no_tools(chat_env):
    chat_env.models.tool_names = ["calculator"]
    chat_env.models.model = ModelInfo(id="model-1", model="o1-mini", provider="openai", supports_tools=False)

    await chat_env.post()

    assert chat_env.provider.requests[0].tools == []


async def test_only_changed_generation_params_are_forwarded(chat_env):
    body = chat_env.body(
        generationParams={
            "temperature": {"value": 0.2, "changed": True},
            "topP": {"value": 0.9, "changed": False},
            "maxTokens": {"value": 512, "changed": True},
        }
    )

    await chat_env.post(body)

    assert chat_env.provider.requests[0].params == {"temperature": 0.2, "max_tokens": 512}


async def test_agent_prompt_and_knowledge_reach_system_prompt(chat_env):
    body = chat_env.body(agentSystemPrompt="You are Chef Bot.", knowledge=["Always use butter."])

    await chat_env.post(body)

    system = chat_env.provider.requests[0].system
    assert system.startswith("You are Chef Bot.")
    assert "Always use butter." in system


async def test_group_chat_mentions_do_not_change_flow(chat_env):
    body = chat_env.body(
        isGroupChat=True,
        groupAgents=[{"id": "a1", "name": "Chef", "handle": "chef"}],
        messages=[{"id": "msg-user-1", "role": "user", "content": "hey @Chef"}],
    )

    response, _ = await chat_env.post(body)

    assert response.status_code == 200
    assert len(chat_env.store.messages_by_role("assistant")) == 1
