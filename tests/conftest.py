"""Shared fakes and fixtures for all test groups.

The chat fakes append to one shared ``calls`` list so tests can assert the
relative order of rate limiting, auth, provisioning, writes and model calls.
"""

import itertools
import json
from decimal import Decimal

import pytest
from starlette.requests import Request

from agent_vendor.core.auth import AuthenticatedUser
from agent_vendor.core.config import Settings
from agent_vendor.core.rate_limit import RateLimitResult
from agent_vendor.llm.events import StepEnd, TextDelta, Usage, UsageUpdate
from agent_vendor.services.chat_orchestrator import ChatOrchestrator
from agent_vendor.services.chat_store import ChatRecord
from agent_vendor.services.model_registry import ModelInfo


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeRateLimiter:
    def __init__(self, calls: list, allowed: bool = True, limit: int = 100, reset_at_ms: int = 4_102_444_800_000):
        self.calls = calls
        self.allowed = allowed
        self.limit = limit
        self.reset_at_ms = reset_at_ms
        self.keys: list[str] = []

    async def limit_request(self, client_key: str) -> RateLimitResult:
        self.calls.append("rate_limit")
        self.keys.append(client_key)
        return RateLimitResult(
            allowed=self.allowed,
            limit=self.limit,
            remaining=self.limit - 1 if self.allowed else 0,
            reset_at_ms=self.reset_at_ms,
        )


class FakeAuthenticator:
    def __init__(self, calls: list, user_id: str | None = "user-1"):
        self.calls = calls
        self.user_id = user_id

    async def authenticate(self, request) -> AuthenticatedUser | None:
        self.calls.append("auth")
        if self.user_id is None:
            return None
        return AuthenticatedUser(user_id=self.user_id, claims={"sub": self.user_id})


class FakeCreditLedger:
    def __init__(self, calls: list, has_credits: bool = True, fail_record: bool = False):
        self.calls = calls
        self.credits_available = has_credits
        self.fail_record = fail_record
        self.records = []

    async def has_credits(self, user_id: str) -> bool:
        self.calls.append("has_credits")
        return self.credits_available

    async def record_usage(self, record) -> Decimal:
        self.calls.append("record_usage")
        if self.fail_record:
            raise RuntimeError("ledger unavailable")
        self.records.append(record)
        return Decimal("-0.01")


class FakeChatStore:
    def __init__(self, calls: list):
        self.calls = calls
        self.chats: dict[str, ChatRecord] = {}
        self.messages: dict = {}
        self.fail_save_chat = False
        self.fail_get_chat = False
        self.fail_roles: set[str] = set()

    async def get_chat(self, chat_id: str) -> ChatRecord | None:
        self.calls.append("get_chat")
        if self.fail_get_chat:
            raise RuntimeError("database unavailable")
        return self.chats.get(chat_id)

    async def save_chat(self, chat_id: str, user_id: str, title: str, agent_id: str | None) -> bool:
        self.calls.append("save_chat")
        if self.fail_save_chat:
            raise RuntimeError("insert failed")
        if chat_id in self.chats:
            return False
        self.chats[chat_id] = ChatRecord(id=chat_id, user_id=user_id, agent_id=agent_id, title=title)
        return True

    async def update_chat_title(self, chat_id: str, title: str) -> None:
        self.calls.append("update_title")
        chat = self.chats[chat_id]
        self.chats[chat_id] = ChatRecord(id=chat.id, user_id=chat.user_id, agent_id=chat.agent_id, title=title)

    async def save_messages(self, messages) -> list[str]:
        role = messages[0].role if messages else "none"
        self.calls.append(f"save_messages:{role}")
        if role in self.fail_roles:
            raise RuntimeError(f"could not save {role} message")
        written = []
        for message in messages:
            if message.id not in self.messages:
                self.messages[message.id] = message
                written.append(message.id)
        return written

    async def delete_chat(self, chat_id: str) -> None:
        self.calls.append("delete_chat")
        self.chats.pop(chat_id, None)
        self.messages = {k: m for k, m in self.messages.items() if m.chat_id != chat_id}

    def messages_by_role(self, role: str) -> list:
        return [m for m in self.messages.values() if m.role == role]


class FakeModelRegistry:
    def __init__(self, calls: list, model: ModelInfo | None = None, tool_names: list[str] | None = None):
        self.calls = calls
        self.model = model
        self.tool_names = tool_names or []
        self.fail = False

    async def get_model(self, model_id: str) -> ModelInfo | None:
        self.calls.append("get_model")
        if self.fail:
            raise RuntimeError("model lookup failed")
        return self.model

    async def get_agent_tool_names(self, agent_id: str) -> list[str]:
        self.calls.append("get_tools")
        return list(self.tool_names)


class FakeProvider:
    """Scripted provider: one list of events per model call.

    An exception instance inside a script is raised at that point.
    """

    name = "fake"

    def __init__(self, calls: list, steps: list[list] | None = None):
        self.calls = calls
        self.steps = list(steps or [])
        self.requests = []

    async def stream_step(self, request):
        self.calls.append("llm")
        self.requests.append(request)
        script = self.steps.pop(0) if self.steps else []
        for item in script:
            if isinstance(item, BaseException):
                raise item
            yield item

    async def complete(self, model: str, system: str, prompt: str, max_tokens: int = 256) -> str:
        return '"Friendly Greeting"'


class FakeTitleService:
    def __init__(self):
        self.calls: list[tuple[str, str]] = []

    async def refine_title(self, chat_id: str, message) -> None:
        self.calls.append((chat_id, message.id))


def text_step(text: str, prompt_tokens: int = 10, completion_tokens: int = 5) -> list:
    """Events for one model call that answers with ``text`` and stops."""
    return [
        UsageUpdate(Usage(prompt_tokens, 0)),
        TextDelta(text),
        UsageUpdate(Usage(prompt_tokens, completion_tokens)),
        StepEnd(finish_reason="stop", usage=Usage(prompt_tokens, completion_tokens)),
    ]


DEFAULT_MODEL = ModelInfo(
    id="model-1",
    model="claude-sonnet-4-20250514",
    provider="anthropic",
    display_name="Claude Sonnet 4",
    cost_per_million_input_tokens=Decimal("3"),
    cost_per_million_output_tokens=Decimal("15"),
)


class ChatEnv:
    """Bundle of fakes plus helpers to drive a ChatOrchestrator."""

    def __init__(self):
        self.calls: list[str] = []
        self.rate_limiter = FakeRateLimiter(self.calls)
        self.authenticator = FakeAuthenticator(self.calls)
        self.credits = FakeCreditLedger(self.calls)
        self.store = FakeChatStore(self.calls)
        self.models = FakeModelRegistry(self.calls, model=DEFAULT_MODEL)
        self.provider = FakeProvider(self.calls, steps=[text_step("Hello there, how can I help?")])
        self.title_service = FakeTitleService()
        self.settings = Settings(
            smooth_stream_delay_ms=0,
            chat_stream_timeout_seconds=5.0,
            session_secret="test-session-secret-0123456789abcdef",
        )
        self.provider_names: list[str] = []
        counter = itertools.count(1)
        self.id_factory = lambda: f"assistant-{next(counter)}"

    def _provider_factory(self, name: str):
        self.provider_names.append(name)
        return self.provider

    def orchestrator(self) -> ChatOrchestrator:
        return ChatOrchestrator(
            rate_limiter=self.rate_limiter,
            authenticator=self.authenticator,
            credits=self.credits,
            store=self.store,
            models=self.models,
            provider_factory=self._provider_factory,
            title_service=self.title_service,
            settings=self.settings,
            id_factory=self.id_factory,
        )

    @staticmethod
    def body(**overrides) -> dict:
        body = {
            "id": "chat-1",
            "messages": [
                {
                    "id": "msg-user-1",
                    "role": "user",
                    "content": "Hello",
                    "parts": [{"type": "text", "text": "Hello"}],
                }
            ],
            "selectedChatModel": "claude-sonnet-4-20250514",
            "selectedModelId": "model-1",
            "agentId": "agent-1",
            "creatorId": "creator-1",
        }
        body.update(overrides)
        return body

    @staticmethod
    def request(body, headers: dict[str, str] | None = None) -> Request:
        raw = body if isinstance(body, bytes) else json.dumps(body).encode()
        sent = False

        async def receive():
            nonlocal sent
            if sent:
                return {"type": "http.disconnect"}
            sent = True
            return {"type": "http.request", "body": raw, "more_body": False}

        header_list = [(b"content-type", b"application/json")]
        for key, value in (headers or {}).items():
            header_list.append((key.lower().encode(), value.encode()))
        scope = {
            "type": "http",
            "method": "POST",
            "path": "/api/chat",
            "headers": header_list,
            "query_string": b"",
            "client": ("10.0.0.7", 52100),
        }
        return Request(scope, receive)

    @staticmethod
    def frames(text: str) -> list[tuple[str, object]]:
        """Split a data-stream body into (code, decoded value) pairs."""
        frames = []
        for line in text.splitlines():
            code, _, payload = line.partition(":")
            frames.append((code, json.loads(payload)))
        return frames

    @classmethod
    def streamed_text(cls, text: str) -> str:
        return "".join(value for code, value in cls.frames(text) if code == "0")

    async def post(self, body=None, headers: dict[str, str] | None = None):
        """Run one POST through the orchestrator; returns (response, streamed text)."""
        response = await self.orchestrator().handle(self.request(body or self.body(), headers))
        text = ""
        if hasattr(response, "body_iterator"):
            async for chunk in response.body_iterator:
                text += chunk if isinstance(chunk, str) else chunk.decode()
        return response, text


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def chat_env() -> ChatEnv:
    return ChatEnv()


@pytest.fixture
def make_text_step():
    return text_step


@pytest.fixture
def fake_provider_cls():
    return FakeProvider


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        session_secret="test-session-secret-0123456789abcdef",
        smooth_stream_delay_ms=0,
        credits_cache_ttl_seconds=600,
    )
