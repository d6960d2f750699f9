"""ChatOrchestrator: the POST /api/chat request lifecycle.

Order of work for one request:

1. rate limit (before anything else, including body parsing)
2. authenticate
3. parse the body, log group-chat mentions
4. provisioning fan-out: credits, model row, agent tools, latest user
   message, existing chat (all-or-error)
5. reject on credits / missing user message / foreign chat
6. create the chat if missing, then refine its title in the background
7. persist the user message
8. stream the generation from a detached producer task

The producer keeps running if the client goes away, so the assistant
message and its usage transaction are still recorded.
"""

import asyncio
import json
import time
from collections.abc import AsyncIterator, Callable

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse

from agent_vendor.core.auth import SessionAuthenticator
from agent_vendor.core.config import Settings, get_settings
from agent_vendor.core.exceptions import ProviderError, UnknownModelError
from agent_vendor.core.rate_limit import SlidingWindowRateLimiter, get_client_ip
from agent_vendor.core.tasks import spawn
from agent_vendor.llm.events import Finish
from agent_vendor.llm.messages import (
    append_response_messages,
    flatten_text,
    get_most_recent_user_message,
    get_trailing_message_id,
    to_core_messages,
)
from agent_vendor.llm.protocol import DATA_STREAM_HEADERS, encode_error, encode_event
from agent_vendor.llm.providers.base import GenerationRequest, LLMProvider
from agent_vendor.llm.streaming import generate_id, run_stream, smooth_stream
from agent_vendor.schemas.chat import ChatRequest, UIMessage
from agent_vendor.services.chat_context import ChatContext
from agent_vendor.services.chat_store import ChatStore, MessageRecord
from agent_vendor.services.credit_ledger import (
    ERROR_USAGE_DESCRIPTION,
    INSUFFICIENT_CREDITS_MESSAGE,
    CreditLedger,
    UsageRecord,
    transaction_type,
)
from agent_vendor.services.mentions import detect_mentions
from agent_vendor.services.model_registry import ModelRegistry, infer_provider
from agent_vendor.services.prompts import build_system_prompt
from agent_vendor.services.title_service import PROVISIONAL_TITLE, TitleService
from agent_vendor.tools.registry import ToolName, ToolSet, build_tool_set

logger = structlog.get_logger(__name__)

_END = object()


def format_stream_error(error: BaseException, tally: dict[str, int]) -> str:
    """Human-readable terminal message carrying the usage observed so far."""
    tally_json = json.dumps(tally, separators=(",", ":"))
    detail = str(error)
    if not detail and isinstance(error, TimeoutError):
        detail = "Generation timed out"
    if detail:
        return f"Error: {detail} (Usage tally: {tally_json})"
    return f"Oops, an error occurred! Please try again. (Usage tally: {tally_json})"


# Async so the lookup runs inside the provisioning gather with the I/O calls.
async def _most_recent_user_message(messages: list[UIMessage]) -> UIMessage | None:
    return get_most_recent_user_message(messages)


class ChatOrchestrator:
    def __init__(
        self,
        *,
        rate_limiter: SlidingWindowRateLimiter,
        authenticator: SessionAuthenticator,
        credits: CreditLedger,
        store: ChatStore,
        models: ModelRegistry,
        provider_factory: Callable[[str], LLMProvider],
        title_service: TitleService,
        settings: Settings | None = None,
        id_factory: Callable[[], str] = generate_id,
    ):
        self.rate_limiter = rate_limiter
        self.authenticator = authenticator
        self.credits = credits
        self.store = store
        self.models = models
        self.provider_factory = provider_factory
        self.title_service = title_service
        self.settings = settings or get_settings()
        self.id_factory = id_factory

    # ------------------------------------------------------------------
    # Request lifecycle
    # ------------------------------------------------------------------

    async def handle(self, request: Request) -> Response:
        started = time.perf_counter()

        limit = await self.rate_limiter.limit_request(get_client_ip(request))
        if not limit.allowed:
            now_ms = int(time.time() * 1000)
            logger.info("chat_rate_limited", limit=limit.limit)
            return JSONResponse(
                status_code=429,
                content={
                    "error": "Too many requests",
                    "limit": limit.limit,
                    "remaining": limit.remaining,
                    "reset": max(limit.reset_at_ms - now_ms, 0),
                },
                headers=limit.headers(),
            )

        user = await self.authenticator.authenticate(request)
        if user is None:
            return PlainTextResponse("Unauthorized", status_code=401)

        try:
            body = ChatRequest.model_validate(await request.json())
        except ValueError as e:
            logger.info("chat_request_invalid", user_id=user.user_id, error=str(e))
            return PlainTextResponse("Invalid request body", status_code=400)

        log = logger.bind(chat_id=body.id, user_id=user.user_id, agent_id=body.agent_id)

        if body.is_group_chat and body.group_agents:
            latest_text = flatten_text(body.messages[-1])
            mentioned = detect_mentions([latest_text], body.group_agents)
            log.info("group_chat_mentions", mentioned_agent_ids=sorted(mentioned))

        try:
            has_credits, model, tool_names, user_message, chat = await asyncio.gather(
                self.credits.has_credits(user.user_id),
                self.models.get_model(body.selected_model_id),
                self.models.get_agent_tool_names(body.agent_id),
                _most_recent_user_message(body.messages),
                self.store.get_chat(body.id),
            )
        except Exception as e:
            log.error("chat_provisioning_failed", error=str(e), error_type=type(e).__name__)
            return PlainTextResponse("An error occurred while processing your request", status_code=500)

        if not has_credits:
            return PlainTextResponse(INSUFFICIENT_CREDITS_MESSAGE, status_code=402)
        if user_message is None:
            return PlainTextResponse("No user message found", status_code=400)
        if chat is not None and chat.user_id != user.user_id:
            log.warning("chat_owner_mismatch")
            return PlainTextResponse("Unauthorized", status_code=401)

        provider_name = model.provider if model is not None else infer_provider(body.selected_chat_model)
        try:
            if provider_name is None:
                raise UnknownModelError(body.selected_chat_model)
            provider = self.provider_factory(provider_name)
        except UnknownModelError as e:
            log.warning("chat_unknown_model", model=body.selected_chat_model, error=str(e))
            return PlainTextResponse("Unknown model", status_code=400)

        if chat is None:
            try:
                await self.store.save_chat(body.id, user.user_id, PROVISIONAL_TITLE, body.agent_id)
            except Exception as e:
                log.error("chat_create_failed", error=str(e), error_type=type(e).__name__)
                return PlainTextResponse("Failed to create chat", status_code=500)
            spawn(self.title_service.refine_title(body.id, user_message), name=f"chat-title:{body.id}")

        try:
            await self.store.save_messages([
                MessageRecord(
                    id=user_message.id,
                    chat_id=body.id,
                    role="user",
                    parts=user_message.parts,
                    attachments=[a.model_dump(by_alias=True, exclude_none=True) for a in user_message.attachments],
                )
            ])
        except Exception as e:
            log.error("chat_user_message_save_failed", error=str(e), error_type=type(e).__name__)
            return PlainTextResponse("An error occurred while processing your request", status_code=500)

        tool_set = build_tool_set(
            tool_names,
            body.search_enabled,
            supports_tools=model.supports_tools if model is not None else True,
            settings=self.settings,
        )
        generation = GenerationRequest(
            model=body.selected_chat_model,
            system=build_system_prompt(
                body.agent_system_prompt,
                body.knowledge,
                has_search_tool=ToolName.SEARCH in tool_set.active,
            ),
            messages=to_core_messages(body.messages),
            tools=tool_set.specs(),
            max_tokens=self.settings.chat_max_tokens,
            params=body.generation_params.changed_values() if body.generation_params else {},
            provider_options=model.provider_options if model is not None else {},
        )
        ctx = ChatContext(
            chat_id=body.id,
            user_id=user.user_id,
            agent_id=body.agent_id,
            creator_id=body.creator_id,
            model_id=body.selected_model_id,
            model=model,
            user_message=user_message,
        )

        queue: asyncio.Queue = asyncio.Queue()
        spawn(self._produce(ctx, provider, generation, tool_set, queue), name=f"chat-stream:{body.id}")

        log.info(
            "chat_stream_started",
            provider=provider_name,
            model=body.selected_chat_model,
            tools=tool_set.names,
            active_tools=[t.value for t in tool_set.active],
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        return StreamingResponse(_drain(queue), media_type="text/plain; charset=utf-8", headers=DATA_STREAM_HEADERS)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def _produce(
        self,
        ctx: ChatContext,
        provider: LLMProvider,
        generation: GenerationRequest,
        tool_set: ToolSet,
        queue: asyncio.Queue,
    ) -> None:
        """Run the generation, feeding frames to ``queue``. Never raises.

        Only generation runs under the stream timeout. Once Finish has been
        seen the finish handler owns persistence and billing, and the error
        path must not run for that generation.
        """
        finish: Finish | None = None
        try:
            async with asyncio.timeout(self.settings.chat_stream_timeout_seconds):
                events = smooth_stream(
                    run_stream(
                        provider,
                        generation,
                        tool_set,
                        max_steps=self.settings.chat_max_steps,
                        id_factory=self.id_factory,
                    ),
                    delay_ms=self.settings.smooth_stream_delay_ms,
                )
                async for event in events:
                    ctx.observe(event)
                    encoded = encode_event(event)
                    if encoded:
                        queue.put_nowait(encoded)
                    if isinstance(event, Finish):
                        finish = event
            if finish is not None:
                # Shielded: a cancelled producer must not interrupt a commit
                await asyncio.shield(self.on_finish(ctx, finish))
        except asyncio.CancelledError as e:
            if finish is None:
                spawn(self.on_error(ctx, e), name=f"chat-recover:{ctx.chat_id}")
            raise
        except Exception as e:
            if finish is not None:
                await self.on_finish(ctx, finish)
            else:
                queue.put_nowait(encode_error(await self.on_error(ctx, e)))
        finally:
            queue.put_nowait(_END)

    async def on_finish(self, ctx: ChatContext, finish: Finish) -> None:
        """Persist the assistant message and bill it. Failures are logged only."""
        log = logger.bind(chat_id=ctx.chat_id, user_id=ctx.user_id)
        try:
            assistant_id = get_trailing_message_id(finish.response_messages)
            if assistant_id is None:
                raise ProviderError("No assistant message found!")

            assistant = append_response_messages(finish.response_messages, finish.sources)
            await self.store.save_messages([
                MessageRecord(
                    id=assistant_id,
                    chat_id=ctx.chat_id,
                    role="assistant",
                    parts=assistant["parts"],
                    attachments=assistant["attachments"],
                    model_id=ctx.model_id,
                )
            ])
            ctx.saved_message_ids.add(assistant_id)

            if ctx.model is not None and not ctx.billed:
                await self.credits.record_usage(
                    self._usage_record(ctx, assistant_id, finish.usage.prompt_tokens, finish.usage.completion_tokens)
                )
                ctx.billed = True

            log.info(
                "chat_finished",
                message_id=assistant_id,
                finish_reason=finish.finish_reason,
                total_tokens=finish.usage.total_tokens,
            )
        except Exception as e:
            log.error("chat_finish_persistence_failed", error=str(e), error_type=type(e).__name__)

    async def on_error(self, ctx: ChatContext, error: BaseException) -> str:
        """Save whatever was generated, bill the partial usage, describe the error.

        Never raises; returns the text streamed to the client as the final frame.
        """
        tally = ctx.tally.to_dict()
        log = logger.bind(chat_id=ctx.chat_id, user_id=ctx.user_id)
        log.error("chat_stream_failed", error=str(error), error_type=type(error).__name__, tally=tally)

        partial_id: str | None = None
        try:
            unsaved = [m for m in ctx.accumulated_messages() if m["id"] not in ctx.saved_message_ids]
            if unsaved:
                await self.store.save_messages([
                    MessageRecord(
                        id=m["id"],
                        chat_id=ctx.chat_id,
                        role="assistant",
                        parts=m["parts"],
                        attachments=m["attachments"],
                        model_id=ctx.model_id,
                    )
                    for m in unsaved
                ])
                ctx.saved_message_ids.update(m["id"] for m in unsaved)
                partial_id = unsaved[-1]["id"]
        except Exception as e:
            log.error("chat_partial_save_failed", error=str(e), error_type=type(e).__name__)

        try:
            if ctx.tally.total_tokens > 0 and ctx.model is not None and not ctx.billed:
                usage = ctx.tally.usage
                await self.credits.record_usage(
                    self._usage_record(
                        ctx,
                        partial_id or ctx.user_message.id,
                        usage.prompt_tokens,
                        usage.completion_tokens,
                        description=ERROR_USAGE_DESCRIPTION,
                    )
                )
                ctx.billed = True
        except Exception as e:
            log.error("chat_error_usage_failed", error=str(e), error_type=type(e).__name__)

        return format_stream_error(error, tally)

    def _usage_record(
        self,
        ctx: ChatContext,
        message_id: str,
        input_tokens: int,
        output_tokens: int,
        description: str | None = None,
    ) -> UsageRecord:
        return UsageRecord(
            user_id=ctx.user_id,
            agent_id=ctx.agent_id,
            message_id=message_id,
            model_id=ctx.model_id,
            type=transaction_type(ctx.creator_id, ctx.user_id),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_per_million_input_tokens=ctx.model.cost_per_million_input_tokens,
            cost_per_million_output_tokens=ctx.model.cost_per_million_output_tokens,
            description=description,
        )


async def _drain(queue: asyncio.Queue) -> AsyncIterator[str]:
    while True:
        chunk = await queue.get()
        if chunk is _END:
            return
        yield chunk
