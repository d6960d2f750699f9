"""Chat endpoints.

POST parses its own body: the rate limiter and the session check must run
before the payload is trusted, so FastAPI's body validation is bypassed.
"""

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse, Response

from agent_vendor.core.auth import SessionAuthenticator, get_authenticator
from agent_vendor.core.config import get_settings
from agent_vendor.core.rate_limit import get_chat_rate_limiter
from agent_vendor.db.base import get_session_factory
from agent_vendor.db.redis import get_redis
from agent_vendor.llm.providers.factory import get_provider
from agent_vendor.services.chat_orchestrator import ChatOrchestrator
from agent_vendor.services.chat_store import ChatStore
from agent_vendor.services.credit_ledger import CreditLedger
from agent_vendor.services.model_registry import ModelRegistry, infer_provider
from agent_vendor.services.title_service import TitleService

logger = structlog.get_logger(__name__)

router = APIRouter()


def get_chat_store() -> ChatStore:
    return ChatStore(get_session_factory())


def get_chat_orchestrator() -> ChatOrchestrator:
    settings = get_settings()
    session_factory = get_session_factory()
    store = ChatStore(session_factory)
    title_provider = get_provider(infer_provider(settings.title_model) or "anthropic")
    return ChatOrchestrator(
        rate_limiter=get_chat_rate_limiter(),
        authenticator=SessionAuthenticator(settings),
        credits=CreditLedger(session_factory, get_redis(), settings),
        store=store,
        models=ModelRegistry(session_factory),
        provider_factory=get_provider,
        title_service=TitleService(title_provider, store, settings.title_model),
        settings=settings,
    )


@router.post("")
async def create_chat_message(
    request: Request,
    orchestrator: ChatOrchestrator = Depends(get_chat_orchestrator),
) -> Response:
    """Stream an assistant reply to the latest user message of a chat."""
    return await orchestrator.handle(request)


@router.delete("")
async def delete_chat(
    request: Request,
    id: str | None = None,
    authenticator: SessionAuthenticator = Depends(get_authenticator),
    store: ChatStore = Depends(get_chat_store),
) -> Response:
    if not id:
        return PlainTextResponse("Not Found", status_code=404)

    user = await authenticator.authenticate(request)
    if user is None:
        return PlainTextResponse("Unauthorized", status_code=401)

    try:
        chat = await store.get_chat(id)
        if chat is None:
            return PlainTextResponse("Not Found", status_code=404)
        if chat.user_id != user.user_id:
            logger.warning("chat_delete_forbidden", chat_id=id, user_id=user.user_id)
            return PlainTextResponse("Unauthorized", status_code=401)

        await store.delete_chat(id)
    except Exception as e:
        logger.error("chat_delete_failed", chat_id=id, error=str(e), error_type=type(e).__name__)
        return PlainTextResponse("An error occurred while processing your request", status_code=500)

    logger.info("chat_deleted", chat_id=id, user_id=user.user_id)
    return PlainTextResponse("Chat deleted", status_code=200)
