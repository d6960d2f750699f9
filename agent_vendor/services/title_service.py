"""TitleService: replaces a chat's provisional title with a generated one.

- generate_title() calls the title model with the first user message
- refine_title() NEVER raises, so it is safe for fire-and-forget background tasks
"""

import asyncio
import json

import structlog

from agent_vendor.core.config import get_settings
from agent_vendor.llm.providers.base import LLMProvider
from agent_vendor.schemas.chat import UIMessage
from agent_vendor.services.chat_store import ChatStore

logger = structlog.get_logger(__name__)

PROVISIONAL_TITLE = "New Chat"
MAX_TITLE_LENGTH = 80
MAX_PROMPT_CHARS = 2000

_SYSTEM_PROMPT: str = (
    "- you will generate a short title based on the first message a user begins a conversation with\n"
    "- ensure it is not more than 80 characters long\n"
    "- the title should be a summary of the user's message\n"
    "- do not use quotes or colons"
)


def clean_title(raw: str) -> str:
    title = raw.replace('"', "").strip()
    return title[:MAX_TITLE_LENGTH].rstrip()


class TitleService:
    def __init__(self, provider: LLMProvider, store: ChatStore, model: str | None = None):
        settings = get_settings()
        self.provider = provider
        self.store = store
        self.model = model or settings.title_model
        self.timeout = settings.title_timeout_seconds

    async def generate_title(self, message: UIMessage) -> str:
        prompt = json.dumps(message.model_dump(by_alias=True, exclude_none=True))[:MAX_PROMPT_CHARS]
        raw = await asyncio.wait_for(
            self.provider.complete(self.model, _SYSTEM_PROMPT, prompt, max_tokens=64),
            timeout=self.timeout,
        )
        return clean_title(raw)

    async def refine_title(self, chat_id: str, message: UIMessage) -> None:
        """Entry point for the background task. Never raises."""
        try:
            title = await self.generate_title(message)
            if not title:
                logger.info("chat_title_empty", chat_id=chat_id)
                return
            await self.store.update_chat_title(chat_id, title)
            logger.info("chat_title_updated", chat_id=chat_id)
        except Exception as e:
            logger.warning(
                "chat_title_generation_failed",
                chat_id=chat_id,
                error=str(e),
                error_type=type(e).__name__,
            )
