"""Provider lookup by the ``provider`` column of a model row."""

from functools import lru_cache

from agent_vendor.core.config import get_settings
from agent_vendor.core.exceptions import UnknownModelError
from agent_vendor.llm.providers.anthropic_provider import AnthropicProvider
from agent_vendor.llm.providers.base import LLMProvider
from agent_vendor.llm.providers.openai_provider import OpenAIProvider


@lru_cache
def get_provider(name: str) -> LLMProvider:
    settings = get_settings()
    if name == "anthropic":
        return AnthropicProvider(api_key=settings.anthropic_api_key or None)
    if name == "openai":
        return OpenAIProvider(api_key=settings.openai_api_key or None)
    raise UnknownModelError(name)
