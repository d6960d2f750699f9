"""ModelRegistry: model billing/provider metadata and agent tool lookup."""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agent_vendor.db.models.agent import AgentTool
from agent_vendor.db.models.model_row import ModelRow

_PROVIDER_PREFIXES = {
    "claude": "anthropic",
    "gpt": "openai",
    "o1": "openai",
    "o3": "openai",
    "o4": "openai",
    "chatgpt": "openai",
}


def infer_provider(model_name: str) -> str | None:
    """Guess a provider from a provider-facing model name."""
    lowered = model_name.lower()
    for prefix, provider in _PROVIDER_PREFIXES.items():
        if lowered.startswith(prefix):
            return provider
    return None


@dataclass(frozen=True)
class ModelInfo:
    id: str
    model: str
    provider: str
    display_name: str = ""
    cost_per_million_input_tokens: Decimal = Decimal(0)
    cost_per_million_output_tokens: Decimal = Decimal(0)
    provider_options: dict[str, Any] = field(default_factory=dict)
    supports_tools: bool = True


class ModelRegistry:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_model(self, model_id: str) -> ModelInfo | None:
        async with self.session_factory() as session:
            result = await session.execute(select(ModelRow).where(ModelRow.id == model_id))
            row = result.scalar_one_or_none()
            if row is None:
                return None
            return ModelInfo(
                id=row.id,
                model=row.model,
                provider=row.provider,
                display_name=row.display_name,
                cost_per_million_input_tokens=Decimal(row.cost_per_million_input_tokens or 0),
                cost_per_million_output_tokens=Decimal(row.cost_per_million_output_tokens or 0),
                provider_options=dict(row.provider_options or {}),
                supports_tools=bool(row.supports_tools),
            )

    async def get_agent_tool_names(self, agent_id: str) -> list[str]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(AgentTool.tool_name).where(AgentTool.agent_id == agent_id).order_by(AgentTool.tool_name)
            )
            return [row[0] for row in result.fetchall()]
