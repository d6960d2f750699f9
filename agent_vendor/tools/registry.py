"""Closed registry of tools the chat runtime implements.

Agents enable tools by name in the ``agent_tools`` table; only names that
map onto a ``ToolName`` member are ever exposed to a model.
"""

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from agent_vendor.core.config import Settings, get_settings
from agent_vendor.llm.events import Source
from agent_vendor.llm.providers.base import ToolSpec
from agent_vendor.tools import calculator, web

logger = structlog.get_logger(__name__)

ToolHandler = Callable[[dict[str, Any], Settings], Awaitable[Any]]


class ToolName(str, Enum):
    SEARCH = "searchTool"
    RETRIEVE = "retrieveTool"
    CALCULATOR = "calculator"
    GET_WEATHER = "getWeather"


# Excluded when the caller explicitly turns search off for a request
SEARCH_TOOLS = frozenset({ToolName.SEARCH, ToolName.RETRIEVE})


@dataclass(frozen=True)
class ToolDefinition:
    name: ToolName
    description: str
    parameters: dict[str, Any]
    handler: ToolHandler
    emits_sources: bool = False

    def spec(self) -> ToolSpec:
        return ToolSpec(name=self.name.value, description=self.description, parameters=self.parameters)


TOOL_REGISTRY: dict[ToolName, ToolDefinition] = {
    ToolName.SEARCH: ToolDefinition(
        name=ToolName.SEARCH,
        description=(
            "Search the web for current information. Returns result titles, URLs, "
            "content snippets and a short generated answer."
        ),
        parameters={
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "The search query."},
                "max_results": {"type": "integer", "minimum": 1, "maximum": 10, "default": 5},
                "include_domains": {"type": "array", "items": {"type": "string"}},
                "exclude_domains": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["query"],
        },
        handler=web.search,
        emits_sources=True,
    ),
    ToolName.RETRIEVE: ToolDefinition(
        name=ToolName.RETRIEVE,
        description="Retrieve the text content of a web page.",
        parameters={
            "type": "object",
            "properties": {"url": {"type": "string", "description": "The url to retrieve."}},
            "required": ["url"],
        },
        handler=web.retrieve,
    ),
    ToolName.CALCULATOR: ToolDefinition(
        name=ToolName.CALCULATOR,
        description=(
            "Evaluate a mathematical expression, e.g. '2 + 2 * sin(pi/2)' or 'sqrt(16) / (2^3)'. "
            "Supports arithmetic, common functions and the constants pi and e."
        ),
        parameters={
            "type": "object",
            "properties": {"expression": {"type": "string", "description": "The expression to evaluate."}},
            "required": ["expression"],
        },
        handler=calculator.run,
    ),
    ToolName.GET_WEATHER: ToolDefinition(
        name=ToolName.GET_WEATHER,
        description="Get the current weather at a location.",
        parameters={
            "type": "object",
            "properties": {
                "latitude": {"type": "number"},
                "longitude": {"type": "number"},
            },
            "required": ["latitude", "longitude"],
        },
        handler=web.get_weather,
    ),
}


def resolve_tool_name(name: str) -> ToolName | None:
    try:
        return ToolName(name)
    except ValueError:
        return None


@dataclass
class ToolOutcome:
    result: Any
    is_error: bool = False
    sources: list[Source] = field(default_factory=list)


@dataclass
class ToolSet:
    """Tools configured for one request, and which of them the model may call."""

    tools: dict[ToolName, ToolDefinition] = field(default_factory=dict)
    active: list[ToolName] = field(default_factory=list)
    settings: Settings | None = None

    @property
    def names(self) -> list[str]:
        return [name.value for name in self.tools]

    def specs(self) -> list[ToolSpec]:
        return [self.tools[name].spec() for name in self.active]

    async def execute(self, tool_name: str, args: dict[str, Any]) -> ToolOutcome:
        """Run one tool call. Failures become error results, never exceptions."""
        name = resolve_tool_name(tool_name)
        if name is None or name not in self.active:
            return ToolOutcome(result={"error": f"Tool '{tool_name}' is not available"}, is_error=True)

        definition = self.tools[name]
        try:
            result = await definition.handler(args, self.settings or get_settings())
        except Exception as e:
            logger.warning(
                "tool_execution_failed",
                tool=tool_name,
                error=str(e),
                error_type=type(e).__name__,
            )
            return ToolOutcome(result={"error": str(e)}, is_error=True)

        sources: list[Source] = []
        if definition.emits_sources and isinstance(result, dict):
            for item in result.get("results", []):
                sources.append(Source(id=str(uuid.uuid4()), url=item["url"], title=item.get("title") or None))
        return ToolOutcome(result=result, sources=sources)


def build_tool_set(
    agent_tool_names: list[str],
    search_enabled: bool | None,
    supports_tools: bool,
    settings: Settings | None = None,
) -> ToolSet:
    """Intersect an agent's configured tool names with the registry.

    ``search_enabled`` is tri-state: only an explicit ``False`` drops the
    search and retrieval tools. Models without tool support get no active
    tools at all.
    """
    tools: dict[ToolName, ToolDefinition] = {}
    for raw in agent_tool_names:
        name = resolve_tool_name(raw)
        if name is None or name in tools:
            continue
        if name in SEARCH_TOOLS and search_enabled is False:
            continue
        tools[name] = TOOL_REGISTRY[name]

    active = list(tools) if supports_tools else []
    return ToolSet(tools=tools, active=active, settings=settings)
