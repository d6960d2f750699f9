"""Chat request schemas.

Field names follow the web client's camelCase wire format via an alias
generator; Python code uses snake_case.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class Attachment(CamelModel):
    url: str
    name: str | None = None
    content_type: str | None = None


class UIMessage(CamelModel):
    """A conversation message as held by the client.

    ``parts`` is kept as raw dicts (text, reasoning, source, tool-invocation)
    so unknown part types pass through to storage untouched.
    """

    id: str
    role: Literal["user", "assistant", "system"]
    content: str = ""
    parts: list[dict[str, Any]] = Field(default_factory=list)
    attachments: list[Attachment] = Field(
        default_factory=list,
        validation_alias="experimental_attachments",
    )

    def model_post_init(self, __context: Any) -> None:
        if not self.parts and self.content:
            self.parts = [{"type": "text", "text": self.content}]


class GenerationParam(CamelModel):
    value: float | int | None = None
    changed: bool = False


class GenerationParams(CamelModel):
    temperature: GenerationParam | None = None
    top_p: GenerationParam | None = None
    top_k: GenerationParam | None = None
    max_tokens: GenerationParam | None = None
    presence_penalty: GenerationParam | None = None
    frequency_penalty: GenerationParam | None = None
    seed: GenerationParam | None = None

    def changed_values(self) -> dict[str, float | int]:
        """Return only the parameters the caller explicitly changed."""
        changed = {}
        for name in type(self).model_fields:
            param = getattr(self, name)
            if param is not None and param.changed and param.value is not None:
                changed[name] = param.value
        return changed


class GroupAgent(CamelModel):
    id: str
    name: str = ""
    handle: str | None = None


class ChatRequest(CamelModel):
    """Body of ``POST /api/chat``."""

    id: str = Field(min_length=1)
    messages: list[UIMessage] = Field(min_length=1)
    selected_chat_model: str = Field(min_length=1)
    selected_model_id: str = Field(min_length=1)
    agent_id: str = Field(min_length=1)
    agent_system_prompt: str | None = None
    creator_id: str = Field(min_length=1)
    search_enabled: bool | None = None
    knowledge: list[str] = Field(default_factory=list)
    generation_params: GenerationParams | None = None
    is_group_chat: bool = False
    group_agents: list[GroupAgent] = Field(default_factory=list)
