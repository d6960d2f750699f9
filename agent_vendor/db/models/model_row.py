"""ModelRow: billing and provider metadata for a selectable LLM."""

from sqlalchemy import JSON, Boolean, Column, Numeric, String, Text

from agent_vendor.db.base import Base


class ModelRow(Base):
    __tablename__ = "models"

    id = Column(String(64), primary_key=True)
    display_name = Column(String(255), nullable=False)
    model = Column(String(255), nullable=False, index=True)  # provider-facing model name
    provider = Column(String(50), nullable=False)  # anthropic, openai
    description = Column(Text, nullable=True)

    cost_per_million_input_tokens = Column(Numeric(10, 4), nullable=False, default=0)
    cost_per_million_output_tokens = Column(Numeric(10, 4), nullable=False, default=0)
    provider_options = Column(JSON, nullable=True)  # {"thinking": {"type": "enabled", ...}}
    supports_tools = Column(Boolean, nullable=False, default=True)
