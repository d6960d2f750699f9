"""Agent and AgentTool models: configured personas and their enabled tools."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, String, Text

from agent_vendor.db.base import Base


class Agent(Base):
    __tablename__ = "agents"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False, unique=True)
    creator_id = Column(String(255), nullable=False, index=True)
    system_prompt = Column(Text, nullable=True)
    model_id = Column(String(64), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))


class AgentTool(Base):
    __tablename__ = "agent_tools"

    agent_id = Column(String(64), ForeignKey("agents.id", ondelete="CASCADE"), primary_key=True)
    tool_name = Column(String(100), primary_key=True)
