"""Re-export all models so Base.metadata sees them."""

from agent_vendor.db.models.agent import Agent, AgentTool
from agent_vendor.db.models.chat import Chat, Message
from agent_vendor.db.models.model_row import ModelRow
from agent_vendor.db.models.usage_transaction import UsageTransaction
from agent_vendor.db.models.user_credits import UserCredits

__all__ = [
    "Agent",
    "AgentTool",
    "Chat",
    "Message",
    "ModelRow",
    "UsageTransaction",
    "UserCredits",
]
