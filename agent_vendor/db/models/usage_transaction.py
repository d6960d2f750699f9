"""UsageTransaction model: one billing row per generation attempt."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, Numeric, String, Text

from agent_vendor.db.base import Base


class UsageTransaction(Base):
    __tablename__ = "usage_transactions"

    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(255), nullable=False, index=True)
    agent_id = Column(String(64), nullable=True, index=True)
    message_id = Column(String(64), nullable=True, index=True)
    model_id = Column(String(64), nullable=True)

    type = Column(String(20), nullable=False)  # usage, self_usage
    amount = Column(Numeric(19, 9), nullable=False)
    description = Column(Text, nullable=True)

    input_tokens = Column(Integer, nullable=False, default=0)
    output_tokens = Column(Integer, nullable=False, default=0)
    # Rates captured at transaction time so historical pricing survives model edits
    cost_per_million_input_tokens = Column(Numeric(10, 4), nullable=False, default=0)
    cost_per_million_output_tokens = Column(Numeric(10, 4), nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), index=True)
