"""UserCredits model: spendable balance per user."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Numeric, String

from agent_vendor.db.base import Base


class UserCredits(Base):
    __tablename__ = "user_credits"

    user_id = Column(String(255), primary_key=True)
    balance = Column(Numeric(19, 9), nullable=False, default=0)

    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
