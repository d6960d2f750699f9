"""Chat and Message models: conversation state written by the chat route."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, String, Text

from agent_vendor.db.base import Base


class Chat(Base):
    __tablename__ = "chats"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(255), nullable=False, index=True)
    agent_id = Column(String(64), nullable=True, index=True)
    title = Column(Text, nullable=False, default="New Chat")
    visibility = Column(String(20), nullable=False, default="private")  # public, private, link

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), index=True)


class Message(Base):
    __tablename__ = "messages"

    id = Column(String(64), primary_key=True)
    chat_id = Column(String(64), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String(20), nullable=False)  # user, assistant
    parts = Column(JSON, nullable=False, default=list)
    attachments = Column(JSON, nullable=False, default=list)
    model_id = Column(String(64), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), index=True)
