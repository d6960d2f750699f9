"""ChatStore: chat and message persistence for the chat route."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agent_vendor.db.models.chat import Chat, Message

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ChatRecord:
    id: str
    user_id: str
    agent_id: str | None
    title: str


@dataclass
class MessageRecord:
    id: str
    chat_id: str
    role: str
    parts: list[dict[str, Any]]
    attachments: list[dict[str, Any]] = field(default_factory=list)
    model_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ChatStore:
    """Inserts are idempotent by primary key; a second write of the same id is a no-op."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_chat(self, chat_id: str) -> ChatRecord | None:
        async with self.session_factory() as session:
            result = await session.execute(select(Chat).where(Chat.id == chat_id))
            chat = result.scalar_one_or_none()
            if chat is None:
                return None
            return ChatRecord(id=chat.id, user_id=chat.user_id, agent_id=chat.agent_id, title=chat.title)

    async def save_chat(self, chat_id: str, user_id: str, title: str, agent_id: str | None) -> bool:
        """Create the chat if it does not exist. Returns True when a row was written."""
        async with self.session_factory() as session:
            stmt = (
                insert(Chat)
                .values(
                    id=chat_id,
                    user_id=user_id,
                    agent_id=agent_id,
                    title=title,
                    created_at=datetime.now(timezone.utc),
                )
                .on_conflict_do_nothing(index_elements=[Chat.id])
            )
            result = await session.execute(stmt)
            await session.commit()
            created = result.rowcount == 1

        if not created:
            logger.info("chat_already_exists", chat_id=chat_id)
        return created

    async def update_chat_title(self, chat_id: str, title: str) -> None:
        async with self.session_factory() as session:
            await session.execute(update(Chat).where(Chat.id == chat_id).values(title=title))
            await session.commit()

    async def save_messages(self, messages: list[MessageRecord]) -> list[str]:
        """Insert messages, skipping ids already stored. Returns the ids written."""
        if not messages:
            return []

        async with self.session_factory() as session:
            stmt = (
                insert(Message)
                .values([
                    {
                        "id": m.id,
                        "chat_id": m.chat_id,
                        "role": m.role,
                        "parts": m.parts,
                        "attachments": m.attachments,
                        "model_id": m.model_id,
                        "created_at": m.created_at,
                    }
                    for m in messages
                ])
                .on_conflict_do_nothing(index_elements=[Message.id])
                .returning(Message.id)
            )
            result = await session.execute(stmt)
            written = [row[0] for row in result.fetchall()]
            await session.commit()
        return written

    async def delete_chat(self, chat_id: str) -> None:
        async with self.session_factory() as session:
            await session.execute(delete(Message).where(Message.chat_id == chat_id))
            await session.execute(delete(Chat).where(Chat.id == chat_id))
            await session.commit()
