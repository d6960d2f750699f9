"""Declarative base plus the process-wide async engine for chats, messages and billing."""

from sqlalchemy import MetaData, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from agent_vendor.core.config import get_settings

# Stable constraint names so the schema can later be managed by migrations
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


async def init_db(url: str | None = None, create_tables: bool | None = None) -> None:
    """Create the engine and session factory once per process.

    Tables are created from the model metadata when ``db_create_tables`` is on
    (the default for local runs); deployments with a managed schema turn it off.
    """
    global _engine, _session_factory

    if _engine is not None:
        return

    settings = get_settings()
    _engine = create_async_engine(
        url or settings.database_url,
        echo=settings.debug,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )
    _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)

    if create_tables if create_tables is not None else settings.db_create_tables:
        import agent_vendor.db.models  # noqa: F401

        async with _engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory


async def ping_database() -> None:
    """Round-trip ``SELECT 1``; raises if the database is unreachable."""
    async with get_session_factory()() as session:
        await session.execute(text("SELECT 1"))
