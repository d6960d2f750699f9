"""CreditLedger: spendable balance checks and usage billing.

Balances live in ``user_credits``; a copy is cached in Redis under
``user:credits:<user_id>`` so the per-message credit check rarely touches
the database. The cache is advisory: Redis failures fall back to the
database and never fail a request.
"""

from dataclasses import dataclass
from decimal import Decimal

import redis.asyncio as redis
import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agent_vendor.core.config import Settings, get_settings
from agent_vendor.db.models.usage_transaction import UsageTransaction
from agent_vendor.db.models.user_credits import UserCredits

logger = structlog.get_logger(__name__)

INSUFFICIENT_CREDITS_MESSAGE = (
    "You have insufficient credits to continue. Please purchase more credits to continue chatting."
)

ERROR_USAGE_DESCRIPTION = "Error occurred during generation - this was the usage up until the error"

_ONE_MILLION = Decimal(1_000_000)


def transaction_type(creator_id: str | None, user_id: str) -> str:
    """``self_usage`` when the caller created the agent, otherwise ``usage``."""
    return "self_usage" if creator_id == user_id else "usage"


@dataclass(frozen=True)
class UsageRecord:
    user_id: str
    agent_id: str | None
    message_id: str
    model_id: str
    type: str
    input_tokens: int
    output_tokens: int
    cost_per_million_input_tokens: Decimal
    cost_per_million_output_tokens: Decimal
    description: str | None = None


def usage_amount(record: UsageRecord, settings: Settings) -> Decimal:
    """Signed charge for a usage record (negative = debit)."""
    base = (
        Decimal(record.input_tokens) * Decimal(record.cost_per_million_input_tokens)
        + Decimal(record.output_tokens) * Decimal(record.cost_per_million_output_tokens)
    ) / _ONE_MILLION
    markup = settings.self_usage_markup if record.type == "self_usage" else settings.usage_markup
    return -(base * Decimal(str(markup)))


class CreditLedger:
    CACHE_PREFIX = "user:credits:"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis_client: redis.Redis,
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.redis = redis_client
        self.settings = settings or get_settings()

    def _cache_key(self, user_id: str) -> str:
        return f"{self.CACHE_PREFIX}{user_id}"

    async def _read_cache(self, user_id: str) -> Decimal | None:
        try:
            cached = await self.redis.get(self._cache_key(user_id))
        except redis.RedisError as e:
            logger.warning("credits_cache_read_failed", user_id=user_id, error=str(e), error_type=type(e).__name__)
            return None
        return Decimal(cached) if cached is not None else None

    async def _write_cache(self, user_id: str, balance: Decimal) -> None:
        try:
            await self.redis.set(self._cache_key(user_id), str(balance), ex=self.settings.credits_cache_ttl_seconds)
        except redis.RedisError as e:
            logger.warning("credits_cache_write_failed", user_id=user_id, error=str(e), error_type=type(e).__name__)

    async def get_balance(self, user_id: str) -> Decimal | None:
        """Return the user's balance, or None when the user has no credits row."""
        cached = await self._read_cache(user_id)
        if cached is not None:
            return cached

        async with self.session_factory() as session:
            result = await session.execute(select(UserCredits.balance).where(UserCredits.user_id == user_id))
            balance = result.scalar_one_or_none()

        if balance is None:
            return None
        balance = Decimal(balance)
        await self._write_cache(user_id, balance)
        return balance

    async def has_credits(self, user_id: str) -> bool:
        balance = await self.get_balance(user_id)
        return balance is not None and balance > 0

    async def record_usage(self, record: UsageRecord) -> Decimal:
        """Write one transaction row and debit the balance in the same DB transaction."""
        amount = usage_amount(record, self.settings)

        async with self.session_factory() as session:
            session.add(
                UsageTransaction(
                    user_id=record.user_id,
                    agent_id=record.agent_id,
                    message_id=record.message_id,
                    model_id=record.model_id,
                    type=record.type,
                    amount=amount,
                    description=record.description,
                    input_tokens=record.input_tokens,
                    output_tokens=record.output_tokens,
                    cost_per_million_input_tokens=record.cost_per_million_input_tokens,
                    cost_per_million_output_tokens=record.cost_per_million_output_tokens,
                )
            )
            result = await session.execute(
                update(UserCredits)
                .where(UserCredits.user_id == record.user_id)
                .values(balance=UserCredits.balance + amount)
                .returning(UserCredits.balance)
            )
            new_balance = result.scalar_one_or_none()
            await session.commit()

        logger.info(
            "usage_recorded",
            user_id=record.user_id,
            message_id=record.message_id,
            type=record.type,
            input_tokens=record.input_tokens,
            output_tokens=record.output_tokens,
            amount=str(amount),
        )

        if new_balance is not None:
            await self._write_cache(record.user_id, Decimal(new_balance))
        return amount
