from __future__ import annotations
from datetime import datetime, timedelta
from uuid import UUID
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from app.config import settings
from app.models.ledger import Transaction
from app.services.ledger import record_transaction, find_by_key
from app.services.time_windows import utcnow


def tokens_for_cents(usd_cents: int) -> int:
    # 1 token = TOKEN_PRICE_USD_CENTS cents; default = 1 (1 token = 1 cent)
    return int(usd_cents) // max(1, settings.token_price_usd_cents)


async def deposited_since(session: AsyncSession, user_id: UUID, since: datetime) -> int:
    total = await session.scalar(
        select(func.coalesce(func.sum(Transaction.amount), 0))
        .where(
            Transaction.user_id == user_id,
            Transaction.category == "deposit",
            Transaction.created_at >= since,
        )
    )
    return int(total or 0)


async def remaining_daily_deposit(session: AsyncSession, user_id: UUID, now: datetime | None = None) -> int:
    now = now or utcnow()
    used = await deposited_since(session, user_id, now - timedelta(days=1))
    return max(0, settings.max_deposit_tokens_day - used)


async def credit_deposit_idempotent(session: AsyncSession, *, user_id: UUID, external_id: str, usd_cents: int) -> bool:
    """
    Credit tokens based on fiat received. Idempotent by external_id (Stripe payment intent).
    Returns True if a new entry was created; False if duplicate or nothing to credit.
    """
    tokens = tokens_for_cents(usd_cents) if usd_cents > 0 else 0
    if tokens <= 0:
        return False
    if await find_by_key(session, external_id) is not None:
        return False
    await record_transaction(
        session,
        user_id=user_id,
        direction="credit",
        category="deposit",
        amount=tokens,
        reference_type="deposit",
        reference_id=external_id,
        description="Stripe deposit",
        idempotency_key=external_id,
    )
    return True
