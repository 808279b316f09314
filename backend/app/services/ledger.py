from __future__ import annotations
from datetime import date, datetime, time, timedelta, timezone as dt_tz
from uuid import UUID
from sqlalchemy import select, func, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from app.db import is_postgres, flush_or_conflict
from app.errors import ValidationError, NotFound, InsufficientFunds, Conflict
from app.models.ledger import Transaction, DIRECTIONS, CATEGORIES, REFERENCE_TYPES
from app.models.user import User

log = structlog.get_logger()

# ---------- locking ----------

async def _advisory_lock_wallet(session: AsyncSession, user_id: UUID) -> None:
    """Serialize balance movements per user for the rest of the transaction (Postgres only)."""
    if is_postgres(session):
        await session.execute(text("SELECT pg_advisory_xact_lock(hashtext(:k))"), {"k": f"wallet:{user_id}"})


async def _load_wallet(session: AsyncSession, user_id: UUID) -> User:
    user = await session.get(
        User, user_id,
        with_for_update=is_postgres(session),
        populate_existing=True,
    )
    if user is None:
        raise NotFound("User not found")
    return user

# ---------- writes ----------

async def find_by_key(session: AsyncSession, idempotency_key: str) -> Transaction | None:
    return await session.scalar(select(Transaction).where(Transaction.idempotency_key == idempotency_key))


async def record_transaction(
    session: AsyncSession,
    *,
    user_id: UUID,
    direction: str,
    category: str,
    amount: int,
    reference_type: str | None = None,
    reference_id: UUID | str | None = None,
    description: str = "",
    idempotency_key: str | None = None,
) -> Transaction | None:
    """
    The only writer of User.wallet_balance.

    Locks the wallet, computes the new balance, and adds the Transaction row plus the
    balance update to the current unit of work. Nothing is committed here.
      - amount == 0  => no-op, returns None
      - known idempotency_key => the existing row is returned, nothing is written
      - debit larger than the balance => InsufficientFunds
    """
    if direction not in DIRECTIONS:
        raise ValidationError(f"Unknown direction '{direction}'")
    if category not in CATEGORIES:
        raise ValidationError(f"Unknown category '{category}'")
    if reference_type is not None and reference_type not in REFERENCE_TYPES:
        raise ValidationError(f"Unknown reference type '{reference_type}'")
    amount = int(amount)
    if amount < 0:
        raise ValidationError("amount must be >= 0")
    if amount == 0:
        return None

    await _advisory_lock_wallet(session, user_id)

    if idempotency_key:
        existing = await find_by_key(session, idempotency_key)
        if existing is not None:
            log.info("ledger_idempotent_hit", key=idempotency_key, tx_id=str(existing.id))
            return existing

    user = await _load_wallet(session, user_id)
    before = int(user.wallet_balance or 0)
    if direction == "debit":
        if amount > before:
            raise InsufficientFunds(f"Insufficient wallet balance: need {amount}, have {before}")
        after = before - amount
    else:
        after = before + amount

    tx = Transaction(
        user_id=user_id,
        direction=direction,
        category=category,
        amount=amount,
        balance_before=before,
        balance_after=after,
        reference_type=reference_type,
        reference_id=str(reference_id) if reference_id is not None else None,
        description=description,
        status="completed",
        idempotency_key=idempotency_key,
    )
    user.wallet_balance = after
    session.add(tx)
    try:
        await flush_or_conflict(session, "wallet was modified concurrently")
    except IntegrityError as e:
        # a concurrent writer inserted the same idempotency key first
        raise Conflict("Duplicate ledger entry") from e

    log.info(
        "ledger_tx",
        user_id=str(user_id), direction=direction, category=category, amount=amount,
        balance_before=before, balance_after=after, reference_id=tx.reference_id,
    )
    return tx


async def debit(session: AsyncSession, user_id: UUID, amount: int, category: str, **kw) -> Transaction | None:
    return await record_transaction(session, user_id=user_id, direction="debit", category=category, amount=amount, **kw)


async def credit(session: AsyncSession, user_id: UUID, amount: int, category: str, **kw) -> Transaction | None:
    return await record_transaction(session, user_id=user_id, direction="credit", category=category, amount=amount, **kw)

# ---------- reads ----------

async def wallet_balance(session: AsyncSession, user_id: UUID) -> int:
    bal = await session.scalar(select(User.wallet_balance).where(User.id == user_id))
    if bal is None:
        raise NotFound("User not found")
    return int(bal)


async def history(
    session: AsyncSession,
    user_id: UUID,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    category: str | None = None,
    direction: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Transaction], int]:
    """Newest first. Returns (rows, total matching)."""
    conds = [Transaction.user_id == user_id]
    if start is not None:
        conds.append(Transaction.created_at >= start)
    if end is not None:
        conds.append(Transaction.created_at <= end)
    if category:
        conds.append(Transaction.category == category)
    if direction:
        conds.append(Transaction.direction == direction)

    total = await session.scalar(select(func.count()).select_from(Transaction).where(*conds)) or 0
    rows = (await session.execute(
        select(Transaction)
        .where(*conds)
        .order_by(Transaction.created_at.desc(), Transaction.id)
        .offset(max(0, page - 1) * limit)
        .limit(limit)
    )).scalars().all()
    return list(rows), int(total)


async def daily_summary(session: AsyncSession, day: date) -> list[dict]:
    """Completed transactions of one UTC day, aggregated by (direction, category)."""
    start = datetime.combine(day, time.min, tzinfo=dt_tz.utc)
    end = start + timedelta(days=1)
    rows = (await session.execute(
        select(
            Transaction.direction,
            Transaction.category,
            func.count().label("count"),
            func.coalesce(func.sum(Transaction.amount), 0).label("total"),
        )
        .where(
            Transaction.status == "completed",
            Transaction.created_at >= start,
            Transaction.created_at < end,
        )
        .group_by(Transaction.direction, Transaction.category)
        .order_by(Transaction.direction, Transaction.category)
    )).all()
    return [
        {"direction": d, "category": c, "count": int(n), "total": int(t)}
        for (d, c, n, t) in rows
    ]
