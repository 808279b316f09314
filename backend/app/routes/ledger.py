from __future__ import annotations
from datetime import date, datetime
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import get_session
from app.auth_deps import require
from app.models.ledger import CATEGORIES
from app.models.user import User
from app.schemas.ledger import TransactionPage, DailySummary, SummaryRow, to_public
from app.services.ledger import history, daily_summary
from app.services.time_windows import utcnow

router = APIRouter(prefix="/ledger", tags=["ledger"])

@router.get("/transactions", response_model=TransactionPage)
async def list_transactions(
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    category: str | None = Query(default=None, description=f"one of {', '.join(CATEGORIES)}"),
    direction: str | None = Query(default=None, pattern="^(credit|debit)$"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
    user: User = Depends(require("wallet.view")),
):
    """The caller's own wallet movements, newest first."""
    rows, total = await history(
        session, user.id, start=start, end=end, category=category, direction=direction, page=page, limit=limit,
    )
    return TransactionPage(items=[to_public(r) for r in rows], total=total, page=page, limit=limit)


@router.get("/summary", response_model=DailySummary)
async def summary(
    day: date | None = Query(default=None, description="UTC day, defaults to today"),
    session: AsyncSession = Depends(get_session),
    user: User = Depends(require("ledger.summary")),
):
    day = day or utcnow().date()
    rows = await daily_summary(session, day)
    return DailySummary(
        day=day.isoformat(),
        rows=[SummaryRow(**r) for r in rows],
        credits=sum(r["total"] for r in rows if r["direction"] == "credit"),
        debits=sum(r["total"] for r in rows if r["direction"] == "debit"),
    )
