from __future__ import annotations
import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, DateTime, CheckConstraint, Uuid, func
from app.db import Base
from app.services.time_windows import utcnow

LEVELS = ("bronze", "silver", "gold", "platinum", "diamond")
LEVEL_XP = {"bronze": 0, "silver": 1000, "gold": 5000, "platinum": 15000, "diamond": 50000}

class User(Base):
    """
    Local projection of a player account. Profile data lives with the auth service;
    only what the match and wallet flows need is kept here.
    `wallet_balance` is written exclusively by services.ledger.record_transaction.
    """
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    username: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    role: Mapped[str] = mapped_column(String(24), nullable=False, default="user")
    level: Mapped[str] = mapped_column(String(16), nullable=False, default="bronze")
    xp: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    in_game_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    in_game_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    matches_played: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    matches_won: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_earnings: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    wallet_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("wallet_balance >= 0", name="ck_users_wallet_non_negative"),
    )
    __mapper_args__ = {"version_id_col": version}

    def add_xp(self, amount: int) -> None:
        self.xp = int(self.xp or 0) + int(amount)
        self.level = level_for_xp(self.xp)


def level_for_xp(xp: int) -> str:
    current = "bronze"
    for name in LEVELS:
        if xp >= LEVEL_XP[name]:
            current = name
    return current


def level_rank(level: str | None) -> int:
    try:
        return LEVELS.index(level or "bronze")
    except ValueError:
        return 0
