from __future__ import annotations
import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, DateTime, ForeignKey, CheckConstraint, Index, Uuid, func
from app.db import Base
from app.services.time_windows import utcnow

DIRECTIONS = ("credit", "debit")
CATEGORIES = (
    "deposit",
    "match_entry",
    "challenge_entry",
    "match_refund",
    "match_prize",
    "prize_pool_escrow",
    "match_creation_fee",
    "match_auto_refund",
    "admin_credit",
    "admin_debit",
)
REFERENCE_TYPES = ("match", "deposit", "admin")

class Transaction(Base):
    """
    Append-only wallet ledger. One row per balance movement.
      - credit => balance_after = balance_before + amount
      - debit  => balance_after = balance_before - amount
    Rows are never updated after insert except for `status`.
    Idempotency: `idempotency_key` is unique (prize:<match>:<user>, refund:<match>:<user>, stripe pi_..., ...).
    """
    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)

    direction: Mapped[str] = mapped_column(String(8), nullable=False)    # credit | debit
    category: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_before: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)

    reference_type: Mapped[str | None] = mapped_column(String(16), nullable=True)  # match | deposit | admin
    reference_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    description: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="completed")
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_transactions_amount_non_negative"),
        CheckConstraint("balance_after >= 0", name="ck_transactions_balance_non_negative"),
        CheckConstraint(
            "(direction = 'credit' AND balance_after = balance_before + amount) OR "
            "(direction = 'debit' AND balance_after = balance_before - amount)",
            name="ck_transactions_balance_arithmetic",
        ),
        Index("ix_transactions_user_created", "user_id", "created_at"),
        Index("ix_transactions_reference", "reference_type", "reference_id"),
    )
