from __future__ import annotations
import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Boolean, DateTime, Text, Index, Uuid, func
from app.db import Base, JSONType
from app.services.time_windows import utcnow


class PrizeDistributionRule(Base):
    __tablename__ = "prize_distribution_rules"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text(), nullable=True)

    # Predicate ("all" is a wildcard; NULL max means unbounded)
    match_type: Mapped[str] = mapped_column(String(32), nullable=False, default="all")
    game_type: Mapped[str] = mapped_column(String(32), nullable=False, default="all")
    min_participants: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    max_participants: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    entry_fee_min: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    entry_fee_max: Mapped[int | None] = mapped_column(Integer, nullable=True)
    prize_pool_min: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    prize_pool_max: Mapped[int | None] = mapped_column(Integer, nullable=True)
    effective_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    effective_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    distribution_type: Mapped[str] = mapped_column(String(16), nullable=False)  # position_based|kill_based|percentage|hybrid
    config_json: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)  # validated by schemas.prizes.RuleConfig

    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_prize_rules_lookup", "match_type", "game_type", "is_active"),
        Index("ix_prize_rules_priority", "priority"),
    )
