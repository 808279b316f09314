from __future__ import annotations
import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import (
    String, Integer, Boolean, DateTime, ForeignKey, Text, CheckConstraint, UniqueConstraint, Index, Uuid, func,
)
from app.db import Base, JSONType
from app.services.time_windows import utcnow

MATCH_STATUSES = (
    "upcoming",
    "registration_open",
    "registration_closed",
    "room_revealed",
    "live",
    "result_pending",
    "completed",
    "cancelled",
)

class Match(Base):
    __tablename__ = "matches"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text(), nullable=True)
    game_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)   # pubg_mobile | free_fire
    match_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)  # match_win | tournament | tdm | wow | special
    mode: Mapped[str] = mapped_column(String(16), nullable=False, default="solo")    # solo | duo | squad

    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    registration_close_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    credentials_reveal_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    max_slots: Mapped[int] = mapped_column(Integer, nullable=False)
    filled_slots: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    min_level_required: Mapped[str] = mapped_column(String(16), nullable=False, default="bronze")

    entry_fee: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    prize_pool: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    per_kill_prize: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    prize_distribution: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)  # [{position, prize, label}]
    prize_rule_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("prize_distribution_rules.id", ondelete="SET NULL"), nullable=True)

    # Never serialized unless room_credentials_visible
    room_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    room_password: Mapped[str | None] = mapped_column(String(64), nullable=True)
    room_credentials_visible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    status: Mapped[str] = mapped_column(String(24), nullable=False, default="upcoming", index=True)

    is_challenge: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    creation_fee: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_by: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="RESTRICT"), index=True, nullable=False)

    results: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)  # sorted snapshot, see services.matches
    result_declared_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cancelled_by_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    refunds_processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    slots: Mapped[list["MatchSlot"]] = relationship(
        back_populates="match",
        lazy="selectin",
        order_by="MatchSlot.slot_number",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("max_slots >= 2 AND max_slots <= 100", name="ck_matches_max_slots"),
        CheckConstraint("filled_slots >= 0 AND filled_slots <= max_slots", name="ck_matches_filled_slots"),
        CheckConstraint("entry_fee >= 0 AND prize_pool >= 0 AND per_kill_prize >= 0", name="ck_matches_money_non_negative"),
        Index("ix_matches_status_scheduled", "status", "scheduled_at"),
    )
    __mapper_args__ = {"version_id_col": version}

    def slot_for(self, user_id: uuid.UUID) -> "MatchSlot | None":
        return next((s for s in self.slots if s.user_id == user_id), None)

    def has_joined(self, user_id: uuid.UUID) -> bool:
        return self.slot_for(user_id) is not None


class MatchSlot(Base):
    __tablename__ = "match_slots"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    match_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("matches.id", ondelete="CASCADE"), index=True, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    slot_number: Mapped[int] = mapped_column(Integer, nullable=False)

    in_game_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    in_game_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entry_fee_paid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    kills: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    prize_won: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    prize_distributed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    screenshot_url: Mapped[str | None] = mapped_column(Text(), nullable=True)
    screenshot_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    screenshot_uploaded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    screenshot_status: Mapped[str] = mapped_column(String(16), nullable=False, default="not_uploaded")
    screenshot_rejection_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    match: Mapped[Match] = relationship(back_populates="slots")

    __table_args__ = (
        UniqueConstraint("match_id", "user_id", name="uq_match_slot_user"),
        UniqueConstraint("match_id", "slot_number", name="uq_match_slot_number"),
    )
