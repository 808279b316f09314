from __future__ import annotations
from pydantic import Field, field_validator
from typing import Literal, List
from uuid import UUID
from datetime import datetime
from app.schemas.base import CamelModel
from app.schemas.prizes import PositionTier

GameType = Literal["pubg_mobile", "free_fire"]
MatchType = Literal["match_win", "tournament", "tdm", "wow", "special"]
Mode = Literal["solo", "duo", "squad"]
Level = Literal["bronze", "silver", "gold", "platinum", "diamond"]


class RoomCredentials(CamelModel):
    room_id: str = Field(min_length=1, max_length=64)
    room_password: str = Field(min_length=1, max_length=64)


class MatchCreate(CamelModel):
    title: str = Field(min_length=3, max_length=100)
    description: str | None = Field(default=None, max_length=2000)
    game_type: GameType
    match_type: MatchType = "match_win"
    mode: Mode = "solo"
    scheduled_at: datetime
    max_slots: int = Field(ge=2, le=100)
    min_level_required: Level = "bronze"
    entry_fee: int = Field(default=0, ge=0)
    prize_pool: int = Field(default=0, ge=0)
    per_kill_prize: int = Field(default=0, ge=0)
    prize_distribution: List[PositionTier] | None = None
    prize_rule_id: UUID | None = None
    room_credentials: RoomCredentials | None = None
    status: Literal["upcoming", "registration_open"] = "upcoming"

    @field_validator("scheduled_at")
    @classmethod
    def tz_aware(cls, v: datetime):
        if v.tzinfo is None:
            raise ValueError("scheduled_at must include a timezone offset")
        return v


class ChallengeCreate(CamelModel):
    title: str | None = Field(default=None, min_length=3, max_length=100)
    description: str | None = Field(default=None, max_length=2000)
    game_type: GameType
    mode: Mode = "solo"
    scheduled_at: datetime
    max_slots: int = Field(default=2, ge=2, le=100)
    min_level_required: Level = "bronze"
    entry_fee: int = Field(default=0, ge=0)
    prize_pool: int = Field(ge=0)
    per_kill_prize: int = Field(default=0, ge=0)
    room_credentials: RoomCredentials
    in_game_id: str | None = Field(default=None, max_length=64)
    in_game_name: str | None = Field(default=None, max_length=64)

    @field_validator("scheduled_at")
    @classmethod
    def tz_aware(cls, v: datetime):
        if v.tzinfo is None:
            raise ValueError("scheduled_at must include a timezone offset")
        return v


class SetCredentialsRequest(RoomCredentials):
    reveal_now: bool = False


class JoinRequest(CamelModel):
    in_game_id: str = Field(min_length=1, max_length=64)
    in_game_name: str = Field(min_length=1, max_length=64)
    slot_number: int | None = Field(default=None, ge=1, le=100)


class JoinResponse(CamelModel):
    slot_number: int
    room_revealed: bool
    room_credentials: RoomCredentials | None = None


class LeaveResponse(CamelModel):
    refund_amount: int


class CancelRequest(CamelModel):
    reason: str = Field(default="Cancelled by operator", max_length=255)


class CancelResponse(CamelModel):
    status: str
    refunds_processed: bool


class WinnerEntry(CamelModel):
    user_id: UUID
    position: int = Field(ge=1)
    kills: int = Field(default=0, ge=0)


class DeclareWinnersRequest(CamelModel):
    winners: List[WinnerEntry] = Field(min_length=1)


class DeclareWinnersResponse(CamelModel):
    status: str
    winners_count: int
    completed: bool
    total_paid: int


class VerifyResultRequest(CamelModel):
    user_id: UUID
    position: int | None = Field(default=None, ge=1)
    kills: int = Field(default=0, ge=0)
    approve: bool
    reject_reason: str | None = Field(default=None, max_length=255)


class VerifyResultResponse(CamelModel):
    approved: bool
    prize: int
    match_completed: bool


class ScreenshotResponse(CamelModel):
    status: str
    url: str | None = None


class SlotPublic(CamelModel):
    slot_number: int
    user_id: UUID
    in_game_name: str | None = None
    in_game_id: str | None = None
    kills: int
    position: int | None = None
    prize_won: int
    screenshot_status: str
    screenshot_rejection_reason: str | None = None
    joined_at: datetime


class MatchPublic(CamelModel):
    id: UUID
    title: str
    description: str | None = None
    game_type: str
    match_type: str
    mode: str
    scheduled_at: datetime
    registration_close_time: datetime | None = None
    credentials_reveal_time: datetime | None = None
    max_slots: int
    filled_slots: int
    min_level_required: str
    entry_fee: int
    prize_pool: int
    per_kill_prize: int
    prize_distribution: list[dict]
    status: str
    room_credentials_visible: bool
    is_challenge: bool
    creation_fee: int
    created_by: UUID
    slots: list[SlotPublic]
    results: list[dict]
    result_declared_at: datetime | None = None
    cancellation_reason: str | None = None
    cancelled_at: datetime | None = None
    created_at: datetime


class MyMatchStatus(CamelModel):
    joined: bool
    slot: SlotPublic | None = None
    match_status: str
    room_credentials: RoomCredentials | None = None
