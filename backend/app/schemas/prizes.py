from __future__ import annotations
from pydantic import Field, field_validator, model_validator
from app.schemas.base import CamelModel
from typing import Literal, List
from uuid import UUID
from datetime import datetime

DistributionType = Literal["position_based", "kill_based", "percentage", "hybrid"]


class PositionTier(CamelModel):
    position: int = Field(ge=1)
    position_to: int | None = Field(default=None, ge=1, description="inclusive upper bound for ranged tiers (e.g. 4-10)")
    prize: int = Field(ge=0)
    label: str = ""

    @model_validator(mode="after")
    def check_range(self):
        if self.position_to is not None and self.position_to < self.position:
            raise ValueError("position_to must be >= position")
        return self

    def covers(self, position: int) -> bool:
        return self.position <= position <= (self.position_to or self.position)


class PercentageTier(CamelModel):
    position: int = Field(ge=1)
    position_to: int | None = Field(default=None, ge=1)
    percentage: float = Field(ge=0, le=100)
    label: str = ""

    def covers(self, position: int) -> bool:
        return self.position <= position <= (self.position_to or self.position)


class KillConfig(CamelModel):
    per_kill_prize: int | None = Field(default=None, ge=0, description="None => use the match's per-kill prize")
    max_kill_prize: int | None = Field(default=None, ge=0, description="per-player cap, None => unlimited")


class RuleConfig(CamelModel):
    positions: List[PositionTier] = Field(default_factory=list)
    kill: KillConfig = Field(default_factory=KillConfig)
    percentages: List[PercentageTier] = Field(default_factory=list)

    @field_validator("percentages")
    @classmethod
    def total_at_most_100(cls, v: list[PercentageTier]):
        total = sum(t.percentage * ((t.position_to or t.position) - t.position + 1) for t in v)
        if total > 100:
            raise ValueError("percentages must not add up to more than 100")
        return v


class RuleSpec(CamelModel):
    """What the prize engine needs from a rule, independent of where it came from."""
    distribution_type: DistributionType
    config: RuleConfig = Field(default_factory=RuleConfig)
    source: Literal["rule", "match_table", "default", "none"] = "rule"
    rule_id: UUID | None = None


class PrizeRuleCreate(CamelModel):

    name: str = Field(min_length=3, max_length=100)
    description: str | None = None
    match_type: str = "all"
    game_type: str = "all"
    min_participants: int = Field(default=2, ge=2)
    max_participants: int = Field(default=100, le=100)
    entry_fee_min: int = Field(default=0, ge=0)
    entry_fee_max: int | None = Field(default=None, ge=0)
    prize_pool_min: int = Field(default=0, ge=0)
    prize_pool_max: int | None = Field(default=None, ge=0)
    effective_from: datetime | None = None
    effective_until: datetime | None = None
    distribution_type: DistributionType
    config: RuleConfig = Field(default_factory=RuleConfig)
    priority: int = 0
    is_active: bool = True
    is_default: bool = False

    @model_validator(mode="after")
    def check_ranges(self):
        if self.min_participants > self.max_participants:
            raise ValueError("min_participants must be <= max_participants")
        if self.entry_fee_max is not None and self.entry_fee_max < self.entry_fee_min:
            raise ValueError("entry_fee_max must be >= entry_fee_min")
        if self.prize_pool_max is not None and self.prize_pool_max < self.prize_pool_min:
            raise ValueError("prize_pool_max must be >= prize_pool_min")
        return self


class PrizeRulePublic(PrizeRuleCreate):
    id: UUID
    created_at: datetime

