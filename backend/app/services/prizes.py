from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Sequence
from uuid import UUID
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.match import Match
from app.models.prize_rule import PrizeDistributionRule
from app.schemas.prizes import RuleSpec, RuleConfig, PositionTier, KillConfig
from app.services.time_windows import as_utc, utcnow


@dataclass(frozen=True)
class Standing:
    user_id: UUID
    position: int
    kills: int = 0


@dataclass(frozen=True)
class Payout:
    user_id: UUID
    position: int
    kills: int
    position_prize: int
    kill_prize: int

    @property
    def total(self) -> int:
        return self.position_prize + self.kill_prize


NO_PRIZES = RuleSpec(distribution_type="position_based", source="none")

# ---------- pure engine ----------

def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _position_prize(tiers: Iterable[PositionTier], position: int) -> int:
    for tier in tiers:
        if tier.covers(position):
            return int(tier.prize)
    return 0


def _percentage_prize(config: RuleConfig, position: int, prize_pool: int) -> int:
    for tier in config.percentages:
        if tier.covers(position):
            return _round_half_up(Decimal(prize_pool) * Decimal(str(tier.percentage)) / Decimal(100))
    return 0


def effective_per_kill(kill: KillConfig, per_kill_prize: int) -> int:
    return int(kill.per_kill_prize if kill.per_kill_prize is not None else per_kill_prize)


def _kill_prize(kill: KillConfig, kills: int, per_kill_prize: int) -> int:
    prize = max(0, int(kills)) * effective_per_kill(kill, per_kill_prize)
    if kill.max_kill_prize is not None:
        prize = min(prize, int(kill.max_kill_prize))
    return prize


def compute_distribution(
    rule: RuleSpec,
    standings: Sequence[Standing],
    prize_pool: int,
    per_kill_prize: int,
) -> list[Payout]:
    """
    Turn final standings into payouts. One Payout per standing, zero amounts included.

    - position_based: table lookup by position
    - kill_based:     kills * per-kill prize (rule value wins over the match's)
    - percentage:     round_half_up(prize_pool * pct / 100) for the position's tier
    - hybrid:         position component + kill component

    Positions are assumed unique; that is enforced where results are declared.
    """
    cfg = rule.config
    out: list[Payout] = []
    for s in standings:
        pos_prize = 0
        kill_prize = 0
        if rule.distribution_type in ("position_based", "hybrid"):
            pos_prize = _position_prize(cfg.positions, s.position)
        elif rule.distribution_type == "percentage":
            pos_prize = _percentage_prize(cfg, s.position, prize_pool)
        if rule.distribution_type in ("kill_based", "hybrid"):
            kill_prize = _kill_prize(cfg.kill, s.kills, per_kill_prize)
        out.append(Payout(user_id=s.user_id, position=s.position, kills=s.kills,
                          position_prize=pos_prize, kill_prize=kill_prize))
    return out


def prize_cap(rule: RuleSpec, standings: Sequence[Standing], prize_pool: int, per_kill_prize: int) -> int:
    """Most a declaration may pay out: the pool plus the kill bounty actually earned."""
    total_kills = sum(max(0, s.kills) for s in standings)
    return int(prize_pool) + effective_per_kill(rule.config.kill, per_kill_prize) * total_kills

# ---------- rule resolution ----------

def _in_range(value: int, lo: int | None, hi: int | None) -> bool:
    if lo is not None and value < lo:
        return False
    if hi is not None and value > hi:
        return False
    return True


def rule_matches(rule: PrizeDistributionRule, match: Match, now: datetime) -> bool:
    if not rule.is_active:
        return False
    if rule.match_type not in ("all", match.match_type):
        return False
    if rule.game_type not in ("all", match.game_type):
        return False
    if not _in_range(match.max_slots, rule.min_participants, rule.max_participants):
        return False
    if not _in_range(match.entry_fee, rule.entry_fee_min, rule.entry_fee_max):
        return False
    if not _in_range(match.prize_pool, rule.prize_pool_min, rule.prize_pool_max):
        return False
    if rule.effective_from is not None and as_utc(rule.effective_from) > now:
        return False
    if rule.effective_until is not None and as_utc(rule.effective_until) <= now:
        return False
    return True


def spec_from_rule(rule: PrizeDistributionRule, source: str = "rule") -> RuleSpec:
    return RuleSpec(
        distribution_type=rule.distribution_type,
        config=RuleConfig.model_validate(rule.config_json or {}),
        source=source,
        rule_id=rule.id,
    )


def spec_from_match_table(match: Match) -> RuleSpec | None:
    table = match.prize_distribution or []
    if not table:
        return None
    tiers = [PositionTier.model_validate(t) for t in table]
    # Embedded tables always paid the match's per-kill bounty on top of the position prize.
    return RuleSpec(distribution_type="hybrid", config=RuleConfig(positions=tiers), source="match_table")


async def resolve_rule(session: AsyncSession, match: Match, now: datetime | None = None) -> RuleSpec:
    """
    Highest-priority active rule whose predicate matches the match, then the match's
    own distribution table, then the designated default rule.
    """
    now = as_utc(now) if now else utcnow()

    if match.prize_rule_id is not None:
        pinned = await session.get(PrizeDistributionRule, match.prize_rule_id)
        if pinned is not None and pinned.is_active:
            return spec_from_rule(pinned)

    candidates = (await session.execute(
        select(PrizeDistributionRule)
        .where(PrizeDistributionRule.is_active.is_(True), PrizeDistributionRule.is_default.is_(False))
        .order_by(PrizeDistributionRule.priority.desc(), PrizeDistributionRule.created_at.asc())
    )).scalars().all()
    for rule in candidates:
        if rule_matches(rule, match, now):
            return spec_from_rule(rule)

    table = spec_from_match_table(match)
    if table is not None:
        return table

    default = await session.scalar(
        select(PrizeDistributionRule)
        .where(PrizeDistributionRule.is_default.is_(True), PrizeDistributionRule.is_active.is_(True))
        .order_by(PrizeDistributionRule.priority.desc())
        .limit(1)
    )
    if default is not None:
        return spec_from_rule(default, source="default")
    return NO_PRIZES


def default_distribution(prize_pool: int) -> list[dict]:
    """50/30/20 split for operator-created matches without an explicit table."""
    return [
        {"position": 1, "prize": prize_pool * 50 // 100, "label": "1st Place"},
        {"position": 2, "prize": prize_pool * 30 // 100, "label": "2nd Place"},
        {"position": 3, "prize": prize_pool * 20 // 100, "label": "3rd Place"},
    ]


def winner_takes_all(prize_pool: int) -> list[dict]:
    return [{"position": 1, "prize": prize_pool, "label": "Winner Takes All"}]
