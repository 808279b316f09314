from __future__ import annotations
from uuid import UUID
from fastapi import APIRouter, Depends, Query
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth_deps import require
from app.db import get_session
from app.logging_setup import audit
from app.models.prize_rule import PrizeDistributionRule
from app.models.user import User
from app.schemas.prizes import PrizeRuleCreate, PrizeRulePublic, RuleConfig, RuleSpec
from app.services.matches import load_match
from app.services.prizes import resolve_rule

router = APIRouter(prefix="/prize-rules", tags=["prize-rules"])


def to_public(r: PrizeDistributionRule) -> PrizeRulePublic:
    return PrizeRulePublic(
        id=r.id,
        name=r.name,
        description=r.description,
        match_type=r.match_type,
        game_type=r.game_type,
        min_participants=r.min_participants,
        max_participants=r.max_participants,
        entry_fee_min=r.entry_fee_min,
        entry_fee_max=r.entry_fee_max,
        prize_pool_min=r.prize_pool_min,
        prize_pool_max=r.prize_pool_max,
        effective_from=r.effective_from,
        effective_until=r.effective_until,
        distribution_type=r.distribution_type,
        config=RuleConfig.model_validate(r.config_json or {}),
        priority=r.priority,
        is_active=r.is_active,
        is_default=r.is_default,
        created_at=r.created_at,
    )


@router.get("", response_model=list[PrizeRulePublic])
async def list_rules(
    active_only: bool = Query(default=False, alias="activeOnly"),
    session: AsyncSession = Depends(get_session),
    user: User = Depends(require("prize_rules.manage")),
):
    q = select(PrizeDistributionRule).order_by(PrizeDistributionRule.priority.desc(), PrizeDistributionRule.created_at.asc())
    if active_only:
        q = q.where(PrizeDistributionRule.is_active.is_(True))
    return [to_public(r) for r in (await session.execute(q)).scalars().all()]


@router.post("", response_model=PrizeRulePublic, status_code=201)
async def create_rule(
    payload: PrizeRuleCreate,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(require("prize_rules.manage")),
):
    if payload.is_default:
        # only one designated default at a time
        await session.execute(
            update(PrizeDistributionRule).where(PrizeDistributionRule.is_default.is_(True)).values(is_default=False)
        )
    rule = PrizeDistributionRule(
        **payload.model_dump(exclude={"config"}),
        config_json=payload.config.model_dump(),
        created_by=user.id,
    )
    session.add(rule)
    await session.commit()
    audit("prize_rule_create", rule_id=str(rule.id), actor=str(user.id), name=rule.name)
    return to_public(rule)


@router.get("/resolve/{match_id}", response_model=RuleSpec)
async def preview_for_match(
    match_id: UUID,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(require("prize_rules.manage")),
):
    """Which rule would pay out this match right now."""
    match = await load_match(session, match_id)
    return await resolve_rule(session, match)
