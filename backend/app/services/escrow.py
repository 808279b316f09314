from __future__ import annotations
from datetime import datetime
from typing import Callable
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from app.config import settings
from app.errors import ValidationError, InsufficientFunds, Forbidden, StateError, Conflict
from app.logging_setup import audit
from app.models.match import Match, MatchSlot
from app.models.user import User
from app.permissions import is_privileged
from app.services.ledger import record_transaction
from app.services.matches import TERMINAL, JoinOutcome, cancel_match, compute_time_fields, join_match, load_match
from app.services.prizes import winner_takes_all
from app.services.time_windows import utcnow, as_utc

log = structlog.get_logger()

ACTIVE_CHALLENGE_STATUSES = ("upcoming", "registration_open", "registration_closed", "room_revealed", "live", "result_pending")


async def active_challenge_count(session: AsyncSession, creator_id) -> int:
    n = await session.scalar(
        select(func.count()).select_from(Match).where(
            Match.created_by == creator_id,
            Match.is_challenge.is_(True),
            Match.status.in_(ACTIVE_CHALLENGE_STATUSES),
        )
    )
    return int(n or 0)


async def create_challenge(
    session: AsyncSession,
    *,
    creator: User,
    data: dict,
    now: datetime | None = None,
) -> Match:
    """
    A player-funded match. The creation fee and the prize pool leave the creator's
    wallet up front and sit in escrow until the match completes or is cancelled.
    """
    now = now or utcnow()
    if is_privileged(creator.role):
        raise Forbidden("Administrators create matches from the operator panel")

    room_id, room_password = data.get("room_id"), data.get("room_password")
    if not room_id or not room_password:
        raise ValidationError("Room credentials are required to create a challenge")
    scheduled_at = as_utc(data["scheduled_at"])
    if scheduled_at <= now:
        raise ValidationError("scheduled_at must be in the future")

    if await active_challenge_count(session, creator.id) >= settings.max_active_challenges:
        raise Conflict(f"You can have at most {settings.max_active_challenges} active challenges")

    prize_pool = int(data.get("prize_pool") or 0)
    creation_fee = int(settings.challenge_creation_fee)
    needed = creation_fee + prize_pool
    if int(creator.wallet_balance or 0) < needed:
        raise InsufficientFunds(f"Insufficient wallet balance: need {needed}, have {creator.wallet_balance}")

    match = Match(
        title=data.get("title") or f"{creator.username}'s challenge",
        description=data.get("description"),
        game_type=data["game_type"],
        match_type="tdm",
        mode=data.get("mode") or "solo",
        scheduled_at=scheduled_at,
        max_slots=int(data.get("max_slots") or 2),
        filled_slots=0,
        min_level_required=data.get("min_level_required") or "bronze",
        entry_fee=int(data.get("entry_fee") or 0),
        prize_pool=prize_pool,
        per_kill_prize=int(data.get("per_kill_prize") or 0),
        prize_distribution=data.get("prize_distribution") or winner_takes_all(prize_pool),
        room_id=room_id,
        room_password=room_password,
        room_credentials_visible=False,
        status="registration_open",
        is_challenge=True,
        creation_fee=creation_fee,
        created_by=creator.id,
        results=[],
        slots=[],
    )
    compute_time_fields(match)
    session.add(match)
    await session.flush()

    await record_transaction(
        session, user_id=creator.id, direction="debit", category="match_creation_fee", amount=creation_fee,
        reference_type="match", reference_id=match.id, description=f"Creation fee for challenge: {match.title}",
    )
    await record_transaction(
        session, user_id=creator.id, direction="debit", category="prize_pool_escrow", amount=prize_pool,
        reference_type="match", reference_id=match.id, description=f"Prize pool escrow for challenge: {match.title}",
    )

    match.slots.append(MatchSlot(
        user_id=creator.id,
        slot_number=1,
        in_game_id=data.get("in_game_id") or creator.in_game_id,
        in_game_name=data.get("in_game_name") or creator.in_game_name,
        entry_fee_paid=0,
    ))
    match.filled_slots = 1
    await session.flush()
    audit("challenge_create", match_id=str(match.id), actor=str(creator.id), prize_pool=prize_pool,
          creation_fee=creation_fee, entry_fee=match.entry_fee)
    return match


async def accept_challenge(
    session: AsyncSession,
    match: Match,
    opponent: User,
    *,
    in_game_id: str,
    in_game_name: str,
    slot_number: int | None = None,
    now: datetime | None = None,
) -> JoinOutcome:
    if not match.is_challenge:
        raise StateError("Not a challenge match")
    if opponent.id == match.created_by:
        raise Forbidden("You cannot join your own challenge as an opponent")
    if is_privileged(opponent.role):
        raise Forbidden("Administrators cannot join challenge matches")
    return await join_match(
        session, match, opponent,
        in_game_id=in_game_id, in_game_name=in_game_name, slot_number=slot_number, now=now,
    )


async def cancel_challenge(session: AsyncSession, match: Match, creator: User, *, reason: str | None = None) -> bool:
    """Creator backs out before anyone accepted; creation fee and prize pool come back in full."""
    if not match.is_challenge:
        raise StateError("Not a challenge match")
    if match.created_by != creator.id:
        raise Forbidden("Only the creator can cancel this challenge")
    if match.status in TERMINAL or match.status in ("live", "result_pending"):
        raise StateError(f"Cannot cancel a challenge that is {match.status}")
    if match.filled_slots != 1:
        raise StateError("Cannot cancel after an opponent has joined")
    return await cancel_match(
        session, match, reason=reason or "Cancelled by creator", actor_id=creator.id, system=False,
    )


def expired_challenges_query(now: datetime):
    return (
        select(Match.id)
        .where(
            Match.is_challenge.is_(True),
            Match.scheduled_at < now,
            Match.filled_slots <= 1,
            Match.status.not_in(tuple(TERMINAL)),
        )
        .order_by(Match.scheduled_at.asc())
    )


async def auto_expire_sweep(session_factory: async_sessionmaker | Callable, now: datetime | None = None) -> dict:
    """
    Cancel challenges nobody accepted before their start, refunding the escrow.
    One transaction per match; one bad match never stops the sweep.
    """
    now = now or utcnow()
    async with session_factory() as session:
        ids = (await session.execute(expired_challenges_query(now))).scalars().all()

    expired = failed = 0
    for match_id in ids:
        async with session_factory() as session:
            try:
                match = await load_match(session, match_id, for_update=True)
                # re-check under lock; a concurrent cancel or join may have won
                if match.status in TERMINAL or match.filled_slots > 1:
                    await session.rollback()
                    continue
                await cancel_match(
                    session, match,
                    reason="Challenge expired without an opponent",
                    actor_id=None, system=True, now=now,
                )
                await session.commit()
                expired += 1
            except Exception:  # noqa: BLE001
                await session.rollback()
                failed += 1
                log.exception("challenge_expire_failed", match_id=str(match_id))

    log.info("challenge_expire_sweep", candidates=len(ids), expired=expired, failed=failed)
    return {"candidates": len(ids), "expired": expired, "failed": failed}
