from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Sequence
from uuid import UUID
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from app.config import settings
from app.db import is_postgres, flush_or_conflict
from app.errors import StateError, Conflict, Forbidden, NotFound, ValidationError
from app.logging_setup import audit
from app.models.match import Match, MatchSlot
from app.models.user import User, level_rank
from app.permissions import is_privileged
from app.services.ledger import record_transaction
from app.services.prizes import Standing, compute_distribution, prize_cap, resolve_rule, default_distribution
from app.services.time_windows import utcnow, as_utc, minutes_until, registration_close_time, credentials_reveal_time

log = structlog.get_logger()

# ---------- lifecycle graph ----------

TERMINAL = frozenset({"completed", "cancelled"})
JOINABLE = frozenset({"upcoming", "registration_open"})
RESULT_STATUSES = frozenset({"room_revealed", "live", "result_pending"})

TRANSITIONS: dict[str, frozenset[str]] = {
    "upcoming": frozenset({"registration_open", "registration_closed", "room_revealed", "cancelled"}),
    "registration_open": frozenset({"registration_closed", "room_revealed", "cancelled"}),
    "registration_closed": frozenset({"room_revealed", "live", "cancelled"}),
    "room_revealed": frozenset({"live", "result_pending", "completed", "cancelled"}),
    "live": frozenset({"result_pending", "completed", "cancelled"}),
    "result_pending": frozenset({"completed", "cancelled"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
}

# entering one of these hides room credentials again
HIDES_CREDENTIALS = frozenset({"result_pending", "cancelled"})


def can_transition(current: str, new: str) -> bool:
    return new in TRANSITIONS.get(current, frozenset())


def transition(match: Match, new_status: str) -> None:
    if not can_transition(match.status, new_status):
        raise StateError(f"Cannot move match from {match.status} to {new_status}")
    log.info("match_transition", match_id=str(match.id), from_status=match.status, to_status=new_status)
    match.status = new_status
    if new_status in HIDES_CREDENTIALS:
        match.room_credentials_visible = False


def has_credentials(match: Match) -> bool:
    return bool(match.room_id) and bool(match.room_password)


def _reveal(match: Match) -> None:
    if match.status != "room_revealed":
        transition(match, "room_revealed")
    match.room_credentials_visible = has_credentials(match)

# ---------- time fields & joinability ----------

def compute_time_fields(match: Match) -> None:
    """Derive registration close and reveal times from scheduled_at. Existing values are kept."""
    if match.registration_close_time is None:
        match.registration_close_time = registration_close_time(
            match.scheduled_at, bool(match.is_challenge), settings.registration_buffer_minutes
        )
    if match.credentials_reveal_time is None:
        match.credentials_reveal_time = credentials_reveal_time(match.scheduled_at, settings.reveal_buffer_minutes)


def is_joinable(match: Match, now: datetime) -> tuple[bool, str | None]:
    if match.status not in JOINABLE:
        return False, "Match is not open for registration"
    if match.filled_slots >= match.max_slots:
        return False, "Match is full"
    close = match.registration_close_time or registration_close_time(
        match.scheduled_at, bool(match.is_challenge), settings.registration_buffer_minutes
    )
    if as_utc(now) > as_utc(close):
        return False, "Registration is closed"
    return True, None

# ---------- loading ----------

async def lock_match(session: AsyncSession, match_id: UUID) -> None:
    if is_postgres(session):
        await session.execute(text("SELECT pg_advisory_xact_lock(hashtext(:k))"), {"k": f"match:{match_id}"})


async def load_match(session: AsyncSession, match_id: UUID, *, for_update: bool = False) -> Match:
    """Fetch a match; `for_update` serializes writers on Postgres (advisory + row lock)."""
    if for_update:
        await lock_match(session, match_id)
    match = await session.get(Match, match_id, with_for_update=for_update and is_postgres(session))
    if match is None:
        raise NotFound("Match not found")
    return match

# ---------- join / leave ----------

@dataclass
class JoinOutcome:
    slot_number: int
    room_revealed: bool
    credentials: dict | None = None


def _pick_slot_number(match: Match, requested: int | None) -> int:
    taken = {s.slot_number for s in match.slots}
    if requested is not None and match.is_challenge:
        if not 1 <= requested <= match.max_slots:
            raise ValidationError(f"Slot number must be between 1 and {match.max_slots}")
        if requested in taken:
            raise Conflict(f"Slot {requested} is already taken")
        return requested
    for n in range(1, match.max_slots + 1):
        if n not in taken:
            return n
    raise Conflict("Match is full")


async def join_match(
    session: AsyncSession,
    match: Match,
    user: User,
    *,
    in_game_id: str,
    in_game_name: str,
    slot_number: int | None = None,
    now: datetime | None = None,
) -> JoinOutcome:
    """
    Debit the entry fee and take a slot as one unit of work. Filling the last
    slot reveals the room. Nothing is committed here; the caller commits.
    """
    now = now or utcnow()
    if is_privileged(user.role):
        raise Forbidden("Administrators cannot join matches")

    ok, reason = is_joinable(match, now)
    if not ok:
        if match.status in JOINABLE and match.filled_slots >= match.max_slots:
            raise Conflict(reason)
        raise StateError(reason)

    if match.is_challenge and match.created_by == user.id:
        raise Forbidden("You cannot join your own challenge as an opponent")
    if match.has_joined(user.id):
        raise Conflict("You have already joined this match")
    if level_rank(user.level) < level_rank(match.min_level_required):
        raise Forbidden(f"Minimum {match.min_level_required} level required for this match")

    number = _pick_slot_number(match, slot_number)

    fee = int(match.entry_fee or 0)
    await record_transaction(
        session,
        user_id=user.id,
        direction="debit",
        category="challenge_entry" if match.is_challenge else "match_entry",
        amount=fee,
        reference_type="match",
        reference_id=match.id,
        description=f"Entry fee for: {match.title}",
    )

    match.slots.append(MatchSlot(
        user_id=user.id,
        slot_number=number,
        in_game_id=in_game_id,
        in_game_name=in_game_name,
        entry_fee_paid=fee,
    ))
    match.filled_slots = len(match.slots)

    revealed = False
    if match.filled_slots >= match.max_slots:
        _reveal(match)
        revealed = True

    try:
        await flush_or_conflict(session, "Match was modified concurrently, please retry")
    except IntegrityError as e:
        raise Conflict("Slot was taken concurrently, please retry") from e

    log.info("match_join", match_id=str(match.id), user_id=str(user.id), slot=number, revealed=revealed)
    creds = None
    if revealed and match.room_credentials_visible:
        creds = {"room_id": match.room_id, "room_password": match.room_password}
    return JoinOutcome(slot_number=number, room_revealed=revealed, credentials=creds)


async def _renumber(session: AsyncSession, match: Match) -> None:
    # ascending, one flush per step, so uq_match_slot_number never sees two equal numbers
    for idx, slot in enumerate(sorted(match.slots, key=lambda s: s.slot_number), start=1):
        if slot.slot_number != idx:
            slot.slot_number = idx
            await flush_or_conflict(session)


async def leave_match(session: AsyncSession, match: Match, user: User, now: datetime | None = None) -> int:
    """Give the slot back before the cutoff. Returns the refunded amount."""
    now = now or utcnow()
    if match.status not in JOINABLE:
        raise StateError("Cannot leave a match that has already started or closed")
    if minutes_until(match.scheduled_at, now) < settings.leave_cutoff_minutes:
        raise StateError(f"Cannot leave within {settings.leave_cutoff_minutes} minutes of the start")
    if match.is_challenge and match.created_by == user.id:
        raise Forbidden("The challenge creator cannot leave; cancel the challenge instead")
    slot = match.slot_for(user.id)
    if slot is None:
        raise NotFound("You have not joined this match")

    paid = int(slot.entry_fee_paid or 0)
    slot_id = slot.id
    match.slots.remove(slot)
    match.filled_slots = len(match.slots)
    await flush_or_conflict(session, "Match was modified concurrently, please retry")
    if not match.is_challenge:
        await _renumber(session, match)

    refund = paid * settings.leave_refund_percent // 100
    await record_transaction(
        session,
        user_id=user.id,
        direction="credit",
        category="match_refund",
        amount=refund,
        reference_type="match",
        reference_id=match.id,
        description=f"Refund ({settings.leave_refund_percent}%) for leaving: {match.title}",
        idempotency_key=f"leave:{slot_id}",
    )
    log.info("match_leave", match_id=str(match.id), user_id=str(user.id), refund=refund)
    return refund

# ---------- cancellation & refunds ----------

def refund_key(match_id: UUID, user_id: UUID) -> str:
    return f"refund:{match_id}:{user_id}"


def escrow_refund_key(match_id: UUID) -> str:
    return f"escrow_refund:{match_id}"


async def _refund_one(
    session: AsyncSession, match: Match, user_id: UUID, amount: int, category: str, key: str, description: str
) -> bool:
    try:
        async with session.begin_nested():
            await record_transaction(
                session,
                user_id=user_id,
                direction="credit",
                category=category,
                amount=amount,
                reference_type="match",
                reference_id=match.id,
                description=description,
                idempotency_key=key,
            )
        return True
    except Exception:  # noqa: BLE001
        log.exception("refund_failed", match_id=str(match.id), user_id=str(user_id), amount=amount, key=key)
        return False


async def refund_all(session: AsyncSession, match: Match, *, category: str = "match_refund") -> bool:
    """
    One refund per paying slot, plus the escrow for challenges. Each refund is isolated
    in a savepoint; returns True only if every refund went through.
    """
    all_ok = True
    for slot in list(match.slots):
        if int(slot.entry_fee_paid or 0) <= 0:
            continue
        ok = await _refund_one(
            session, match, slot.user_id, int(slot.entry_fee_paid), category,
            refund_key(match.id, slot.user_id), f"Refund for cancelled match: {match.title}",
        )
        all_ok = all_ok and ok
    if match.is_challenge:
        escrow = int(match.creation_fee or 0) + int(match.prize_pool or 0)
        if escrow > 0:
            ok = await _refund_one(
                session, match, match.created_by, escrow, category,
                escrow_refund_key(match.id), f"Escrow refund for cancelled challenge: {match.title}",
            )
            all_ok = all_ok and ok
    return all_ok


async def cancel_match(
    session: AsyncSession,
    match: Match,
    *,
    reason: str,
    actor_id: UUID | None,
    system: bool = False,
    now: datetime | None = None,
) -> bool:
    """Irreversible. Returns whether every refund was issued."""
    if match.status in TERMINAL:
        raise StateError(f"Match is already {match.status}")
    transition(match, "cancelled")
    match.cancelled_at = now or utcnow()
    match.cancelled_by = actor_id
    match.cancellation_reason = reason
    match.cancelled_by_system = system
    await flush_or_conflict(session, "Match was modified concurrently, please retry")

    done = await refund_all(session, match, category="match_auto_refund" if system else "match_refund")
    match.refunds_processed = done
    await flush_or_conflict(session)
    audit("match_cancel", match_id=str(match.id), actor=str(actor_id) if actor_id else "system",
          reason=reason, refunds_processed=done)
    return done


async def retry_refunds(session: AsyncSession, match: Match) -> bool:
    if match.status != "cancelled":
        raise StateError("Only cancelled matches have refunds to retry")
    if match.refunds_processed:
        return True
    done = await refund_all(
        session, match, category="match_auto_refund" if match.cancelled_by_system else "match_refund"
    )
    match.refunds_processed = done
    await flush_or_conflict(session)
    log.info("refund_retry", match_id=str(match.id), refunds_processed=done)
    return done

# ---------- results ----------

@dataclass(frozen=True)
class ResultEntry:
    user_id: UUID
    position: int
    kills: int = 0


def _check_entries(match: Match, entries: Sequence[ResultEntry]) -> None:
    if not entries:
        raise ValidationError("Winners list is required")
    seen_users: set[UUID] = set()
    seen_positions: set[int] = set()
    for e in entries:
        if e.position < 1:
            raise ValidationError("Positions start at 1")
        if e.kills < 0:
            raise ValidationError("Kills must be >= 0")
        if e.user_id in seen_users:
            raise ValidationError(f"User {e.user_id} listed twice")
        if e.position in seen_positions:
            raise ValidationError(f"Position {e.position} assigned twice")
        if not match.has_joined(e.user_id):
            raise ValidationError(f"User {e.user_id} is not in this match")
        seen_users.add(e.user_id)
        seen_positions.add(e.position)


async def _pay_slot(session: AsyncSession, match: Match, slot: MatchSlot, amount: int) -> None:
    """Credit a slot's prize exactly once and roll the winner's stats forward."""
    if slot.prize_distributed:
        return
    slot.prize_won = amount
    if amount <= 0:
        return
    await record_transaction(
        session,
        user_id=slot.user_id,
        direction="credit",
        category="match_prize",
        amount=amount,
        reference_type="match",
        reference_id=match.id,
        description=f"Prize for {match.title} - Position: {slot.position}, Kills: {slot.kills}",
        idempotency_key=f"prize:{match.id}:{slot.user_id}",
    )
    slot.prize_distributed = True
    user = await session.get(User, slot.user_id)
    podium = slot.position is not None and slot.position <= 3
    user.matches_won += 1 if podium else 0
    user.total_earnings += amount
    user.add_xp(100 + 10 * int(slot.kills or 0) + (50 if podium else 0))


def _results_snapshot(match: Match, actor_id: UUID | None, at: datetime) -> list[dict]:
    rows = [
        {
            "user_id": str(s.user_id),
            "position": s.position,
            "kills": s.kills,
            "prize": s.prize_won,
            "verified_by": str(actor_id) if actor_id else None,
            "verified_at": at.isoformat(),
        }
        for s in match.slots if s.screenshot_status == "verified"
    ]
    return sorted(rows, key=lambda r: r["position"] or 0)


def all_terminal(match: Match) -> bool:
    return all(s.screenshot_status in ("verified", "rejected") for s in match.slots)


async def _complete_if_done(session: AsyncSession, match: Match, actor_id: UUID | None, now: datetime) -> bool:
    if not match.slots or not all_terminal(match):
        return False
    for slot in match.slots:
        user = await session.get(User, slot.user_id)
        user.matches_played += 1
    match.results = _results_snapshot(match, actor_id, now)
    match.result_declared_at = now
    transition(match, "completed")
    return True


async def declare_results(
    session: AsyncSession,
    match: Match,
    entries: Sequence[ResultEntry],
    *,
    actor_id: UUID | None,
    now: datetime | None = None,
) -> dict:
    now = now or utcnow()
    if match.status not in RESULT_STATUSES:
        raise StateError(f"Cannot declare results while match is {match.status}")
    _check_entries(match, entries)

    # results already approved one by one are final; a declaration can only fill in the rest
    fixed = {s.user_id: s for s in match.slots if s.screenshot_status == "verified"}
    taken = {s.position for s in fixed.values()}
    for e in entries:
        held = fixed.get(e.user_id)
        if held is None:
            if e.position in taken:
                raise Conflict(f"Position {e.position} is already verified for another player")
        elif held.position != e.position or int(held.kills or 0) != e.kills:
            raise Conflict(f"Result for user {e.user_id} is already verified at position {held.position}")

    rule = await resolve_rule(session, match, now)
    standings = [Standing(user_id=e.user_id, position=e.position, kills=e.kills) for e in entries if e.user_id not in fixed]
    payouts = compute_distribution(rule, standings, match.prize_pool, match.per_kill_prize)
    verified = [Standing(s.user_id, s.position, s.kills) for s in fixed.values()]
    already = sum(int(s.prize_won or 0) for s in fixed.values())
    cap = prize_cap(rule, verified + standings, match.prize_pool, match.per_kill_prize)
    total = sum(p.total for p in payouts)
    if already + total > cap:
        raise ValidationError(f"Computed prizes ({already + total}) exceed the prize cap ({cap})")

    by_user = {p.user_id: p for p in payouts}
    for slot in match.slots:
        if slot.user_id in fixed:
            continue
        payout = by_user.get(slot.user_id)
        if payout is None:
            slot.screenshot_status = "rejected"
            slot.screenshot_rejection_reason = "Not in winners list"
            continue
        slot.position = payout.position
        slot.kills = payout.kills
        slot.screenshot_status = "verified"
        await _pay_slot(session, match, slot, payout.total)

    completed = await _complete_if_done(session, match, actor_id, now)
    await flush_or_conflict(session, "Match was modified concurrently, please retry")
    audit("match_result_declare", match_id=str(match.id), actor=str(actor_id),
          winners=len(entries), total_paid=total, rule_source=rule.source)
    return {"status": match.status, "winners_count": len(entries), "completed": completed, "total_paid": total}


async def verify_result(
    session: AsyncSession,
    match: Match,
    *,
    user_id: UUID,
    position: int | None,
    kills: int,
    approve: bool,
    reject_reason: str | None,
    actor_id: UUID | None,
    now: datetime | None = None,
) -> dict:
    """Moderate one player's result. Completes the match once every slot is verified or rejected."""
    now = now or utcnow()
    if match.status not in RESULT_STATUSES:
        raise StateError(f"Cannot verify results while match is {match.status}")
    slot = match.slot_for(user_id)
    if slot is None:
        raise NotFound("User not found in this match")
    if slot.screenshot_status == "verified":
        raise Conflict("Result already verified for this player")

    paid = 0
    if approve:
        if position is None or position < 1:
            raise ValidationError("A position >= 1 is required to approve a result")
        if kills < 0:
            raise ValidationError("Kills must be >= 0")
        if any(s.position == position and s.screenshot_status == "verified" for s in match.slots):
            raise ValidationError(f"Position {position} already assigned")

        rule = await resolve_rule(session, match, now)
        verified = [Standing(s.user_id, s.position, s.kills) for s in match.slots if s.screenshot_status == "verified"]
        mine = Standing(user_id=user_id, position=position, kills=kills)
        payout = compute_distribution(rule, [mine], match.prize_pool, match.per_kill_prize)[0]
        already = sum(int(s.prize_won or 0) for s in match.slots if s.screenshot_status == "verified")
        cap = prize_cap(rule, verified + [mine], match.prize_pool, match.per_kill_prize)
        if already + payout.total > cap:
            raise ValidationError(f"Computed prizes ({already + payout.total}) exceed the prize cap ({cap})")

        slot.position = position
        slot.kills = kills
        slot.screenshot_status = "verified"
        slot.screenshot_rejection_reason = None
        await _pay_slot(session, match, slot, payout.total)
        paid = payout.total
    else:
        slot.screenshot_status = "rejected"
        slot.screenshot_rejection_reason = reject_reason or "Rejected by moderator"

    completed = await _complete_if_done(session, match, actor_id, now)
    await flush_or_conflict(session, "Match was modified concurrently, please retry")
    audit("match_result_verify", match_id=str(match.id), actor=str(actor_id), user_id=str(user_id),
          approve=approve, position=position, kills=kills, prize=paid)
    return {"approved": approve, "prize": paid, "match_completed": completed}

# ---------- operator actions ----------

async def create_match(session: AsyncSession, *, creator: User, data: dict, now: datetime | None = None) -> Match:
    now = now or utcnow()
    scheduled_at = as_utc(data["scheduled_at"])
    if scheduled_at <= now:
        raise ValidationError("scheduled_at must be in the future")
    prize_pool = int(data.get("prize_pool") or 0)
    match = Match(
        title=data["title"],
        description=data.get("description"),
        game_type=data["game_type"],
        match_type=data.get("match_type") or "match_win",
        mode=data.get("mode") or "solo",
        scheduled_at=scheduled_at,
        max_slots=int(data["max_slots"]),
        filled_slots=0,
        min_level_required=data.get("min_level_required") or "bronze",
        entry_fee=int(data.get("entry_fee") or 0),
        prize_pool=prize_pool,
        per_kill_prize=int(data.get("per_kill_prize") or 0),
        prize_distribution=data.get("prize_distribution") or default_distribution(prize_pool),
        prize_rule_id=data.get("prize_rule_id"),
        room_id=data.get("room_id"),
        room_password=data.get("room_password"),
        room_credentials_visible=False,
        status=data.get("status") or "upcoming",
        is_challenge=False,
        created_by=creator.id,
        results=[],
        slots=[],
    )
    if match.status not in JOINABLE:
        raise ValidationError("New matches start as upcoming or registration_open")
    compute_time_fields(match)
    session.add(match)
    await session.flush()
    audit("match_create", match_id=str(match.id), actor=str(creator.id), title=match.title)
    return match


async def set_room_credentials(
    session: AsyncSession, match: Match, *, room_id: str, room_password: str, reveal_now: bool, actor_id: UUID
) -> None:
    if match.status in TERMINAL or match.status == "result_pending":
        raise StateError(f"Cannot set credentials while match is {match.status}")
    match.room_id = room_id
    match.room_password = room_password
    if reveal_now:
        if match.status in ("room_revealed", "live"):
            match.room_credentials_visible = True
        else:
            _reveal(match)
    await flush_or_conflict(session, "Match was modified concurrently, please retry")
    audit("match_set_credentials", match_id=str(match.id), actor=str(actor_id), reveal_now=reveal_now)


async def start_match(session: AsyncSession, match: Match, *, actor_id: UUID) -> None:
    transition(match, "live")
    match.room_credentials_visible = has_credentials(match)
    await flush_or_conflict(session, "Match was modified concurrently, please retry")
    audit("match_start", match_id=str(match.id), actor=str(actor_id))


async def mark_result_pending(session: AsyncSession, match: Match, *, actor_id: UUID) -> None:
    if match.status != "live":
        raise StateError("Only live matches can await results")
    transition(match, "result_pending")
    await flush_or_conflict(session, "Match was modified concurrently, please retry")
    audit("match_result_pending", match_id=str(match.id), actor=str(actor_id))


def advance_schedule(match: Match, now: datetime) -> bool:
    """Time-driven moves for organized matches. Returns True if anything changed."""
    if match.is_challenge or match.status in TERMINAL:
        return False
    now = as_utc(now)
    changed = False
    compute_time_fields(match)
    if match.status in JOINABLE and now > as_utc(match.registration_close_time):
        transition(match, "registration_closed")
        changed = True
    if (
        match.status in ("upcoming", "registration_open", "registration_closed")
        and now >= as_utc(match.credentials_reveal_time)
        and has_credentials(match)
    ):
        _reveal(match)
        changed = True
    return changed


def credentials_for(match: Match, user: User) -> dict:
    """Room credentials for a participant (or the creator/operators) once revealed."""
    allowed = match.has_joined(user.id) or match.created_by == user.id or is_privileged(user.role)
    if not allowed:
        raise Forbidden("Join the match to see room credentials")
    if not match.room_credentials_visible:
        raise StateError("Room credentials are not revealed yet")
    return {"room_id": match.room_id, "room_password": match.room_password}
