from __future__ import annotations
from typing import Callable
from uuid import UUID
from fastapi import APIRouter, Depends, File, Query, UploadFile
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth_deps import require
from app.db import get_session
from app.errors import Conflict, Forbidden, ValidationError
from app.jobs.analyze_screenshot import get_enqueuer
from app.models.match import Match, MATCH_STATUSES
from app.models.user import User
from app.schemas.match import (
    MatchCreate, MatchPublic, MyMatchStatus, RoomCredentials, SetCredentialsRequest, SlotPublic,
    JoinRequest, JoinResponse, LeaveResponse, CancelRequest, CancelResponse,
    DeclareWinnersRequest, DeclareWinnersResponse, VerifyResultRequest, VerifyResultResponse, ScreenshotResponse,
)
from app.services import matches as svc
from app.services.escrow import accept_challenge
from app.services.notify import Publisher, get_publisher, match_topic
from app.services.screenshots import submit_screenshot, DUPLICATE_REASON
from app.services.storage import MediaUploader, get_uploader

router = APIRouter(prefix="/matches", tags=["matches"])


def _ensure_manages(match: Match, user: User) -> None:
    # hosts run their own matches only
    if user.role == "host" and match.created_by != user.id:
        raise Forbidden("Hosts can only manage matches they created")


async def _slot_update(publisher: Publisher, match: Match, room_revealed: bool = False) -> None:
    await publisher.publish(match_topic(match.id), {
        "event": "slot_update",
        "match_id": str(match.id),
        "filled_slots": match.filled_slots,
        "max_slots": match.max_slots,
        "room_revealed": room_revealed,
    })


@router.get("", response_model=list[MatchPublic])
async def list_matches(
    status: str | None = Query(default=None),
    game_type: str | None = Query(default=None, alias="gameType"),
    match_type: str | None = Query(default=None, alias="matchType"),
    is_challenge: bool | None = Query(default=None, alias="isChallenge"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
    user: User = Depends(require("match.view")),
):
    q = select(Match)
    if status and status not in MATCH_STATUSES:
        raise ValidationError(f"Unknown status '{status}'")
    if status:
        q = q.where(Match.status == status)
    if game_type:
        q = q.where(Match.game_type == game_type)
    if match_type:
        q = q.where(Match.match_type == match_type)
    if is_challenge is not None:
        q = q.where(Match.is_challenge.is_(is_challenge))
    q = q.order_by(Match.scheduled_at.asc()).offset((page - 1) * limit).limit(limit)
    rows = (await session.execute(q)).scalars().all()
    return [MatchPublic.model_validate(m) for m in rows]


@router.get("/{match_id}", response_model=MatchPublic)
async def get_match(match_id: UUID, session: AsyncSession = Depends(get_session), user: User = Depends(require("match.view"))):
    return MatchPublic.model_validate(await svc.load_match(session, match_id))


@router.get("/{match_id}/me", response_model=MyMatchStatus)
async def my_status(match_id: UUID, session: AsyncSession = Depends(get_session), user: User = Depends(require("match.view"))):
    match = await svc.load_match(session, match_id)
    slot = match.slot_for(user.id)
    creds = None
    if slot is not None and match.room_credentials_visible:
        creds = RoomCredentials(room_id=match.room_id, room_password=match.room_password)
    return MyMatchStatus(
        joined=slot is not None,
        slot=SlotPublic.model_validate(slot) if slot else None,
        match_status=match.status,
        room_credentials=creds,
    )


@router.get("/{match_id}/credentials", response_model=RoomCredentials)
async def get_credentials(match_id: UUID, session: AsyncSession = Depends(get_session), user: User = Depends(require("match.view"))):
    match = await svc.load_match(session, match_id)
    return RoomCredentials(**svc.credentials_for(match, user))

# ---------- operator ----------

@router.post("", response_model=MatchPublic, status_code=201)
async def create_match(payload: MatchCreate, session: AsyncSession = Depends(get_session), user: User = Depends(require("match.create"))):
    data = payload.model_dump(exclude={"room_credentials"})
    if payload.prize_distribution is not None:
        data["prize_distribution"] = [t.model_dump() for t in payload.prize_distribution]
    if payload.room_credentials:
        data["room_id"] = payload.room_credentials.room_id
        data["room_password"] = payload.room_credentials.room_password
    match = await svc.create_match(session, creator=user, data=data)
    await session.commit()
    return MatchPublic.model_validate(match)


@router.post("/{match_id}/credentials", response_model=MatchPublic)
async def set_credentials(
    match_id: UUID,
    payload: SetCredentialsRequest,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(require("match.credentials")),
    publisher: Publisher = Depends(get_publisher),
):
    match = await svc.load_match(session, match_id, for_update=True)
    _ensure_manages(match, user)
    await svc.set_room_credentials(
        session, match, room_id=payload.room_id, room_password=payload.room_password,
        reveal_now=payload.reveal_now, actor_id=user.id,
    )
    await session.commit()
    if match.room_credentials_visible:
        await publisher.publish(match_topic(match.id), {"event": "room_revealed", "match_id": str(match.id)})
    return MatchPublic.model_validate(match)


@router.post("/{match_id}/start", response_model=MatchPublic)
async def start(match_id: UUID, session: AsyncSession = Depends(get_session), user: User = Depends(require("match.start")),
                publisher: Publisher = Depends(get_publisher)):
    match = await svc.load_match(session, match_id, for_update=True)
    _ensure_manages(match, user)
    await svc.start_match(session, match, actor_id=user.id)
    await session.commit()
    await publisher.publish(match_topic(match.id), {"event": "match_started", "match_id": str(match.id)})
    return MatchPublic.model_validate(match)


@router.post("/{match_id}/result-pending", response_model=MatchPublic)
async def result_pending(match_id: UUID, session: AsyncSession = Depends(get_session), user: User = Depends(require("match.start"))):
    match = await svc.load_match(session, match_id, for_update=True)
    _ensure_manages(match, user)
    await svc.mark_result_pending(session, match, actor_id=user.id)
    await session.commit()
    return MatchPublic.model_validate(match)


@router.post("/{match_id}/cancel", response_model=CancelResponse)
async def cancel(
    match_id: UUID,
    payload: CancelRequest,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(require("match.cancel")),
    publisher: Publisher = Depends(get_publisher),
):
    match = await svc.load_match(session, match_id, for_update=True)
    done = await svc.cancel_match(session, match, reason=payload.reason, actor_id=user.id)
    await session.commit()
    await publisher.publish(match_topic(match.id), {"event": "match_cancelled", "match_id": str(match.id), "reason": payload.reason})
    return CancelResponse(status=match.status, refunds_processed=done)


@router.post("/{match_id}/verify-result", response_model=VerifyResultResponse)
async def verify(
    match_id: UUID,
    payload: VerifyResultRequest,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(require("match.verify_result")),
):
    match = await svc.load_match(session, match_id, for_update=True)
    out = await svc.verify_result(
        session, match,
        user_id=payload.user_id, position=payload.position, kills=payload.kills,
        approve=payload.approve, reject_reason=payload.reject_reason, actor_id=user.id,
    )
    await session.commit()
    return VerifyResultResponse(**out)


@router.post("/{match_id}/declare-winners", response_model=DeclareWinnersResponse)
async def declare_winners(
    match_id: UUID,
    payload: DeclareWinnersRequest,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(require("match.declare_results")),
    publisher: Publisher = Depends(get_publisher),
):
    match = await svc.load_match(session, match_id, for_update=True)
    entries = [svc.ResultEntry(user_id=w.user_id, position=w.position, kills=w.kills) for w in payload.winners]
    out = await svc.declare_results(session, match, entries, actor_id=user.id)
    await session.commit()
    await publisher.publish(match_topic(match.id), {"event": "results_declared", "match_id": str(match.id)})
    return DeclareWinnersResponse(**out)

# ---------- players ----------

@router.post("/{match_id}/join", response_model=JoinResponse)
async def join(
    match_id: UUID,
    payload: JoinRequest,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(require("match.join")),
    publisher: Publisher = Depends(get_publisher),
):
    match = await svc.load_match(session, match_id, for_update=True)
    kw = dict(in_game_id=payload.in_game_id, in_game_name=payload.in_game_name, slot_number=payload.slot_number)
    if match.is_challenge:
        out = await accept_challenge(session, match, user, **kw)
    else:
        out = await svc.join_match(session, match, user, **kw)
    await session.commit()
    await _slot_update(publisher, match, out.room_revealed)
    return JoinResponse(
        slot_number=out.slot_number,
        room_revealed=out.room_revealed,
        room_credentials=RoomCredentials(**out.credentials) if out.credentials else None,
    )


@router.post("/{match_id}/leave", response_model=LeaveResponse)
async def leave(
    match_id: UUID,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(require("match.leave")),
    publisher: Publisher = Depends(get_publisher),
):
    match = await svc.load_match(session, match_id, for_update=True)
    refund = await svc.leave_match(session, match, user)
    await session.commit()
    await _slot_update(publisher, match)
    return LeaveResponse(refund_amount=refund)


@router.post("/{match_id}/screenshot", response_model=ScreenshotResponse)
async def upload_screenshot(
    match_id: UUID,
    file: UploadFile = File(...),
    session: AsyncSession = Depends(get_session),
    user: User = Depends(require("match.screenshot")),
    uploader: MediaUploader = Depends(get_uploader),
    enqueue: Callable[[UUID], None] = Depends(get_enqueuer),
):
    match = await svc.load_match(session, match_id, for_update=True)
    data = await file.read()
    outcome = await submit_screenshot(session, match, user, data, uploader=uploader)
    await session.commit()
    if outcome.is_duplicate:
        # the flag is kept; the request itself still fails
        raise Conflict(DUPLICATE_REASON)
    enqueue(outcome.record.id)
    return ScreenshotResponse(status=outcome.status, url=outcome.record.image_url)
