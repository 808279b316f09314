from __future__ import annotations
from uuid import UUID
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth_deps import require
from app.db import get_session
from app.models.user import User
from app.schemas.match import ChallengeCreate, MatchPublic, CancelRequest, CancelResponse
from app.services.escrow import create_challenge, cancel_challenge
from app.services.matches import load_match
from app.services.notify import Publisher, get_publisher, match_topic

router = APIRouter(prefix="/matches", tags=["challenges"])


@router.post("/create-challenge", response_model=MatchPublic, status_code=201)
async def create(
    payload: ChallengeCreate,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(require("challenge.create")),
    publisher: Publisher = Depends(get_publisher),
):
    data = payload.model_dump(exclude={"room_credentials"})
    data["room_id"] = payload.room_credentials.room_id
    data["room_password"] = payload.room_credentials.room_password
    match = await create_challenge(session, creator=user, data=data)
    await session.commit()
    await publisher.publish("challenges", {"event": "challenge_created", "match_id": str(match.id)})
    return MatchPublic.model_validate(match)


@router.post("/{match_id}/cancel-challenge", response_model=CancelResponse)
async def cancel(
    match_id: UUID,
    payload: CancelRequest | None = None,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(require("challenge.cancel")),
    publisher: Publisher = Depends(get_publisher),
):
    match = await load_match(session, match_id, for_update=True)
    done = await cancel_challenge(session, match, user, reason=payload.reason if payload else None)
    await session.commit()
    await publisher.publish(match_topic(match.id), {"event": "match_cancelled", "match_id": str(match.id)})
    return CancelResponse(status=match.status, refunds_processed=done)
