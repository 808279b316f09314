from __future__ import annotations
import hashlib
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from app.errors import Conflict, Forbidden, StateError, ValidationError
from app.models.match import Match
from app.models.screenshot import ScreenshotHash
from app.models.user import User
from app.services.media import validate_image, ext_for_mime
from app.services.storage import MediaUploader
from app.services.time_windows import utcnow

log = structlog.get_logger()

UPLOAD_STATUSES = ("live", "result_pending", "completed")
DUPLICATE_REASON = "Duplicate screenshot detected"


@dataclass
class ScreenshotOutcome:
    status: str                       # pending | flagged
    record: ScreenshotHash
    duplicate_of_id: UUID | None = None

    @property
    def is_duplicate(self) -> bool:
        return self.status == "flagged"


def hash_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


async def check_duplicate(session: AsyncSession, content_hash: str, user_id: UUID, match_id: UUID) -> ScreenshotHash | None:
    """The original upload of these exact bytes, by anyone, for any match; None if unseen."""
    original = await session.scalar(
        select(ScreenshotHash).where(
            ScreenshotHash.content_hash == content_hash,
            ScreenshotHash.is_duplicate.is_(False),
        )
    )
    if original is not None:
        log.info(
            "screenshot_duplicate",
            content_hash=content_hash, user_id=str(user_id), match_id=str(match_id),
            original_id=str(original.id), original_user_id=str(original.user_id),
        )
    return original


async def submit_screenshot(
    session: AsyncSession,
    match: Match,
    user: User,
    data: bytes,
    *,
    uploader: MediaUploader,
    now: datetime | None = None,
) -> ScreenshotOutcome:
    """
    Record a proof-of-result image for the caller's slot.
    A byte-identical resubmission is stored flagged and reported as such; the caller
    decides how to surface it (the HTTP layer commits the flag, then answers 409).
    """
    now = now or utcnow()
    slot = match.slot_for(user.id)
    if slot is None:
        raise Forbidden("You have not joined this match")
    if match.status not in UPLOAD_STATUSES:
        raise StateError("Screenshots can only be uploaded after the match starts")
    if slot.screenshot_status == "verified":
        raise Conflict("Your screenshot has already been verified")
    if match.status == "completed" and slot.screenshot_status == "rejected":
        raise StateError("Results for this match are final")
    if not data:
        raise ValidationError("Please upload a screenshot")
    try:
        mime = validate_image(data)
    except ValueError as e:
        raise ValidationError(str(e)) from e

    digest = hash_bytes(data)
    original = await check_duplicate(session, digest, user.id, match.id)
    if original is not None:
        record = ScreenshotHash(
            content_hash=digest,
            user_id=user.id,
            match_id=match.id,
            is_duplicate=True,
            duplicate_of_id=original.id,
            status="flagged",
            flag_reason=DUPLICATE_REASON,
            meta_json={},
        )
        session.add(record)
        slot.screenshot_status = "flagged"
        slot.screenshot_rejection_reason = DUPLICATE_REASON
        await session.flush()
        return ScreenshotOutcome(status="flagged", record=record, duplicate_of_id=original.id)

    key = f"matches/{match.id}/{user.id}/{digest[:16]}.{ext_for_mime(mime)}"
    uploaded = await uploader.upload(key, data, mime)
    record = ScreenshotHash(
        content_hash=digest,
        user_id=user.id,
        match_id=match.id,
        image_url=uploaded.url,
        is_duplicate=False,
        status="pending",
        meta_json={"storage_key": uploaded.key, "mime": mime},
    )
    session.add(record)
    slot.screenshot_url = uploaded.url
    slot.screenshot_hash = digest
    slot.screenshot_uploaded_at = now
    slot.screenshot_status = "pending"
    slot.screenshot_rejection_reason = None
    try:
        await session.flush()
    except IntegrityError as e:
        # the same bytes were stored as an original by a concurrent upload
        raise Conflict(DUPLICATE_REASON) from e
    log.info("screenshot_accepted", match_id=str(match.id), user_id=str(user.id), record_id=str(record.id))
    return ScreenshotOutcome(status="pending", record=record)
