from __future__ import annotations
import asyncio
from typing import Callable
from uuid import UUID
import structlog
from redis import Redis
from rq import Queue
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from app.config import settings
from app.models.screenshot import ScreenshotHash
from app.services.media import analyze_image, hamming_hex

log = structlog.get_logger()

NEAR_DUPLICATE_DISTANCE = 5
RECENT_WINDOW = 50


async def annotate(session: AsyncSession, record: ScreenshotHash, data: bytes) -> list[str]:
    """
    Store phash/EXIF for an accepted upload and list recent originals that look
    nearly identical. Moderation status is left alone.
    """
    try:
        _mime, ph, exif = analyze_image(data)
    except ValueError as e:
        meta = dict(record.meta_json or {})
        meta["analysis_error"] = str(e)
        record.meta_json = meta
        return []

    recent = (
        await session.execute(
            select(ScreenshotHash)
            .where(ScreenshotHash.id != record.id, ScreenshotHash.is_duplicate.is_(False))
            .order_by(ScreenshotHash.created_at.desc())
            .limit(RECENT_WINDOW)
        )
    ).scalars().all()
    near: list[str] = []
    for prev in recent:
        prev_ph = (prev.meta_json or {}).get("phash")
        if prev_ph and hamming_hex(ph, prev_ph) <= NEAR_DUPLICATE_DISTANCE:
            near.append(str(prev.id))

    meta = dict(record.meta_json or {})
    meta["phash"] = ph
    if exif:
        meta["exif"] = exif
    if near:
        meta["flags"] = ["phash_near_duplicate"]
        meta["near_duplicates"] = near
    record.meta_json = meta
    return near


async def _run(record_id: str):
    from app.db import SessionLocal
    from app.services.storage import get_uploader

    async with SessionLocal() as session:
        record = await session.get(ScreenshotHash, UUID(record_id))
        if not record:
            return
        key = (record.meta_json or {}).get("storage_key")
        if not key:
            return
        data, _ = get_uploader().get_bytes(key)
        near = await annotate(session, record, data)
        await session.commit()
        log.info("screenshot_analyzed", record_id=record_id, near_duplicates=len(near))


def analyze_screenshot(record_id: str):
    # RQ entry point (sync); run the async coroutine
    asyncio.run(_run(record_id))


# RQ queue (lazy single instance)
_queue: Queue | None = None

def enqueue_analysis(record_id: UUID) -> None:
    global _queue
    try:
        if _queue is None:
            _queue = Queue("default", connection=Redis.from_url(settings.redis_url))
        _queue.enqueue(analyze_screenshot, str(record_id))
    except Exception as e:  # noqa: BLE001
        log.warning("enqueue_failed", job="analyze_screenshot", record_id=str(record_id), error=str(e))


def get_enqueuer() -> Callable[[UUID], None]:
    return enqueue_analysis
