from __future__ import annotations
import asyncio
from datetime import datetime
from typing import Awaitable, Callable
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker
import structlog

from app.models.match import Match
from app.services.escrow import auto_expire_sweep
from app.services.matches import TERMINAL, advance_schedule, load_match, retry_refunds
from app.services.time_windows import utcnow

log = structlog.get_logger()


class RecurringTask:
    """
    Runs `fn` every `interval` seconds on the event loop until stopped.
    A tick that raises is logged; the next tick still runs. Ticks never overlap.
    """

    def __init__(self, name: str, fn: Callable[[], Awaitable[object]], interval: float):
        self.name = name
        self._fn = fn
        self._interval = interval
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name=self.name)
        log.info("recurring_task_started", task=self.name, interval=self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        try:
            await self._task
        finally:
            self._task = None
            log.info("recurring_task_stopped", task=self.name)

    async def run_once(self) -> object:
        return await self._fn()

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self._fn()
            except Exception:  # noqa: BLE001
                log.exception("recurring_task_failed", task=self.name)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass


async def retry_pending_refunds(session_factory: async_sessionmaker) -> int:
    async with session_factory() as session:
        ids = (await session.execute(
            select(Match.id).where(Match.status == "cancelled", Match.refunds_processed.is_(False))
        )).scalars().all()
    fixed = 0
    for match_id in ids:
        async with session_factory() as session:
            try:
                match = await load_match(session, match_id, for_update=True)
                if await retry_refunds(session, match):
                    fixed += 1
                await session.commit()
            except Exception:  # noqa: BLE001
                await session.rollback()
                log.exception("refund_retry_failed", match_id=str(match_id))
    return fixed


async def advance_schedules(session_factory: async_sessionmaker, now: datetime) -> int:
    async with session_factory() as session:
        ids = (await session.execute(
            select(Match.id).where(
                Match.is_challenge.is_(False),
                Match.status.in_(("upcoming", "registration_open", "registration_closed")),
            )
        )).scalars().all()
    moved = 0
    for match_id in ids:
        async with session_factory() as session:
            try:
                match = await load_match(session, match_id, for_update=True)
                if match.status in TERMINAL:
                    continue
                if advance_schedule(match, now):
                    await session.commit()
                    moved += 1
            except Exception:  # noqa: BLE001
                await session.rollback()
                log.exception("schedule_advance_failed", match_id=str(match_id))
    return moved


async def run_sweep(session_factory: async_sessionmaker, now: datetime | None = None) -> dict:
    """One pass over persisted state. Safe to run repeatedly or concurrently with requests."""
    now = now or utcnow()
    expired = await auto_expire_sweep(session_factory, now)
    refunds_retried = await retry_pending_refunds(session_factory)
    advanced = await advance_schedules(session_factory, now)
    summary = {**expired, "refunds_retried": refunds_retried, "schedules_advanced": advanced}
    log.info("sweep_done", **summary)
    return summary


def build_sweeper(session_factory: async_sessionmaker, interval: float) -> RecurringTask:
    return RecurringTask("match_sweeper", lambda: run_sweep(session_factory), interval)
