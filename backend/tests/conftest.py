from __future__ import annotations
import io
import os
import uuid
from datetime import datetime, timedelta, timezone

os.environ.setdefault("SWEEPER_ENABLED", "0")
os.environ.setdefault("JWT_SECRET", "test-secret")

import httpx
import pytest
from PIL import Image
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from app.db import Base, get_session
from app.jobs.analyze_screenshot import get_enqueuer
from app.main import app
from app.models.match import Match
from app.models.user import User
from app.security import make_access_token
from app.services.notify import get_publisher
from app.services.storage import UploadResult, get_uploader
import app.models.ledger as _ledger_models  # noqa: F401  register tables
import app.models.prize_rule as _prize_rule_models  # noqa: F401
import app.models.screenshot as _screenshot_models  # noqa: F401


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class RecordingPublisher:
    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    async def publish(self, topic: str, payload: dict) -> None:
        self.events.append((topic, payload))


class MemoryUploader:
    def __init__(self):
        self.objects: dict[str, bytes] = {}

    async def upload(self, key: str, data: bytes, content_type: str) -> UploadResult:
        self.objects[key] = data
        return UploadResult(url=f"http://media.test/{key}", key=key)


@pytest.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN itself
    @event.listens_for(eng.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA journal_mode=WAL")
        cur.close()

    @event.listens_for(eng.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
def make_user(session_factory):
    async def _make(balance: int = 0, role: str = "user", level: str = "bronze", username: str | None = None) -> User:
        async with session_factory() as s:
            u = User(
                username=username or f"player_{uuid.uuid4().hex[:8]}",
                role=role,
                level=level,
                wallet_balance=balance,
                in_game_name="ign",
                in_game_id="123456",
            )
            s.add(u)
            await s.commit()
            return u
    return _make


@pytest.fixture
def make_match(session_factory):
    async def _make(creator: User, **kw) -> Match:
        scheduled = kw.pop("scheduled_at", now_utc() + timedelta(hours=3))
        fields = dict(
            title="Evening Scrims",
            game_type="pubg_mobile",
            match_type="match_win",
            mode="solo",
            scheduled_at=scheduled,
            max_slots=4,
            filled_slots=0,
            entry_fee=100,
            prize_pool=300,
            per_kill_prize=0,
            prize_distribution=[{"position": 1, "prize": 150}, {"position": 2, "prize": 90}, {"position": 3, "prize": 60}],
            status="registration_open",
            created_by=creator.id,
            results=[],
            slots=[],
        )
        fields.update(kw)
        m = Match(**fields)
        from app.services.matches import compute_time_fields
        compute_time_fields(m)
        async with session_factory() as s:
            s.add(m)
            await s.commit()
        return m
    return _make


async def load(session_factory, model, pk):
    """Fresh read through a short-lived session."""
    async with session_factory() as s:
        return await s.get(model, pk)


def png_bytes(color=(200, 30, 30), size=(32, 32)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def auth(user: User) -> dict:
    return {"Authorization": f"Bearer {make_access_token(str(user.id), user.role)}"}


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def uploader():
    return MemoryUploader()


@pytest.fixture
def enqueued():
    return []


@pytest.fixture
async def client(session_factory, publisher, uploader, enqueued):
    async def _session():
        async with session_factory() as s:
            yield s

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_publisher] = lambda: publisher
    app.dependency_overrides[get_uploader] = lambda: uploader
    app.dependency_overrides[get_enqueuer] = lambda: enqueued.append
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
