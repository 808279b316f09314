from __future__ import annotations
from typing import AsyncGenerator
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from app.config import settings

# JSONB on Postgres, plain JSON elsewhere (tests run on SQLite)
JSONType = JSON().with_variant(JSONB(), "postgresql")

class Base(DeclarativeBase):
    pass

engine = create_async_engine(settings.database_url, future=True, echo=False)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with SessionLocal() as session:
        yield session

def is_postgres(session: AsyncSession) -> bool:
    return session.get_bind().dialect.name == "postgresql"

async def flush_or_conflict(session: AsyncSession, message: str = "record was modified concurrently") -> None:
    """Flush pending writes; a lost optimistic-version race surfaces as Conflict."""
    from sqlalchemy.orm.exc import StaleDataError
    from app.errors import Conflict
    try:
        await session.flush()
    except StaleDataError as e:
        raise Conflict(message) from e
