from __future__ import annotations
import json
from typing import Any, Protocol
import structlog
from redis import asyncio as aioredis
from app.config import settings

log = structlog.get_logger()


class Publisher(Protocol):
    async def publish(self, topic: str, payload: dict[str, Any]) -> None: ...


class RedisPublisher:
    """Best-effort broadcast over Redis pub/sub. Delivery failures are logged, never raised."""

    def __init__(self, url: str):
        self._url = url
        self._client: aioredis.Redis | None = None

    def _conn(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(self._url)
        return self._client

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        try:
            await self._conn().publish(topic, json.dumps(payload, default=str))
        except Exception as e:  # noqa: BLE001
            log.warning("publish_failed", topic=topic, error=str(e))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


_publisher: Publisher | None = None

def get_publisher() -> Publisher:
    global _publisher
    if _publisher is None:
        _publisher = RedisPublisher(settings.redis_url)
    return _publisher


def match_topic(match_id) -> str:
    return f"match:{match_id}"
