"""Redis transport for cross-process event delivery."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

from pydantic import ValidationError

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from ..events import Event, parse_event
from .base import BaseTransport

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[str]):
    """Redis list-backed transport; each topic is one list used as a queue."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisTransport")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    @staticmethod
    def queue_name(topic: str) -> str:
        return f"opscrew:{topic}"

    async def publish(self, topic: str, event: Event) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self.queue_name(topic), event.model_dump_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, Event]]:
        if not self._redis:
            await self.connect()

        queue_name = self.queue_name(topic)
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            result = await self._redis.brpop(queue_name, timeout=1)
            if result:
                _, raw = result
                try:
                    yield raw, parse_event(raw)
                except ValidationError as e:
                    logger.warning(f"Failed to parse event from {queue_name}: {e}")
