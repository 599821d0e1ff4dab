"""In-memory event transport for tests and single-process setups."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..events import Event, parse_event
from .base import BaseTransport


class InMemoryTransport(BaseTransport[str]):
    """Simple in-process queue per topic."""

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[str]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, event: Event) -> None:
        """Append the serialized event to the topic queue."""
        async with self._lock:
            self._queues[topic].append(event.model_dump_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, Event]]:
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            async with self._lock:
                raw = self._queues[topic].popleft() if self._queues[topic] else None
            if raw is not None:
                yield raw, parse_event(raw)
                continue

            await asyncio.sleep(0.01)

    def pending(self, topic: str) -> List[Event]:
        """Return queued events for ``topic`` without consuming them."""
        return [parse_event(raw) for raw in self._queues[topic]]
