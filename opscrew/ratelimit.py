"""Per-agent request rate limiting."""

from __future__ import annotations

import logging
import time
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, Optional, Protocol, Tuple

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from .constants import DEFAULT_RATE_LIMIT_MAX_REQUESTS, DEFAULT_RATE_LIMIT_WINDOW_MS
from .errors import RateLimitExceeded
from .models import Agent, ConstraintType

logger = logging.getLogger(__name__)


class RateLimiter(Protocol):
    async def check_limit(self, agent_id: str, organization_id: str) -> None:
        """Consume one request slot or raise :class:`RateLimitExceeded`."""

    def set_limit(self, agent_id: str, max_requests: int, window_ms: int) -> None:
        """Configure the quota for ``agent_id``."""


class _LimitTable:
    def __init__(self, default_max_requests: int, default_window_ms: int) -> None:
        self.default = (default_max_requests, default_window_ms)
        self._limits: Dict[str, Tuple[int, int]] = {}

    def set(self, agent_id: str, max_requests: int, window_ms: int) -> None:
        self._limits[agent_id] = (int(max_requests), int(window_ms))

    def get(self, agent_id: str) -> Tuple[int, int]:
        return self._limits.get(agent_id, self.default)


class InMemoryRateLimiter:
    """Sliding-window limiter keyed by (organization, agent)."""

    def __init__(
        self,
        default_max_requests: int = DEFAULT_RATE_LIMIT_MAX_REQUESTS,
        default_window_ms: int = DEFAULT_RATE_LIMIT_WINDOW_MS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._limits = _LimitTable(default_max_requests, default_window_ms)
        self._clock = clock
        self._hits: Dict[Tuple[str, str], Deque[float]] = defaultdict(deque)

    def set_limit(self, agent_id: str, max_requests: int, window_ms: int) -> None:
        self._limits.set(agent_id, max_requests, window_ms)

    async def check_limit(self, agent_id: str, organization_id: str) -> None:
        max_requests, window_ms = self._limits.get(agent_id)
        now_ms = self._clock() * 1000
        hits = self._hits[(organization_id, agent_id)]
        while hits and now_ms - hits[0] >= window_ms:
            hits.popleft()
        if len(hits) >= max_requests:
            retry_after = int(window_ms - (now_ms - hits[0]))
            logger.warning(
                f"Rate limit hit for agent {agent_id} in organization {organization_id}"
            )
            raise RateLimitExceeded(agent_id, organization_id, retry_after)
        hits.append(now_ms)


class RedisRateLimiter:
    """Fixed-window limiter shared across processes through Redis."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        default_max_requests: int = DEFAULT_RATE_LIMIT_MAX_REQUESTS,
        default_window_ms: int = DEFAULT_RATE_LIMIT_WINDOW_MS,
        key_prefix: str = "opscrew:ratelimit",
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisRateLimiter")
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.key_prefix = key_prefix
        self._limits = _LimitTable(default_max_requests, default_window_ms)
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def set_limit(self, agent_id: str, max_requests: int, window_ms: int) -> None:
        self._limits.set(agent_id, max_requests, window_ms)

    async def check_limit(self, agent_id: str, organization_id: str) -> None:
        if not self._redis:
            await self.connect()
        max_requests, window_ms = self._limits.get(agent_id)
        key = f"{self.key_prefix}:{organization_id}:{agent_id}"
        count = await self._redis.incr(key)
        if count == 1:
            await self._redis.pexpire(key, window_ms)
        if count > max_requests:
            ttl = await self._redis.pttl(key)
            raise RateLimitExceeded(agent_id, organization_id, max(int(ttl), 0))


def apply_agent_constraints(limiter: RateLimiter, agent: Agent) -> None:
    """Push an agent's ``rate_limit`` constraint into ``limiter``."""
    constraint = agent.get_constraint(ConstraintType.RATE_LIMIT)
    if constraint is None:
        return
    window_ms = constraint.window_ms or DEFAULT_RATE_LIMIT_WINDOW_MS
    limiter.set_limit(agent.id, int(constraint.value), window_ms)
    logger.debug(
        f"Rate limit for agent {agent.id} set to {constraint.value} per {window_ms}ms"
    )
