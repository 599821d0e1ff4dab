"""Event transport factory."""

from __future__ import annotations

import os
from typing import Optional

from ..config import OpsCrewConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport


def get_transport(
    backend: Optional[str] = None, config: Optional[OpsCrewConfig] = None
) -> Optional[BaseTransport]:
    """Return the configured event transport, or ``None`` when disabled."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("OPSCREW_TRANSPORT")
        or config.transport.backend
    ).lower()

    if backend == "none":
        return None
    elif backend == "inmemory":
        return InMemoryTransport()
    elif backend == "redis":
        from .redis import RedisTransport

        redis_conf = config.transport.redis
        return RedisTransport(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    else:
        raise ValueError(f"Unsupported transport backend: {backend}")


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
