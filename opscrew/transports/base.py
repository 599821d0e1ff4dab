"""Base transport interface for forwarding engine events."""

from __future__ import annotations

import abc
from typing import TYPE_CHECKING, AsyncIterator, Generic, Optional, Tuple, TypeVar

if TYPE_CHECKING:
    from ..events import Event

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Abstract base transport for event brokers."""

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, event: "Event") -> None:
        """Send an event to a topic."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, "Event"]]:
        """Yield raw transport message and decoded event pairs.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep listening. If None, runs indefinitely.
        """
        raise NotImplementedError
