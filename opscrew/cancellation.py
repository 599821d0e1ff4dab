"""Cooperative cancellation for in-flight agent calls."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

T = TypeVar("T")


class OperationCancelled(Exception):
    """Raised when a token trips while an awaited operation is running."""


class CancellationToken:
    """One-shot flag that in-flight operations race against."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled(self.reason or "cancelled")


async def run_cancellable(
    awaitable: Awaitable[T], token: Optional[CancellationToken] = None
) -> T:
    """Await ``awaitable`` unless ``token`` trips first.

    When the token wins, the operation task is cancelled and
    :class:`OperationCancelled` is raised.
    """
    if token is None:
        return await awaitable
    token.raise_if_cancelled()

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    raise OperationCancelled(token.reason or "cancelled")
