from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

from ..cancellation import OperationCancelled
from ..errors import AgentError
from ..models import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


def compute_backoff(attempt: int, policy: RetryPolicy) -> int:
    """Delay in ms before the attempt following ``attempt`` (1-based)."""
    delay = policy.backoff_ms * policy.backoff_multiplier ** max(attempt - 1, 0)
    return int(min(delay, policy.max_backoff_ms))


async def schedule_retry(
    attempt: int, policy: RetryPolicy, sleep: Optional[SleepFn] = None
) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay_ms = compute_backoff(attempt, policy)
    await (sleep or asyncio.sleep)(delay_ms / 1000)


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, OperationCancelled):
        return False
    if isinstance(exc, AgentError):
        return exc.retryable
    return isinstance(exc, Exception)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    *,
    sleep: Optional[SleepFn] = None,
    description: str = "operation",
) -> Tuple[T, int]:
    """Run ``operation`` under ``policy`` and return ``(result, retries)``.

    Non-retryable :class:`AgentError` instances propagate immediately, as does
    ``asyncio.CancelledError``. The last failure is re-raised once
    ``max_attempts`` is exhausted.
    """
    policy = policy or RetryPolicy()
    max_attempts = max(policy.max_attempts, 1)
    attempt = 1
    while True:
        try:
            return await operation(), attempt - 1
        except Exception as exc:
            if not is_retryable(exc) or attempt >= max_attempts:
                raise
            logger.warning(
                f"{description} failed on attempt {attempt}/{max_attempts}: {exc}; retrying"
            )
            await schedule_retry(attempt, policy, sleep)
            attempt += 1
