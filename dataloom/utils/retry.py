from __future__ import annotations

import asyncio
import random

RETRYABLE_MARKERS = (
    "timeout",
    "timed out",
    "connection",
    "network",
    "temporary",
    "busy",
    "unavailable",
)


def compute_backoff(attempt: int, base_delay: float = 1.0, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter for a zero-based attempt."""
    if base_delay <= 0:
        return 0.0
    return base_delay * (2**attempt) + random.uniform(0, jitter)


def is_retryable(error: BaseException) -> bool:
    """Return ``True`` for transient failures worth another attempt."""
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in RETRYABLE_MARKERS)


async def schedule_retry(attempt: int, base_delay: float = 1.0) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, base_delay)
    if delay:
        await asyncio.sleep(delay)
