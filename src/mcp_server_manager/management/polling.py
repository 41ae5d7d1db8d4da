"""Bounded polling helper used by stop verification."""

import asyncio
from typing import Awaitable, Callable, Optional


async def poll_until(
    predicate: Callable[[], Awaitable[bool]],
    max_attempts: int = 3,
    backoff: float = 0.5,
    on_retry: Optional[Callable[[int], Awaitable[None]]] = None,
) -> bool:
    """Evaluate ``predicate`` until it holds or attempts run out.

    Args:
        predicate: Async condition to wait for
        max_attempts: Number of evaluations
        backoff: Seconds slept between evaluations
        on_retry: Awaited with the attempt number after each failed evaluation
            that will be retried

    Returns:
        bool: Whether the predicate held within the attempts
    """
    for attempt in range(1, max_attempts + 1):
        if await predicate():
            return True
        if attempt < max_attempts:
            if on_retry is not None:
                await on_retry(attempt)
            await asyncio.sleep(backoff)
    return False
