"""Backoff schedules and an iterative async retry helper."""

from __future__ import annotations

import random
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from genflow.utils.logging import get_logger
from genflow.utils.time import Clock


T = TypeVar('T')
logger = get_logger('backoff')


def backoff_delay(attempt: int, base: float, multiplier: float = 1.5, cap: float = 30.0) -> float:
    """Geometric delay ``base * multiplier ** attempt`` capped at ``cap``.

    Non-decreasing in ``attempt`` for ``multiplier >= 1``.
    """
    if attempt < 0:
        attempt = 0
    delay = base * (multiplier ** attempt)
    return min(delay, cap)


def with_jitter(delay: float, jitter: float, rng: Optional[random.Random] = None) -> float:
    if jitter <= 0:
        return delay
    source = rng or random
    return delay + source.uniform(0, jitter)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    retries: int,
    base_delay: float,
    multiplier: float = 2.0,
    cap: float = 30.0,
    clock: Optional[Clock] = None,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> T:
    """Call ``func`` up to ``retries + 1`` times, sleeping between failures.

    The last failure is re-raised unchanged.
    """
    clock = clock or Clock()
    attempt = 0
    while True:
        try:
            return await func()
        except retry_on as exc:
            if attempt >= retries:
                raise
            delay = backoff_delay(attempt, base_delay, multiplier, cap)
            logger.warning(
                'retry_scheduled',
                attempt=attempt + 1,
                retries_left=retries - attempt - 1,
                delay=round(delay, 3),
                error=str(exc),
            )
            attempt += 1
            await clock.sleep(delay)
