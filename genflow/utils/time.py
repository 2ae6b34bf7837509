from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Clock:
    """Monotonic time source and non-blocking sleep.

    Services take a clock so tests can drive poll schedules and TTLs without
    waiting in real time.
    """

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(seconds, 0.0))
