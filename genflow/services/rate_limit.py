from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Optional

from genflow.utils.logging import get_logger
from genflow.utils.time import Clock


logger = get_logger('rate_limit')


@dataclass
class RateLimitWindow:
    timestamps: Deque[float] = field(default_factory=deque)
    lock: threading.Lock = field(default_factory=threading.Lock)
    retired: bool = False


class RateLimiter:
    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 60.0,
        clock: Optional[Clock] = None,
    ) -> None:
        if max_requests < 1:
            raise ValueError('max_requests must be >= 1')
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock or Clock()
        self._windows: Dict[str, RateLimitWindow] = {}
        self._registry_lock = threading.Lock()

    def _window(self, actor_id: str) -> RateLimitWindow:
        with self._registry_lock:
            window = self._windows.get(actor_id)
            if window is None:
                window = RateLimitWindow()
                self._windows[actor_id] = window
            return window

    def _prune(self, window: RateLimitWindow, now: float) -> None:
        cutoff = now - self.window_seconds
        while window.timestamps and window.timestamps[0] < cutoff:
            window.timestamps.popleft()

    def check(self, actor_id: str) -> bool:
        while True:
            window = self._window(actor_id)
            with window.lock:
                if window.retired:
                    # Swept between lookup and lock; fetch the replacement.
                    continue
                now = self.clock.monotonic()
                self._prune(window, now)
                if len(window.timestamps) >= self.max_requests:
                    logger.warning('rate_limit_exceeded', actor_id=actor_id, requests=len(window.timestamps))
                    return False
                window.timestamps.append(now)
                return True

    def remaining(self, actor_id: str) -> int:
        window = self._window(actor_id)
        with window.lock:
            self._prune(window, self.clock.monotonic())
            return max(self.max_requests - len(window.timestamps), 0)

    def sweep(self) -> int:
        now = self.clock.monotonic()
        removed = 0
        with self._registry_lock:
            for actor_id in list(self._windows):
                window = self._windows[actor_id]
                with window.lock:
                    self._prune(window, now)
                    if not window.timestamps:
                        window.retired = True
                        del self._windows[actor_id]
                        removed += 1
        if removed:
            logger.debug('rate_limit_swept', removed=removed, remaining=len(self._windows))
        return removed
