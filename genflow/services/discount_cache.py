from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from genflow.utils.backoff import retry_async
from genflow.utils.logging import get_logger
from genflow.utils.time import Clock


logger = get_logger('discount_cache')

CacheKey = Tuple[str, str]


class _Miss:
    def __repr__(self) -> str:
        return 'MISS'

    def __bool__(self) -> bool:
        return False


MISS: Any = _Miss()


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    inserted_at: float
    ttl: float
    is_error: bool = False

    def is_fresh(self, now: float) -> bool:
        return now - self.inserted_at < self.ttl


class DiscountCache:
    """TTL memoisation of per-actor, per-capability lookups.

    Entries are replaced, never mutated. Failed lookups are cached for the
    shorter ``error_ttl`` so a failing upstream is not hammered.
    """

    def __init__(
        self,
        ttl: float = 300.0,
        error_ttl: float = 30.0,
        max_entries: int = 10000,
        retries: int = 3,
        retry_delay: float = 1.0,
        clock: Optional[Clock] = None,
    ) -> None:
        if error_ttl >= ttl:
            raise ValueError('error_ttl must be shorter than ttl')
        if max_entries < 1:
            raise ValueError('max_entries must be >= 1')
        self.ttl = ttl
        self.error_ttl = error_ttl
        self.max_entries = max_entries
        self.retries = retries
        self.retry_delay = retry_delay
        self.clock = clock or Clock()
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._guard = threading.Lock()
        self._compute_locks: Dict[CacheKey, asyncio.Lock] = {}

    @staticmethod
    def key(actor_id: str, capability: str) -> CacheKey:
        return actor_id.strip().lower(), capability

    def __len__(self) -> int:
        return len(self._entries)

    def _lookup(self, key: CacheKey) -> Optional[CacheEntry]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_fresh(self.clock.monotonic()):
                return entry
            del self._entries[key]
        logger.debug('cache_expired', actor_id=key[0], capability=key[1])
        return None

    def get(self, actor_id: str, capability: str) -> Any:
        entry = self._lookup(self.key(actor_id, capability))
        if entry is None:
            return MISS
        if entry.is_error and isinstance(entry.value, BaseException):
            raise entry.value.with_traceback(None)
        return entry.value

    def set(
        self,
        actor_id: str,
        capability: str,
        value: Any,
        *,
        ttl: Optional[float] = None,
        is_error: bool = False,
    ) -> None:
        key = self.key(actor_id, capability)
        entry = CacheEntry(
            value=value,
            inserted_at=self.clock.monotonic(),
            ttl=ttl if ttl is not None else (self.error_ttl if is_error else self.ttl),
            is_error=is_error,
        )
        with self._guard:
            self._entries.pop(key, None)
            if len(self._entries) >= self.max_entries:
                self._sweep_locked()
            while len(self._entries) >= self.max_entries:
                oldest = next(iter(self._entries))
                del self._entries[oldest]
            self._entries[key] = entry

    def invalidate(self, actor_id: str, capability: Optional[str] = None) -> int:
        with self._guard:
            if capability is not None:
                return 1 if self._entries.pop(self.key(actor_id, capability), None) else 0
            actor = actor_id.strip().lower()
            doomed = [key for key in self._entries if key[0] == actor]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def _sweep_locked(self) -> int:
        now = self.clock.monotonic()
        expired = [key for key, entry in self._entries.items() if not entry.is_fresh(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def sweep(self) -> int:
        with self._guard:
            removed = self._sweep_locked()
            remaining = len(self._entries)
        logger.debug('cache_swept', removed=removed, remaining=remaining)
        return removed

    async def get_or_compute(
        self,
        actor_id: str,
        capability: str,
        compute: Callable[[], Awaitable[Any]],
        fallback: Optional[Callable[[Exception], Any]] = None,
    ) -> Any:
        cached = self.get(actor_id, capability)
        if cached is not MISS:
            logger.debug('cache_hit', actor_id=actor_id, capability=capability)
            return cached

        key = self.key(actor_id, capability)
        lock = self._compute_locks.setdefault(key, asyncio.Lock())
        try:
            async with lock:
                # Another task may have filled the entry while we waited.
                cached = self.get(actor_id, capability)
                if cached is not MISS:
                    return cached
                try:
                    value = await retry_async(
                        compute,
                        retries=self.retries,
                        base_delay=self.retry_delay,
                        clock=self.clock,
                    )
                except Exception as exc:
                    logger.warning(
                        'lookup_failed',
                        actor_id=actor_id,
                        capability=capability,
                        error=str(exc),
                    )
                    if fallback is None:
                        self.set(actor_id, capability, exc, is_error=True)
                        raise
                    result = fallback(exc)
                    self.set(actor_id, capability, result, is_error=True)
                    return result
                self.set(actor_id, capability, value)
                return value
        finally:
            if not lock.locked() and self._compute_locks.get(key) is lock:
                self._compute_locks.pop(key, None)
