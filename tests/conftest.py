"""Shared fakes and fixtures for the genflow test suite."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from genflow.config import Settings
from genflow.runtime import Runtime, build_runtime
from genflow.services.ledger import MemoryCreditLedger
from genflow.services.provider import ProviderRequest, StatusSnapshot


class FakeClock:
    """Deterministic clock: ``sleep`` advances time instead of waiting."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        seconds = max(seconds, 0.0)
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class ScriptedProvider:
    """Provider double that replays scripted status responses.

    Each script item is a :class:`StatusSnapshot` or an exception to raise.
    The last item repeats once the script runs out.
    """

    def __init__(
        self,
        statuses: Optional[List[Any]] = None,
        job_id: str = 'job-1',
        submit_error: Optional[Exception] = None,
    ) -> None:
        self.statuses = list(statuses or [])
        self.job_id = job_id
        self.submit_error = submit_error
        self.submitted: List[ProviderRequest] = []
        self.status_calls = 0

    async def submit(self, request: ProviderRequest) -> str:
        self.submitted.append(request)
        if self.submit_error is not None:
            raise self.submit_error
        return self.job_id

    async def status(self, request: ProviderRequest, job_id: str) -> StatusSnapshot:
        self.status_calls += 1
        if not self.statuses:
            return StatusSnapshot(status='IN_PROGRESS')
        item = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(item, BaseException):
            raise item
        return item


def snapshot(status: str, result: Any = None, error: Optional[str] = None) -> StatusSnapshot:
    return StatusSnapshot(status=status, result=result, error=error, raw={'status': status})


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        'DATABASE_URL': '',
        'FAL_API_KEY': 'test-key',
        'POLL_JITTER_SECONDS': 0,
        'SIGNUP_BONUS_CREDITS': '0',
        'DISCOUNT_RULES': '',
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def ledger() -> MemoryCreditLedger:
    return MemoryCreditLedger()


@pytest.fixture
def make_runtime(settings, clock, ledger):
    def _make(provider: ScriptedProvider, **kwargs: Any) -> Runtime:
        return build_runtime(
            kwargs.pop('settings', settings),
            provider=provider,
            ledger=kwargs.pop('ledger', ledger),
            clock=kwargs.pop('clock', clock),
            **kwargs,
        )

    return _make
