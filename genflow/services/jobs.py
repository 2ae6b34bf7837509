from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from genflow.utils.credits import ZERO, to_credits
from genflow.utils.time import utcnow

if TYPE_CHECKING:
    from genflow.services.pricing import PriceQuote


SUCCESS_STATUSES = {'completed', 'ok', 'success', 'succeeded', 'done'}
FAIL_STATUSES = {'failed', 'fail', 'error', 'cancelled', 'canceled'}
QUEUED_STATUSES = {'in_queue', 'queued', 'pending', 'waiting'}


class JobState(str, Enum):
    SUBMITTED = 'submitted'
    QUEUED = 'queued'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    FAILED = 'failed'
    TIMED_OUT = 'timed_out'


TERMINAL_STATES = {JobState.COMPLETED, JobState.FAILED, JobState.TIMED_OUT}


class JobStateError(RuntimeError):
    pass


def classify_status(status: str) -> JobState:
    value = (status or '').strip().lower()
    if value in SUCCESS_STATUSES:
        return JobState.COMPLETED
    if value in FAIL_STATUSES:
        return JobState.FAILED
    if value in QUEUED_STATUSES:
        return JobState.QUEUED
    return JobState.IN_PROGRESS


@dataclass
class GenerationJob:
    job_id: str
    actor_id: str
    capability: str
    reservation_id: str
    credits_reserved: Decimal = ZERO
    state: JobState = JobState.SUBMITTED
    submitted_at: datetime = field(default_factory=utcnow)
    last_polled_at: Optional[datetime] = None
    terminal_at: Optional[datetime] = None
    poll_attempt: int = 0
    consecutive_transport_errors: int = 0
    credits_settled: Optional[Decimal] = None
    result: List[str] = field(default_factory=list)
    error: Optional[str] = None
    raw_result: Any = None
    params: Dict[str, Any] = field(default_factory=dict)
    quote: Optional[PriceQuote] = None
    reconciled: bool = False
    # False until the provider hands back a job id; job_id holds the reservation id meanwhile.
    accepted: bool = True

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self, state: JobState) -> None:
        """Move between non-terminal states."""
        if state in TERMINAL_STATES:
            raise JobStateError(f'use the terminal transition for {state.value}')
        if self.is_terminal:
            raise JobStateError(f'job {self.job_id} is already {self.state.value}')
        self.state = state

    def accept(self, job_id: str) -> None:
        if self.accepted:
            raise JobStateError(f'job {self.job_id} already has a provider id')
        self.job_id = job_id
        self.accepted = True

    def record_poll(self) -> None:
        self.poll_attempt += 1
        self.last_polled_at = utcnow()

    def record_transport_error(self) -> int:
        self.consecutive_transport_errors += 1
        return self.consecutive_transport_errors

    def reset_transport_errors(self) -> None:
        self.consecutive_transport_errors = 0

    def _terminate(self, state: JobState) -> None:
        if self.is_terminal:
            # A timed-out job is resolved exactly once by reconciliation.
            if self.state != JobState.TIMED_OUT or state == JobState.TIMED_OUT or self.reconciled:
                raise JobStateError(f'job {self.job_id} is already {self.state.value}')
            self.reconciled = True
        self.state = state
        self.terminal_at = utcnow()

    def complete(self, urls: List[str], raw: Any = None) -> None:
        self._terminate(JobState.COMPLETED)
        self.result = list(urls)
        self.error = None
        if raw is not None:
            self.raw_result = raw

    def fail(self, error: str) -> None:
        self._terminate(JobState.FAILED)
        self.result = []
        self.error = error

    def time_out(self, error: str = 'max wait exceeded') -> None:
        self._terminate(JobState.TIMED_OUT)
        self.error = error

    def mark_settled(self, amount: Decimal) -> None:
        if self.credits_settled is not None:
            raise JobStateError(f'job {self.job_id} is already settled')
        self.credits_settled = to_credits(amount)


class JobStore:
    """Jobs that left the request flow without a settlement."""

    def __init__(self) -> None:
        self._jobs: Dict[str, GenerationJob] = {}

    def add(self, job: GenerationJob) -> None:
        self._jobs[job.job_id] = job

    def get(self, job_id: str) -> Optional[GenerationJob]:
        return self._jobs.get(job_id)

    def remove(self, job_id: str) -> Optional[GenerationJob]:
        return self._jobs.pop(job_id, None)

    def pending(self) -> List[GenerationJob]:
        return [job for job in self._jobs.values() if job.credits_settled is None]

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs
