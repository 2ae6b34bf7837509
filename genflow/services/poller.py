from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Any, Optional

from genflow.capabilities.base import CapabilitySpec
from genflow.config import Settings
from genflow.errors import NoArtifactFound, PollingExhausted
from genflow.services.decoder import ResultDecoder
from genflow.services.jobs import GenerationJob, JobState, classify_status
from genflow.services.provider import ProviderClient, ProviderError, ProviderRequest
from genflow.utils.backoff import backoff_delay, with_jitter
from genflow.utils.logging import get_logger
from genflow.utils.time import Clock


logger = get_logger('poller')


def transport_backoff(errors: int, base: float = 4.0, multiplier: float = 1.5, cap: float = 30.0) -> float:
    """Wait before the next poll after ``errors`` consecutive transport failures."""
    return backoff_delay(errors, base, multiplier, cap)


def has_result(result: Any) -> bool:
    if result is None:
        return False
    if isinstance(result, (str, list, dict)):
        return bool(result)
    return True


@dataclass
class PollSettings:
    initial_delay: float = 10.0
    interval: float = 4.0
    queued_interval: float = 5.0
    multiplier: float = 1.5
    cap: float = 30.0
    jitter: float = 2.0
    max_transport_errors: int = 5
    artifact_grace_delay: float = 2.5
    artifact_grace_retries: int = 5
    max_wait: float = 600.0

    @classmethod
    def from_settings(cls, settings: Settings, capability: CapabilitySpec | None = None) -> 'PollSettings':
        initial_delay = settings.poll_initial_delay_seconds
        max_wait = float(settings.poll_max_wait_seconds)
        if capability is not None:
            max_wait = float(capability.max_wait_seconds)
            if capability.initial_delay_seconds is not None:
                initial_delay = capability.initial_delay_seconds
        return cls(
            initial_delay=initial_delay,
            interval=settings.poll_interval_seconds,
            queued_interval=settings.poll_queued_interval_seconds,
            multiplier=settings.poll_backoff_multiplier,
            cap=settings.poll_backoff_cap_seconds,
            jitter=settings.poll_jitter_seconds,
            max_transport_errors=settings.poll_max_transport_errors,
            artifact_grace_delay=settings.poll_artifact_grace_seconds,
            artifact_grace_retries=settings.poll_artifact_grace_retries,
            max_wait=max_wait,
        )

    def transport_backoff(self, errors: int) -> float:
        return transport_backoff(errors, self.interval, self.multiplier, self.cap)

    def next_interval(self, state: JobState) -> float:
        if state == JobState.QUEUED:
            return max(self.interval, self.queued_interval)
        return self.interval


class StatusPoller:
    """Drives one job from submission to a terminal state.

    Transport failures back off geometrically and only surface once the
    consecutive-error threshold is crossed. Running past ``max_wait`` is
    not an error: the job is returned as ``timed_out`` and its credits stay
    reserved for reconciliation.
    """

    def __init__(
        self,
        provider: ProviderClient,
        decoder: ResultDecoder | None = None,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.provider = provider
        self.decoder = decoder or ResultDecoder()
        self.clock = clock or Clock()
        self.rng = rng

    async def poll_until_terminal(
        self,
        job: GenerationJob,
        request: ProviderRequest,
        kind: str,
        settings: PollSettings,
    ) -> GenerationJob:
        log = logger.bind(job_id=job.job_id, actor_id=job.actor_id, capability=job.capability)
        deadline = self.clock.monotonic() + settings.max_wait
        wait = settings.initial_delay
        grace_used = 0

        while True:
            remaining = max(deadline - self.clock.monotonic(), 0.0)
            await self.clock.sleep(min(wait, remaining))
            job.record_poll()
            try:
                snapshot = await self.provider.status(request, job.job_id)
            except ProviderError as exc:
                errors = job.record_transport_error()
                log.warning(
                    'poll_transport_error',
                    attempt=job.poll_attempt,
                    errors=errors,
                    status_code=exc.status_code,
                    error=str(exc),
                )
                if errors > settings.max_transport_errors:
                    job.fail('polling_exhausted')
                    log.error('polling_exhausted', errors=errors)
                    raise PollingExhausted(f'{errors} consecutive transport errors', job_id=job.job_id) from exc
                wait = with_jitter(settings.transport_backoff(errors), settings.jitter, self.rng)
            else:
                job.reset_transport_errors()
                state = classify_status(snapshot.status)
                if state == JobState.COMPLETED:
                    if has_result(snapshot.result):
                        self._complete(job, snapshot.result, kind)
                        log.info('job_completed', attempt=job.poll_attempt, artifacts=len(job.result))
                        return job
                    grace_used += 1
                    if grace_used > settings.artifact_grace_retries:
                        job.fail('polling_exhausted')
                        log.error('completed_without_result', grace_used=grace_used - 1)
                        raise PollingExhausted('provider completed without a result', job_id=job.job_id)
                    log.info('waiting_for_artifact', grace_used=grace_used)
                    wait = settings.artifact_grace_delay
                elif state == JobState.FAILED:
                    job.fail(snapshot.error or snapshot.status)
                    log.warning('job_failed', status=snapshot.status, error=snapshot.error)
                    return job
                else:
                    if job.state != state:
                        log.info('job_state_changed', previous=job.state.value, state=state.value)
                        job.advance(state)
                    wait = settings.next_interval(state)

            if self.clock.monotonic() >= deadline:
                job.time_out()
                log.warning('job_timed_out', attempt=job.poll_attempt, max_wait=settings.max_wait)
                return job

    def _complete(self, job: GenerationJob, result: Any, kind: str) -> None:
        try:
            urls = self.decoder.decode(result, kind, job_id=job.job_id)
        except NoArtifactFound:
            job.raw_result = result
            job.fail('no_artifact_found')
            raise
        job.complete(urls, raw=result)

    async def poll_once(self, job: GenerationJob, request: ProviderRequest, kind: str) -> Optional[JobState]:
        """Single status query; returns the terminal state reached, if any."""
        job.record_poll()
        try:
            snapshot = await self.provider.status(request, job.job_id)
        except ProviderError as exc:
            logger.warning('poll_once_failed', job_id=job.job_id, status_code=exc.status_code, error=str(exc))
            return None

        state = classify_status(snapshot.status)
        if state == JobState.COMPLETED:
            if not has_result(snapshot.result):
                # Completion is often reported before the artifact is attached.
                logger.info('poll_once_awaiting_artifact', job_id=job.job_id, attempt=job.poll_attempt)
                return None
            urls = self.decoder.find(snapshot.result, kind)
            if urls:
                job.complete(urls, raw=snapshot.result)
                return JobState.COMPLETED
            job.raw_result = snapshot.result
            job.fail('no_artifact_found')
            return JobState.FAILED
        if state == JobState.FAILED:
            job.fail(snapshot.error or snapshot.status)
            return JobState.FAILED
        if not job.is_terminal and job.state != state:
            job.advance(state)
        return None
