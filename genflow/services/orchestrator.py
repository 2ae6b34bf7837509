"""End-to-end generation flow: gate, reserve, submit, poll, decode, settle.

Every reservation made here is settled exactly once, except for jobs that
run past their wait budget or whose task is cancelled before settlement.
Those are kept in the :class:`JobStore` with their credits still held until
:meth:`JobOrchestrator.reconcile` resolves them. With a job repository the
same jobs are also persisted, so a restarted worker picks them up again.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Set, Union

from genflow.capabilities.base import CapabilitySpec
from genflow.capabilities.registry import CAPABILITIES
from genflow.config import Settings, get_settings
from genflow.errors import GenerationError, ProviderFailed, RateLimited, SubmissionRejected
from genflow.services.discounts import DiscountResult, DiscountService
from genflow.services.job_repository import JobRepository
from genflow.services.jobs import GenerationJob, JobState, JobStore
from genflow.services.ledger import CreditLedger, SettleOutcome
from genflow.services.poller import PollSettings, StatusPoller
from genflow.services.pricing import PriceQuote, resolve_price
from genflow.services.provider import ProviderRequest
from genflow.services.rate_limit import RateLimiter
from genflow.services.submitter import JobSubmitter
from genflow.utils.credits import ZERO, credits_to_display
from genflow.utils.logging import get_logger
from genflow.utils.time import Clock


logger = get_logger('orchestrator')


@dataclass
class GenerationOutcome:
    job_id: str
    artifacts: List[str]
    credits_deducted: Decimal
    remaining_credits: Decimal

    @property
    def artifact(self) -> str:
        return self.artifacts[0]


@dataclass
class PendingOutcome:
    job_id: str
    reservation_id: str
    credits_reserved: Decimal


Outcome = Union[GenerationOutcome, PendingOutcome]


class JobOrchestrator:
    def __init__(
        self,
        ledger: CreditLedger,
        submitter: JobSubmitter,
        poller: StatusPoller,
        rate_limiter: RateLimiter,
        discounts: Optional[DiscountService] = None,
        jobs: Optional[JobStore] = None,
        settings: Optional[Settings] = None,
        capabilities: Optional[Mapping[str, CapabilitySpec]] = None,
        clock: Optional[Clock] = None,
        repository: Optional[JobRepository] = None,
    ) -> None:
        self.ledger = ledger
        self.submitter = submitter
        self.poller = poller
        self.rate_limiter = rate_limiter
        self.discounts = discounts
        self.jobs = jobs if jobs is not None else JobStore()
        self.settings = settings or get_settings()
        self.capabilities = capabilities if capabilities is not None else CAPABILITIES
        self.clock = clock or Clock()
        self.repository = repository
        self._reconcile_lock = asyncio.Lock()
        # Reservations whose run() is still driving them.
        self._inflight: Set[str] = set()

    async def run(self, actor_id: str, capability: str, params: Dict[str, Any]) -> Outcome:
        if not self.rate_limiter.check(actor_id):
            logger.warning('rate_limited', actor_id=actor_id, capability=capability)
            raise RateLimited(f'actor {actor_id} exceeded the request window')

        spec = self.capabilities.get(capability)
        if spec is None:
            raise SubmissionRejected(f'unknown capability: {capability}')
        try:
            payload = spec.build_input(params)
        except ValueError as exc:
            raise SubmissionRejected(str(exc)) from exc

        discount = await self._resolve_discount(actor_id, spec.key)
        try:
            quote = resolve_price(spec, params, discount)
        except ValueError as exc:
            raise SubmissionRejected(str(exc)) from exc

        reservation = await self.ledger.reserve(actor_id, quote.total, reason=f'generation:{spec.key}')
        job = GenerationJob(
            job_id=reservation.reservation_id,
            actor_id=actor_id,
            capability=spec.key,
            reservation_id=reservation.reservation_id,
            credits_reserved=reservation.amount,
            params=payload,
            quote=quote,
            accepted=False,
        )
        log = logger.bind(actor_id=actor_id, capability=spec.key, reservation_id=reservation.reservation_id)
        log.info('generation_started', price=str(quote.total), discount_pct=quote.discount_pct, is_free=quote.is_free)

        self._inflight.add(job.reservation_id)
        try:
            return await self._drive(job, spec, log)
        except asyncio.CancelledError:
            if job.credits_settled is None:
                # No refund here; reconciliation settles the reservation later.
                self.jobs.add(job)
                log.warning(
                    'job_cancelled_pending',
                    job_id=job.job_id,
                    state=job.state.value,
                    accepted=job.accepted,
                )
                await asyncio.shield(self._save(job))
            raise
        finally:
            self._inflight.discard(job.reservation_id)

    async def _drive(self, job: GenerationJob, spec: CapabilitySpec, log) -> Outcome:
        request = ProviderRequest(model_id=spec.model_id, payload=job.params)
        await self._save(job)
        try:
            job_id = await self.submitter.submit(request)
        except GenerationError as exc:
            job.fail(exc.code)
            await self._refund(job)
            raise
        job.accept(job_id)
        log = log.bind(job_id=job_id)
        await self._save(job)

        try:
            await self.poller.poll_until_terminal(
                job,
                request,
                spec.artifact_kind,
                PollSettings.from_settings(self.settings, spec),
            )
        except GenerationError as exc:
            await self._refund(job)
            log.error('job_aborted', error_code=exc.code, error=str(exc))
            raise

        if job.state == JobState.COMPLETED:
            outcome = await self._settle_completed(job, spec)
            log.info(
                'generation_completed',
                artifacts=len(outcome.artifacts),
                credits_deducted=str(outcome.credits_deducted),
            )
            return outcome
        if job.state == JobState.FAILED:
            await self._refund(job)
            raise ProviderFailed(job.error or '', job_id=job.job_id)

        self.jobs.add(job)
        await self._save(job)
        log.warning('job_pending', poll_attempt=job.poll_attempt)
        return PendingOutcome(job_id=job.job_id, reservation_id=job.reservation_id, credits_reserved=job.credits_reserved)

    async def submit_and_await(self, actor_id: str, capability: str, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            outcome = await self.run(actor_id, capability, params)
        except GenerationError as exc:
            logger.warning(
                'generation_error',
                actor_id=actor_id,
                capability=capability,
                job_id=exc.job_id,
                error_code=exc.code,
                error=str(exc),
            )
            body: Dict[str, Any] = {'status': 'error', 'error': exc.code, 'message': exc.user_message}
            if exc.job_id:
                body['job_id'] = exc.job_id
            return body

        if isinstance(outcome, PendingOutcome):
            return {'status': 'pending', 'job_id': outcome.job_id}
        return {
            'status': 'completed',
            'job_id': outcome.job_id,
            'artifact': outcome.artifact,
            'artifacts': outcome.artifacts,
            'credits_deducted': credits_to_display(outcome.credits_deducted),
            'remaining_credits': credits_to_display(outcome.remaining_credits),
        }

    async def reconcile(self, job_id: str) -> GenerationJob:
        """Resolve a pending job if the provider (or its recorded state) has an answer."""
        job = self.jobs.get(job_id)
        if job is None and self.repository is not None:
            await self.restore_pending()
            job = self.jobs.get(job_id)
        if job is None:
            raise KeyError(job_id)
        async with self._reconcile_lock:
            if job.credits_settled is not None:
                self.jobs.remove(job.job_id)
                return job
            if self.repository is not None and not await self.repository.claim(job):
                self.jobs.remove(job.job_id)
                logger.info('job_claimed_elsewhere', job_id=job.job_id, reservation_id=job.reservation_id)
                return job

            spec = self.capabilities[job.capability]
            log = logger.bind(job_id=job.job_id, actor_id=job.actor_id, reservation_id=job.reservation_id)
            if job.state in (JobState.COMPLETED, JobState.FAILED):
                # Interrupted before settlement; the outcome is already known.
                state: Optional[JobState] = job.state
            elif not job.accepted:
                job.fail('submit_cancelled')
                state = JobState.FAILED
            else:
                request = ProviderRequest(model_id=spec.model_id, payload=job.params)
                state = await self.poller.poll_once(job, request, spec.artifact_kind)

            if state == JobState.COMPLETED:
                await self._settle_completed(job, spec)
                self.jobs.remove(job.job_id)
                log.info('job_reconciled', state=state.value, artifacts=len(job.result))
            elif state == JobState.FAILED:
                await self._refund(job)
                self.jobs.remove(job.job_id)
                log.info('job_reconciled', state=state.value, error=job.error)
            return job

    async def restore_pending(self) -> int:
        """Load persisted unsettled jobs this worker can claim."""
        if self.repository is None:
            return 0
        restored = 0
        for job in await self.repository.load_unsettled():
            if job.job_id in self.jobs or job.reservation_id in self._inflight:
                continue
            if not await self.repository.claim(job):
                continue
            self.jobs.add(job)
            restored += 1
        if restored:
            logger.info('pending_jobs_restored', restored=restored)
        return restored

    async def reconcile_pending(self) -> int:
        await self.restore_pending()
        resolved = 0
        for job in self.jobs.pending():
            try:
                await self.reconcile(job.job_id)
            except Exception:
                logger.exception('reconcile_failed', job_id=job.job_id)
                continue
            if job.credits_settled is not None:
                resolved += 1
        return resolved

    async def watch_pending(self, interval: float = 60) -> None:
        while True:
            try:
                resolved = await self.reconcile_pending()
                dropped_windows = self.rate_limiter.sweep()
                dropped_entries = self.discounts.cache.sweep() if self.discounts else 0
                if resolved or dropped_windows or dropped_entries:
                    logger.info(
                        'pending_watch_tick',
                        resolved=resolved,
                        pending=len(self.jobs.pending()),
                        dropped_windows=dropped_windows,
                        dropped_cache_entries=dropped_entries,
                    )
            except Exception as exc:
                logger.warning('pending_watch_failed', error=str(exc))
            await self.clock.sleep(interval)

    async def _resolve_discount(self, actor_id: str, capability: str) -> Optional[DiscountResult]:
        if self.discounts is None:
            return None
        try:
            return await self.discounts.resolve(actor_id, capability)
        except Exception as exc:
            logger.warning('discount_lookup_failed', actor_id=actor_id, capability=capability, error=str(exc))
            return None

    async def _save(self, job: GenerationJob) -> None:
        if self.repository is not None:
            await self.repository.save(job)

    async def _settled_amount(self, job: GenerationJob, fallback: Decimal) -> Decimal:
        # A duplicate settle means an earlier attempt already landed; report what it charged.
        reservation = await self.ledger.get_reservation(job.reservation_id)
        if reservation is not None and reservation.spent is not None:
            return reservation.spent
        return fallback

    async def _settle_completed(self, job: GenerationJob, spec: CapabilitySpec) -> GenerationOutcome:
        delivered = len(job.result)
        quote: Optional[PriceQuote] = job.quote
        if spec.pricing.per_artifact and quote is not None and delivered < quote.units:
            charge = quote.charge_for_units(delivered)
            applied = await self.ledger.settle_partial(job.reservation_id, charge)
        else:
            charge = job.credits_reserved
            applied = await self.ledger.settle(job.reservation_id, SettleOutcome.SUCCESS)
        if not applied:
            charge = await self._settled_amount(job, charge)
        job.mark_settled(charge)
        await self._save(job)
        account = await self.ledger.get_account(job.actor_id)
        return GenerationOutcome(
            job_id=job.job_id,
            artifacts=list(job.result),
            credits_deducted=charge,
            remaining_credits=account.available,
        )

    async def _refund(self, job: GenerationJob) -> None:
        applied = await self.ledger.settle(job.reservation_id, SettleOutcome.REFUND)
        job.mark_settled(ZERO if applied else await self._settled_amount(job, ZERO))
        await self._save(job)
