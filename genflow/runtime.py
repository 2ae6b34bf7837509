from __future__ import annotations

import random
import socket
from dataclasses import dataclass
from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from genflow.config import Settings, get_settings
from genflow.db.session import create_engine
from genflow.services.decoder import ResultDecoder
from genflow.services.discount_cache import DiscountCache
from genflow.services.discounts import DiscountService, HoldingsLookup, load_rules
from genflow.services.fal_client import FalClient
from genflow.services.job_repository import JobRepository, SqlJobRepository
from genflow.services.jobs import JobStore
from genflow.services.ledger import CreditLedger, MemoryCreditLedger
from genflow.services.orchestrator import JobOrchestrator
from genflow.services.poller import StatusPoller
from genflow.services.provider import ProviderClient
from genflow.services.rate_limit import RateLimiter
from genflow.services.sql_ledger import SqlCreditLedger
from genflow.services.submitter import JobSubmitter
from genflow.utils.credits import to_non_negative_credits
from genflow.utils.logging import get_logger
from genflow.utils.time import Clock


logger = get_logger('runtime')


@dataclass
class Runtime:
    """Process-wide service graph, owned by whoever built it."""

    settings: Settings
    ledger: CreditLedger
    provider: ProviderClient
    rate_limiter: RateLimiter
    discounts: DiscountService
    jobs: JobStore
    orchestrator: JobOrchestrator
    engine: Optional[AsyncEngine] = None
    repository: Optional[JobRepository] = None

    async def ensure_actor(self, actor_id: str) -> None:
        bonus = to_non_negative_credits(self.settings.signup_bonus_credits)
        if bonus <= 0:
            return
        await self.ledger.deposit(actor_id, bonus, reason='signup_bonus', idempotency_key=f'signup:{actor_id}')

    async def close(self) -> None:
        close = getattr(self.provider, 'close', None)
        if close is not None:
            await close()
        if self.engine is not None:
            await self.engine.dispose()


def build_storage(
    settings: Settings,
) -> Tuple[CreditLedger, Optional[JobRepository], Optional[AsyncEngine]]:
    if not settings.database_url:
        logger.info('ledger_selected', store='memory')
        return MemoryCreditLedger(), None, None
    engine = create_engine(settings.database_url)
    sessionmaker = async_sessionmaker(engine, expire_on_commit=False)
    repository = SqlJobRepository(
        sessionmaker,
        owner=settings.worker_id or socket.gethostname(),
        stale_seconds=settings.job_claim_stale_seconds,
    )
    logger.info('ledger_selected', store='sql', worker_id=repository.owner)
    return SqlCreditLedger(sessionmaker), repository, engine


def build_runtime(
    settings: Optional[Settings] = None,
    *,
    provider: Optional[ProviderClient] = None,
    ledger: Optional[CreditLedger] = None,
    repository: Optional[JobRepository] = None,
    lookup: Optional[HoldingsLookup] = None,
    clock: Optional[Clock] = None,
    rng: Optional[random.Random] = None,
) -> Runtime:
    settings = settings or get_settings()
    clock = clock or Clock()
    engine: Optional[AsyncEngine] = None
    if ledger is None:
        ledger, repository, engine = build_storage(settings)
    if provider is None:
        provider = FalClient.from_settings(settings)

    rate_limiter = RateLimiter(
        max_requests=settings.rate_limit_max_requests,
        window_seconds=settings.rate_limit_window_seconds,
        clock=clock,
    )
    cache = DiscountCache(
        ttl=settings.discount_cache_ttl_seconds,
        error_ttl=settings.discount_error_ttl_seconds,
        max_entries=settings.discount_cache_max_entries,
        retries=settings.discount_lookup_retries,
        retry_delay=settings.discount_retry_delay_seconds,
        clock=clock,
    )
    discounts = DiscountService(load_rules(settings.discount_rule_dicts()), cache, lookup)
    jobs = JobStore()
    poller = StatusPoller(
        provider,
        decoder=ResultDecoder(preview_chars=settings.payload_preview_chars),
        clock=clock,
        rng=rng,
    )
    orchestrator = JobOrchestrator(
        ledger=ledger,
        submitter=JobSubmitter(provider, timeout_seconds=settings.provider_timeout_seconds),
        poller=poller,
        rate_limiter=rate_limiter,
        discounts=discounts,
        jobs=jobs,
        settings=settings,
        clock=clock,
        repository=repository,
    )
    return Runtime(
        settings=settings,
        ledger=ledger,
        provider=provider,
        rate_limiter=rate_limiter,
        discounts=discounts,
        jobs=jobs,
        orchestrator=orchestrator,
        engine=engine,
        repository=repository,
    )
