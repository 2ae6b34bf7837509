"""Durable record of generation jobs until their reservation is settled.

Rows are written as soon as credits are reserved, so a restarted worker can
find every reservation it still has to resolve. Workers claim rows with a
guarded ``UPDATE``; a claim goes stale when its owner stops refreshing it.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genflow.db.models import GenerationJobRow
from genflow.services.jobs import GenerationJob, JobState
from genflow.services.pricing import PriceQuote
from genflow.utils.credits import to_credits
from genflow.utils.logging import get_logger
from genflow.utils.time import utcnow


logger = get_logger('job_repository')


class JobRepository(Protocol):
    async def save(self, job: GenerationJob) -> None:
        ...

    async def load_unsettled(self) -> List[GenerationJob]:
        ...

    async def claim(self, job: GenerationJob) -> bool:
        ...


def quote_to_dict(quote: Optional[PriceQuote]) -> Optional[Dict[str, Any]]:
    if quote is None:
        return None
    return {
        'capability': quote.capability,
        'unit_price': str(quote.unit_price),
        'units': str(quote.units),
        'subtotal': str(quote.subtotal),
        'discount_pct': quote.discount_pct,
        'is_free': quote.is_free,
        'total': str(quote.total),
    }


def quote_from_dict(data: Optional[Dict[str, Any]]) -> Optional[PriceQuote]:
    if not data:
        return None
    return PriceQuote(
        capability=data['capability'],
        unit_price=Decimal(data['unit_price']),
        units=Decimal(data['units']),
        subtotal=Decimal(data['subtotal']),
        discount_pct=int(data['discount_pct']),
        is_free=bool(data['is_free']),
        total=Decimal(data['total']),
    )


class SqlJobRepository:
    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        owner: str,
        stale_seconds: float = 1200,
    ) -> None:
        self.sessionmaker = sessionmaker
        self.owner = owner
        self.stale_seconds = stale_seconds

    def _stale_cutoff(self):
        return utcnow() - timedelta(seconds=self.stale_seconds)

    @staticmethod
    def _to_job(row: GenerationJobRow) -> GenerationJob:
        accepted = row.provider_job_id is not None
        return GenerationJob(
            job_id=row.provider_job_id if accepted else row.reservation_id,
            actor_id=row.actor_id,
            capability=row.capability,
            reservation_id=row.reservation_id,
            credits_reserved=to_credits(row.credits_reserved),
            state=JobState(row.state),
            submitted_at=row.submitted_at,
            poll_attempt=row.poll_attempt or 0,
            credits_settled=to_credits(row.credits_settled) if row.credits_settled is not None else None,
            result=list(row.result_urls or []),
            error=row.error,
            params=dict(row.params or {}),
            quote=quote_from_dict(row.quote),
            accepted=accepted,
        )

    async def save(self, job: GenerationJob) -> None:
        now = utcnow()
        async with self.sessionmaker() as session:
            row = await session.get(GenerationJobRow, job.reservation_id)
            if row is None:
                row = GenerationJobRow(
                    reservation_id=job.reservation_id,
                    actor_id=job.actor_id,
                    capability=job.capability,
                    credits_reserved=job.credits_reserved,
                    params=job.params,
                    quote=quote_to_dict(job.quote),
                    submitted_at=job.submitted_at,
                    claimed_by=self.owner,
                    claimed_at=now,
                )
                session.add(row)
            row.provider_job_id = job.job_id if job.accepted else None
            row.state = job.state.value
            row.result_urls = list(job.result)
            row.error = job.error
            row.poll_attempt = job.poll_attempt
            row.updated_at = now
            if job.credits_settled is not None and row.settled_at is None:
                row.credits_settled = job.credits_settled
                row.settled_at = now
            await session.commit()

    async def load_unsettled(self) -> List[GenerationJob]:
        async with self.sessionmaker() as session:
            result = await session.execute(
                select(GenerationJobRow)
                .where(GenerationJobRow.settled_at.is_(None))
                .order_by(GenerationJobRow.submitted_at)
            )
            return [self._to_job(row) for row in result.scalars().all()]

    async def claim(self, job: GenerationJob) -> bool:
        async with self.sessionmaker() as session:
            stmt = (
                update(GenerationJobRow)
                .where(
                    GenerationJobRow.reservation_id == job.reservation_id,
                    GenerationJobRow.settled_at.is_(None),
                    or_(
                        GenerationJobRow.claimed_by == self.owner,
                        GenerationJobRow.claimed_at.is_(None),
                        GenerationJobRow.claimed_at <= self._stale_cutoff(),
                    ),
                )
                .values(claimed_by=self.owner, claimed_at=utcnow())
                .returning(GenerationJobRow.reservation_id)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            claimed = result.scalar_one_or_none()
            if not claimed:
                await session.rollback()
                logger.debug('job_claim_skipped', job_id=job.job_id, reservation_id=job.reservation_id)
                return False
            await session.commit()
            return True
