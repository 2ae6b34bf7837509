from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genflow.db.models import CreditAccountRow, CreditLedgerRow, CreditReservationRow
from genflow.errors import InsufficientCredits
from genflow.services.ledger import CreditAccount, Reservation, SettleOutcome, new_reservation_id
from genflow.utils.credits import ZERO, to_credits, to_non_negative_credits
from genflow.utils.logging import get_logger
from genflow.utils.time import utcnow


logger = get_logger('sql_ledger')

STATUS_HELD = 'held'


class SqlCreditLedger:
    """Ledger persisted through SQLAlchemy.

    Reservation and settlement rely on guarded ``UPDATE ... WHERE`` statements,
    so the availability check and the write are one atomic statement per
    actor row and concurrent workers never need an application lock.
    """

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self.sessionmaker = sessionmaker

    @staticmethod
    def _to_account(row: CreditAccountRow) -> CreditAccount:
        return CreditAccount(
            actor_id=row.actor_id,
            balance=to_credits(row.balance_credits or ZERO),
            reserved_total=to_credits(row.reserved_credits or ZERO),
        )

    @staticmethod
    def _to_reservation(row: CreditReservationRow) -> Reservation:
        outcome = None if row.status == STATUS_HELD else SettleOutcome(row.status)
        return Reservation(
            reservation_id=row.id,
            actor_id=row.actor_id,
            amount=to_credits(row.amount_credits),
            reason=row.reason,
            created_at=row.created_at,
            outcome=outcome,
            spent=to_credits(row.spent_credits) if row.spent_credits is not None else None,
            settled_at=row.settled_at,
        )

    async def _ensure_account(self, actor_id: str) -> None:
        async with self.sessionmaker() as session:
            if await session.get(CreditAccountRow, actor_id):
                return
            now = utcnow()
            session.add(
                CreditAccountRow(
                    actor_id=actor_id,
                    balance_credits=ZERO,
                    reserved_credits=ZERO,
                    created_at=now,
                    updated_at=now,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                # Created concurrently by another request.
                await session.rollback()

    async def get_account(self, actor_id: str) -> CreditAccount:
        await self._ensure_account(actor_id)
        async with self.sessionmaker() as session:
            row = await session.get(CreditAccountRow, actor_id)
            return self._to_account(row)

    async def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        async with self.sessionmaker() as session:
            row = await session.get(CreditReservationRow, reservation_id)
            return self._to_reservation(row) if row else None

    async def deposit(
        self,
        actor_id: str,
        amount: Any,
        reason: str = 'deposit',
        idempotency_key: str | None = None,
    ) -> CreditAccount:
        credits = to_non_negative_credits(amount)
        await self._ensure_account(actor_id)
        async with self.sessionmaker() as session:
            if idempotency_key:
                result = await session.execute(
                    select(CreditLedgerRow.id).where(CreditLedgerRow.idempotency_key == idempotency_key)
                )
                if result.scalar_one_or_none() is not None:
                    logger.info('deposit_duplicate', actor_id=actor_id, idempotency_key=idempotency_key)
                    return await self._read_account(session, actor_id)
            now = utcnow()
            await session.execute(
                update(CreditAccountRow)
                .where(CreditAccountRow.actor_id == actor_id)
                .values(
                    balance_credits=CreditAccountRow.balance_credits + credits,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            session.add(
                CreditLedgerRow(
                    actor_id=actor_id,
                    delta_credits=credits,
                    reason=reason,
                    meta={},
                    idempotency_key=idempotency_key,
                    created_at=now,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info('deposit_duplicate', actor_id=actor_id, idempotency_key=idempotency_key)
            else:
                logger.info('deposit_applied', actor_id=actor_id, amount=str(credits), reason=reason)
            return await self._read_account(session, actor_id)

    async def _read_account(self, session: AsyncSession, actor_id: str) -> CreditAccount:
        result = await session.execute(
            select(CreditAccountRow)
            .where(CreditAccountRow.actor_id == actor_id)
            .execution_options(populate_existing=True)
        )
        return self._to_account(result.scalar_one())

    async def reserve(self, actor_id: str, amount: Any, reason: str = 'generation') -> Reservation:
        credits = to_non_negative_credits(amount)
        await self._ensure_account(actor_id)
        async with self.sessionmaker() as session:
            now = utcnow()
            stmt = (
                update(CreditAccountRow)
                .where(
                    CreditAccountRow.actor_id == actor_id,
                    CreditAccountRow.balance_credits - CreditAccountRow.reserved_credits >= credits,
                )
                .values(
                    reserved_credits=CreditAccountRow.reserved_credits + credits,
                    updated_at=now,
                )
                .returning(CreditAccountRow.actor_id)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            if result.scalar_one_or_none() is None:
                await session.rollback()
                account = await self._read_account(session, actor_id)
                raise InsufficientCredits(credits, account.available)
            row = CreditReservationRow(
                id=new_reservation_id(),
                actor_id=actor_id,
                amount_credits=credits,
                reason=reason,
                status=STATUS_HELD,
                created_at=now,
            )
            session.add(row)
            await session.commit()
            reservation = self._to_reservation(row)
        logger.info(
            'credits_reserved',
            actor_id=actor_id,
            reservation_id=reservation.reservation_id,
            amount=str(credits),
        )
        return reservation

    async def settle(self, reservation_id: str, outcome: SettleOutcome) -> bool:
        return await self._settle(reservation_id, outcome, None)

    async def settle_partial(self, reservation_id: str, actual_amount: Any) -> bool:
        actual = to_non_negative_credits(actual_amount)
        outcome = SettleOutcome.SUCCESS if actual > 0 else SettleOutcome.REFUND
        return await self._settle(reservation_id, outcome, actual)

    async def _settle(self, reservation_id: str, outcome: SettleOutcome, actual: Optional[Decimal]) -> bool:
        async with self.sessionmaker() as session:
            row = await session.get(CreditReservationRow, reservation_id)
            if row is None:
                raise KeyError(reservation_id)
            amount = to_credits(row.amount_credits)
            if actual is None:
                spent = amount if outcome == SettleOutcome.SUCCESS else ZERO
            else:
                if actual > amount:
                    raise ValueError(f'actual amount {actual} exceeds reserved {amount}')
                spent = actual
            actor_id = row.actor_id
            previous = row.status
            now = utcnow()
            claimed = await session.execute(
                update(CreditReservationRow)
                .where(
                    CreditReservationRow.id == reservation_id,
                    CreditReservationRow.status == STATUS_HELD,
                )
                .values(status=outcome.value, spent_credits=spent, settled_at=now)
                .returning(CreditReservationRow.id)
                .execution_options(synchronize_session=False)
            )
            if claimed.scalar_one_or_none() is None:
                await session.rollback()
                logger.warning(
                    'settle_duplicate',
                    reservation_id=reservation_id,
                    actor_id=actor_id,
                    previous=previous,
                    requested=outcome.value,
                )
                return False
            await session.execute(
                update(CreditAccountRow)
                .where(CreditAccountRow.actor_id == actor_id)
                .values(
                    reserved_credits=CreditAccountRow.reserved_credits - amount,
                    balance_credits=CreditAccountRow.balance_credits - spent,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if spent > 0:
                session.add(
                    CreditLedgerRow(
                        actor_id=actor_id,
                        delta_credits=-spent,
                        reason='generation_charge',
                        meta={'reservation_id': reservation_id, 'reason': row.reason},
                        idempotency_key=f'charge:{reservation_id}',
                        created_at=now,
                    )
                )
            await session.commit()
        logger.info(
            'reservation_settled',
            reservation_id=reservation_id,
            actor_id=actor_id,
            outcome=outcome.value,
            reserved=str(amount),
            spent=str(spent),
        )
        return True
