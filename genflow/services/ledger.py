from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from genflow.errors import InsufficientCredits
from genflow.utils.credits import ZERO, to_non_negative_credits
from genflow.utils.logging import get_logger
from genflow.utils.time import utcnow


logger = get_logger('ledger')


class SettleOutcome(str, Enum):
    SUCCESS = 'success'
    REFUND = 'refund'


@dataclass
class CreditAccount:
    actor_id: str
    balance: Decimal = ZERO
    reserved_total: Decimal = ZERO

    @property
    def available(self) -> Decimal:
        return self.balance - self.reserved_total


@dataclass
class Reservation:
    reservation_id: str
    actor_id: str
    amount: Decimal
    reason: str
    created_at: datetime
    outcome: Optional[SettleOutcome] = None
    spent: Optional[Decimal] = None
    settled_at: Optional[datetime] = None

    @property
    def is_settled(self) -> bool:
        return self.outcome is not None


@dataclass
class LedgerEntry:
    actor_id: str
    delta: Decimal
    reason: str
    meta: Dict[str, Any] = field(default_factory=dict)
    idempotency_key: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


def new_reservation_id() -> str:
    return uuid.uuid4().hex


class CreditLedger(Protocol):
    async def get_account(self, actor_id: str) -> CreditAccount:
        ...

    async def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        ...

    async def deposit(
        self,
        actor_id: str,
        amount: Any,
        reason: str = 'deposit',
        idempotency_key: str | None = None,
    ) -> CreditAccount:
        ...

    async def reserve(self, actor_id: str, amount: Any, reason: str = 'generation') -> Reservation:
        ...

    async def settle(self, reservation_id: str, outcome: SettleOutcome) -> bool:
        ...

    async def settle_partial(self, reservation_id: str, actual_amount: Any) -> bool:
        ...


class MemoryCreditLedger:
    """Process-local ledger.

    Every mutation of one actor's account happens under that actor's
    ``asyncio.Lock``, so the balance check and the reservation are a single
    critical section. Actors never share a lock.
    """

    def __init__(self) -> None:
        self._accounts: Dict[str, CreditAccount] = {}
        self._reservations: Dict[str, Reservation] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._idempotency_keys: set[str] = set()
        self.entries: List[LedgerEntry] = []

    def _lock(self, actor_id: str) -> asyncio.Lock:
        lock = self._locks.get(actor_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[actor_id] = lock
        return lock

    def _account(self, actor_id: str) -> CreditAccount:
        account = self._accounts.get(actor_id)
        if account is None:
            account = CreditAccount(actor_id=actor_id)
            self._accounts[actor_id] = account
        return account

    @staticmethod
    def _snapshot(account: CreditAccount) -> CreditAccount:
        return CreditAccount(account.actor_id, account.balance, account.reserved_total)

    async def get_account(self, actor_id: str) -> CreditAccount:
        async with self._lock(actor_id):
            return self._snapshot(self._account(actor_id))

    async def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        return self._reservations.get(reservation_id)

    async def deposit(
        self,
        actor_id: str,
        amount: Any,
        reason: str = 'deposit',
        idempotency_key: str | None = None,
    ) -> CreditAccount:
        credits = to_non_negative_credits(amount)
        async with self._lock(actor_id):
            account = self._account(actor_id)
            if idempotency_key and idempotency_key in self._idempotency_keys:
                logger.info('deposit_duplicate', actor_id=actor_id, idempotency_key=idempotency_key)
                return self._snapshot(account)
            if idempotency_key:
                self._idempotency_keys.add(idempotency_key)
            account.balance += credits
            self.entries.append(
                LedgerEntry(actor_id, credits, reason, meta={}, idempotency_key=idempotency_key)
            )
            logger.info('deposit_applied', actor_id=actor_id, amount=str(credits), reason=reason)
            return self._snapshot(account)

    async def reserve(self, actor_id: str, amount: Any, reason: str = 'generation') -> Reservation:
        credits = to_non_negative_credits(amount)
        async with self._lock(actor_id):
            account = self._account(actor_id)
            if account.available < credits:
                raise InsufficientCredits(credits, account.available)
            account.reserved_total += credits
            reservation = Reservation(
                reservation_id=new_reservation_id(),
                actor_id=actor_id,
                amount=credits,
                reason=reason,
                created_at=utcnow(),
            )
            self._reservations[reservation.reservation_id] = reservation
        logger.info(
            'credits_reserved',
            actor_id=actor_id,
            reservation_id=reservation.reservation_id,
            amount=str(credits),
        )
        return reservation

    async def settle(self, reservation_id: str, outcome: SettleOutcome) -> bool:
        reservation = self._get_or_raise(reservation_id)
        spent = reservation.amount if outcome == SettleOutcome.SUCCESS else ZERO
        return await self._settle(reservation, outcome, spent)

    async def settle_partial(self, reservation_id: str, actual_amount: Any) -> bool:
        reservation = self._get_or_raise(reservation_id)
        actual = to_non_negative_credits(actual_amount)
        if actual > reservation.amount:
            raise ValueError(f'actual amount {actual} exceeds reserved {reservation.amount}')
        outcome = SettleOutcome.SUCCESS if actual > 0 else SettleOutcome.REFUND
        return await self._settle(reservation, outcome, actual)

    def _get_or_raise(self, reservation_id: str) -> Reservation:
        reservation = self._reservations.get(reservation_id)
        if reservation is None:
            raise KeyError(reservation_id)
        return reservation

    async def _settle(self, reservation: Reservation, outcome: SettleOutcome, spent: Decimal) -> bool:
        async with self._lock(reservation.actor_id):
            if reservation.is_settled:
                logger.warning(
                    'settle_duplicate',
                    reservation_id=reservation.reservation_id,
                    actor_id=reservation.actor_id,
                    previous=reservation.outcome.value if reservation.outcome else None,
                    requested=outcome.value,
                )
                return False
            account = self._account(reservation.actor_id)
            account.reserved_total -= reservation.amount
            account.balance -= spent
            reservation.outcome = outcome
            reservation.spent = spent
            reservation.settled_at = utcnow()
            if spent > 0:
                self.entries.append(
                    LedgerEntry(
                        reservation.actor_id,
                        -spent,
                        'generation_charge',
                        meta={'reservation_id': reservation.reservation_id, 'reason': reservation.reason},
                        idempotency_key=f'charge:{reservation.reservation_id}',
                    )
                )
        logger.info(
            'reservation_settled',
            reservation_id=reservation.reservation_id,
            actor_id=reservation.actor_id,
            outcome=outcome.value,
            reserved=str(reservation.amount),
            spent=str(spent),
        )
        return True
