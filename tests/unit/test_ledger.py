from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from genflow.errors import InsufficientCredits
from genflow.services.ledger import MemoryCreditLedger, SettleOutcome


@pytest.mark.asyncio
async def test_reserve_holds_credits_without_touching_balance(ledger: MemoryCreditLedger) -> None:
    await ledger.deposit('actor', 10)

    reservation = await ledger.reserve('actor', 3)
    account = await ledger.get_account('actor')

    assert reservation.amount == Decimal('3.000')
    assert account.balance == Decimal('10')
    assert account.reserved_total == Decimal('3')
    assert account.available == Decimal('7')


@pytest.mark.asyncio
async def test_reserve_more_than_available_raises(ledger: MemoryCreditLedger) -> None:
    await ledger.deposit('actor', 5)
    await ledger.reserve('actor', 4)

    with pytest.raises(InsufficientCredits) as exc:
        await ledger.reserve('actor', 2)

    assert exc.value.needed == Decimal('2')
    assert exc.value.available == Decimal('1')


@pytest.mark.asyncio
async def test_negative_amounts_are_rejected(ledger: MemoryCreditLedger) -> None:
    with pytest.raises(ValueError):
        await ledger.reserve('actor', -1)


@pytest.mark.asyncio
async def test_success_lowers_balance_and_refund_does_not(ledger: MemoryCreditLedger) -> None:
    await ledger.deposit('actor', 10)
    charged = await ledger.reserve('actor', 3)
    refunded = await ledger.reserve('actor', 2)

    assert await ledger.settle(charged.reservation_id, SettleOutcome.SUCCESS)
    assert await ledger.settle(refunded.reservation_id, SettleOutcome.REFUND)
    account = await ledger.get_account('actor')

    assert account.balance == Decimal('7')
    assert account.reserved_total == Decimal('0')
    charges = [entry for entry in ledger.entries if entry.reason == 'generation_charge']
    assert [entry.delta for entry in charges] == [Decimal('-3.000')]


@pytest.mark.asyncio
async def test_second_settlement_is_a_logged_noop(ledger: MemoryCreditLedger) -> None:
    await ledger.deposit('actor', 10)
    reservation = await ledger.reserve('actor', 3)

    assert await ledger.settle(reservation.reservation_id, SettleOutcome.REFUND) is True
    assert await ledger.settle(reservation.reservation_id, SettleOutcome.SUCCESS) is False
    account = await ledger.get_account('actor')

    assert account.balance == Decimal('10')
    assert account.reserved_total == Decimal('0')
    stored = await ledger.get_reservation(reservation.reservation_id)
    assert stored.outcome == SettleOutcome.REFUND


@pytest.mark.asyncio
async def test_unknown_reservation_raises_key_error(ledger: MemoryCreditLedger) -> None:
    with pytest.raises(KeyError):
        await ledger.settle('missing', SettleOutcome.SUCCESS)


@pytest.mark.asyncio
async def test_settle_partial_charges_actual_and_releases_rest(ledger: MemoryCreditLedger) -> None:
    await ledger.deposit('actor', 10)
    reservation = await ledger.reserve('actor', 4)

    assert await ledger.settle_partial(reservation.reservation_id, '1.5')
    account = await ledger.get_account('actor')

    assert account.balance == Decimal('8.5')
    assert account.reserved_total == Decimal('0')


@pytest.mark.asyncio
async def test_settle_partial_above_reserved_raises(ledger: MemoryCreditLedger) -> None:
    await ledger.deposit('actor', 10)
    reservation = await ledger.reserve('actor', 2)

    with pytest.raises(ValueError):
        await ledger.settle_partial(reservation.reservation_id, 3)
    stored = await ledger.get_reservation(reservation.reservation_id)
    assert not stored.is_settled


@pytest.mark.asyncio
async def test_deposit_with_repeated_idempotency_key_is_a_noop(ledger: MemoryCreditLedger) -> None:
    await ledger.deposit('actor', 5, idempotency_key='topup-1')
    account = await ledger.deposit('actor', 5, idempotency_key='topup-1')

    assert account.balance == Decimal('5')
    assert len(ledger.entries) == 1


@pytest.mark.asyncio
async def test_concurrent_reservations_never_overdraw(ledger: MemoryCreditLedger) -> None:
    await ledger.deposit('actor', 10)

    async def attempt():
        try:
            await ledger.reserve('actor', 3)
        except InsufficientCredits:
            return False
        return True

    results = await asyncio.gather(*(attempt() for _ in range(10)))
    account = await ledger.get_account('actor')

    assert results.count(True) == 3
    assert account.reserved_total == Decimal('9')
