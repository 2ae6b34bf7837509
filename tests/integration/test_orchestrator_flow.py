from __future__ import annotations

import asyncio
import json
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from conftest import ScriptedProvider, make_settings, snapshot
from genflow.errors import InsufficientCredits, PollingExhausted, ProviderFailed, RateLimited, SubmissionRejected
from genflow.services.jobs import JobState
from genflow.services.ledger import SettleOutcome
from genflow.services.orchestrator import GenerationOutcome, PendingOutcome
from genflow.services.provider import ProviderError


IMAGE = 'https://v3.fal.media/files/out-1.png'


def images(*urls):
    return {'images': [{'url': url} for url in urls]}


async def funded(runtime, amount=10):
    await runtime.ledger.deposit('actor', amount)
    return runtime


@pytest.mark.asyncio
async def test_completed_job_charges_reserved_amount(make_runtime) -> None:
    provider = ScriptedProvider([snapshot('IN_QUEUE'), snapshot('COMPLETED', images(IMAGE))])
    runtime = await funded(make_runtime(provider))

    outcome = await runtime.orchestrator.run('actor', 'flux_pro', {'prompt': 'a cat'})

    assert isinstance(outcome, GenerationOutcome)
    assert outcome.artifacts == [IMAGE]
    assert outcome.credits_deducted == Decimal('0.5')
    assert outcome.remaining_credits == Decimal('9.5')
    assert provider.submitted[0].payload['prompt'] == 'a cat'
    assert provider.submitted[0].payload['aspect_ratio'] == '1:1'


@pytest.mark.asyncio
async def test_provider_failure_refunds_the_reservation(make_runtime) -> None:
    seen = {}

    class SpyProvider(ScriptedProvider):
        async def status(self, request, job_id):
            seen.setdefault('account', await runtime.ledger.get_account('actor'))
            return await super().status(request, job_id)

    provider = SpyProvider([snapshot('FAILED', error='GPU fell over')])
    runtime = await funded(make_runtime(provider))

    with pytest.raises(ProviderFailed) as exc:
        await runtime.orchestrator.run('actor', 'flux_pro', {'prompt': 'x', 'num_images': 6})

    assert exc.value.job_id == 'job-1'
    assert seen['account'].reserved_total == Decimal('3')
    account = await runtime.ledger.get_account('actor')
    assert account.balance == Decimal('10')
    assert account.reserved_total == Decimal('0')


@pytest.mark.asyncio
async def test_submit_and_await_sanitizes_provider_errors(make_runtime) -> None:
    provider = ScriptedProvider([snapshot('FAILED', error='internal stack trace: /srv/model.py line 12')])
    runtime = await funded(make_runtime(provider))

    result = await runtime.orchestrator.submit_and_await('actor', 'flux_pro', {'prompt': 'x'})

    assert result['status'] == 'error'
    assert result['error'] == 'provider_failed'
    assert result['job_id'] == 'job-1'
    assert 'stack trace' not in result['message']


@pytest.mark.asyncio
async def test_rate_limited_actor_never_reaches_the_ledger(make_runtime) -> None:
    provider = ScriptedProvider([snapshot('COMPLETED', images(IMAGE))])
    runtime = await funded(make_runtime(provider, settings=make_settings(RATE_LIMIT_MAX_REQUESTS=1)))
    runtime.ledger.reserve = AsyncMock(wraps=runtime.ledger.reserve)

    await runtime.orchestrator.run('actor', 'flux_pro', {'prompt': 'x'})
    with pytest.raises(RateLimited):
        await runtime.orchestrator.run('actor', 'flux_pro', {'prompt': 'x'})

    assert runtime.ledger.reserve.await_count == 1


@pytest.mark.asyncio
async def test_insufficient_credits_stop_before_submission(make_runtime) -> None:
    provider = ScriptedProvider()
    runtime = await funded(make_runtime(provider), amount=1)

    with pytest.raises(InsufficientCredits):
        await runtime.orchestrator.run('actor', 'veo3_fast', {'prompt': 'x'})

    assert provider.submitted == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    'capability, params',
    [
        ('does_not_exist', {'prompt': 'x'}),
        ('hunyuan3d', {}),
        ('veo3_fast', {'prompt': 'x', 'duration': '9s'}),
    ],
)
async def test_invalid_requests_are_rejected_without_a_reservation(make_runtime, capability, params) -> None:
    provider = ScriptedProvider()
    runtime = await funded(make_runtime(provider))

    with pytest.raises(SubmissionRejected):
        await runtime.orchestrator.run('actor', capability, params)

    account = await runtime.ledger.get_account('actor')
    assert account.reserved_total == Decimal('0')
    assert provider.submitted == []


@pytest.mark.asyncio
async def test_rejected_submission_is_refunded(make_runtime) -> None:
    provider = ScriptedProvider(submit_error=ProviderError('prompt too long', 422))
    runtime = await funded(make_runtime(provider))

    result = await runtime.orchestrator.submit_and_await('actor', 'flux_pro', {'prompt': 'x'})

    assert result['error'] == 'submission_rejected'
    account = await runtime.ledger.get_account('actor')
    assert account.balance == Decimal('10')
    assert account.reserved_total == Decimal('0')


@pytest.mark.asyncio
async def test_transport_exhaustion_is_refunded(make_runtime) -> None:
    provider = ScriptedProvider([ProviderError('bad gateway', 502)])
    runtime = await funded(make_runtime(provider))

    with pytest.raises(PollingExhausted):
        await runtime.orchestrator.run('actor', 'flux_pro', {'prompt': 'x', 'num_images': 6})

    assert provider.status_calls == 6
    account = await runtime.ledger.get_account('actor')
    assert account.balance == Decimal('10')
    assert account.reserved_total == Decimal('0')


@pytest.mark.asyncio
async def test_missing_artifact_is_refunded(make_runtime) -> None:
    provider = ScriptedProvider([snapshot('COMPLETED', {'message': 'ok'})])
    runtime = await funded(make_runtime(provider))

    result = await runtime.orchestrator.submit_and_await('actor', 'flux_pro', {'prompt': 'x'})

    assert result == {
        'status': 'error',
        'error': 'no_artifact_found',
        'message': result['message'],
        'job_id': 'job-1',
    }
    account = await runtime.ledger.get_account('actor')
    assert account.balance == Decimal('10')


@pytest.mark.asyncio
async def test_partial_delivery_charges_only_delivered_images(make_runtime) -> None:
    urls = [f'https://fal.media/{index}.png' for index in range(3)]
    provider = ScriptedProvider([snapshot('COMPLETED', images(*urls))])
    runtime = await funded(make_runtime(provider))

    outcome = await runtime.orchestrator.run('actor', 'flux_pro', {'prompt': 'x', 'num_images': 4})

    assert outcome.credits_deducted == Decimal('1.5')
    account = await runtime.ledger.get_account('actor')
    assert account.balance == Decimal('8.5')
    assert account.reserved_total == Decimal('0')


@pytest.mark.asyncio
async def test_timed_out_job_stays_reserved_until_reconciled(make_runtime) -> None:
    provider = ScriptedProvider([snapshot('IN_PROGRESS')])
    runtime = await funded(make_runtime(provider))

    outcome = await runtime.orchestrator.run('actor', 'flux_pro', {'prompt': 'x'})

    assert isinstance(outcome, PendingOutcome)
    job = runtime.jobs.get(outcome.job_id)
    assert job.state == JobState.TIMED_OUT
    account = await runtime.ledger.get_account('actor')
    assert account.reserved_total == Decimal('0.5')
    reservation = await runtime.ledger.get_reservation(outcome.reservation_id)
    assert reservation.outcome is None

    provider.statuses = [snapshot('COMPLETED', images(IMAGE))]
    resolved = await runtime.orchestrator.reconcile(outcome.job_id)

    assert resolved.state == JobState.COMPLETED
    assert resolved.credits_settled == Decimal('0.5')
    assert outcome.job_id not in runtime.jobs
    account = await runtime.ledger.get_account('actor')
    assert account.balance == Decimal('9.5')
    assert account.reserved_total == Decimal('0')


@pytest.mark.asyncio
async def test_reconciled_failure_refunds(make_runtime) -> None:
    provider = ScriptedProvider([snapshot('IN_PROGRESS')])
    runtime = await funded(make_runtime(provider))
    outcome = await runtime.orchestrator.run('actor', 'flux_pro', {'prompt': 'x'})

    provider.statuses = [snapshot('FAILED', error='expired')]
    assert await runtime.orchestrator.reconcile_pending() == 1

    reservation = await runtime.ledger.get_reservation(outcome.reservation_id)
    assert reservation.outcome == SettleOutcome.REFUND
    assert runtime.jobs.pending() == []


@pytest.mark.asyncio
async def test_reconcile_leaves_running_jobs_pending(make_runtime) -> None:
    provider = ScriptedProvider([snapshot('IN_PROGRESS')])
    runtime = await funded(make_runtime(provider))
    outcome = await runtime.orchestrator.run('actor', 'flux_pro', {'prompt': 'x'})

    assert await runtime.orchestrator.reconcile_pending() == 0
    assert [job.job_id for job in runtime.jobs.pending()] == [outcome.job_id]


@pytest.mark.asyncio
async def test_reconcile_unknown_job_raises(make_runtime) -> None:
    runtime = make_runtime(ScriptedProvider())

    with pytest.raises(KeyError):
        await runtime.orchestrator.reconcile('nope')


@pytest.mark.asyncio
async def test_cancellation_keeps_the_reservation_held(make_runtime) -> None:
    entered = asyncio.Event()

    class HangingProvider(ScriptedProvider):
        async def status(self, request, job_id):
            entered.set()
            await asyncio.Event().wait()

    runtime = await funded(make_runtime(HangingProvider()))
    task = asyncio.create_task(runtime.orchestrator.run('actor', 'flux_pro', {'prompt': 'x'}))
    await entered.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    account = await runtime.ledger.get_account('actor')
    assert account.reserved_total == Decimal('0.5')
    assert account.balance == Decimal('10')
    assert [job.job_id for job in runtime.jobs.pending()] == ['job-1']


@pytest.mark.asyncio
async def test_watch_pending_reconciles_in_the_background(make_runtime) -> None:
    provider = ScriptedProvider([snapshot('IN_PROGRESS')])
    runtime = await funded(make_runtime(provider))
    await runtime.orchestrator.run('actor', 'flux_pro', {'prompt': 'x'})
    provider.statuses = [snapshot('COMPLETED', images(IMAGE))]

    task = asyncio.create_task(runtime.orchestrator.watch_pending(interval=60))
    for _ in range(5):
        await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert runtime.jobs.pending() == []
    account = await runtime.ledger.get_account('actor')
    assert account.balance == Decimal('9.5')


@pytest.mark.asyncio
async def test_holder_discount_lowers_the_price(make_runtime) -> None:
    rules = [{
        'id': 'genesis',
        'name': 'Genesis',
        'kind': 'nft',
        'contract_address': '0xabc',
        'chain_id': '1',
        'percentage': 50,
        'min_balance': 1,
        'applies_to': ['veo3_fast'],
    }]
    lookup = AsyncMock()
    lookup.balance_of.return_value = Decimal('2')
    provider = ScriptedProvider([snapshot('COMPLETED', {'video': {'url': 'https://fal.media/v.mp4'}})])
    runtime = await funded(
        make_runtime(provider, settings=make_settings(DISCOUNT_RULES=json.dumps(rules)), lookup=lookup),
        amount=20,
    )

    outcome = await runtime.orchestrator.run('actor', 'veo3_fast', {'prompt': 'x'})

    assert outcome.credits_deducted == Decimal('8.8')
    assert outcome.remaining_credits == Decimal('11.2')


@pytest.mark.asyncio
async def test_failed_discount_lookup_charges_full_price(make_runtime) -> None:
    rules = [{
        'id': 'genesis',
        'name': 'Genesis',
        'kind': 'nft',
        'contract_address': '0xabc',
        'chain_id': '1',
        'percentage': 50,
        'min_balance': 1,
        'applies_to': ['*'],
    }]
    lookup = AsyncMock()
    lookup.balance_of.side_effect = RuntimeError('rpc down')
    provider = ScriptedProvider([snapshot('COMPLETED', images(IMAGE))])
    runtime = await funded(
        make_runtime(
            provider,
            settings=make_settings(DISCOUNT_RULES=json.dumps(rules), DISCOUNT_LOOKUP_RETRIES=0),
            lookup=lookup,
        )
    )

    outcome = await runtime.orchestrator.run('actor', 'flux_pro', {'prompt': 'x'})

    assert outcome.credits_deducted == Decimal('0.5')


@pytest.mark.asyncio
async def test_reconcile_waits_for_the_artifact_of_a_completed_job(make_runtime) -> None:
    provider = ScriptedProvider([snapshot('IN_PROGRESS')])
    runtime = await funded(make_runtime(provider))
    outcome = await runtime.orchestrator.run('actor', 'flux_pro', {'prompt': 'x'})

    provider.statuses = [snapshot('COMPLETED', {})]
    job = await runtime.orchestrator.reconcile(outcome.job_id)

    assert job.state == JobState.TIMED_OUT
    assert job.credits_settled is None
    reservation = await runtime.ledger.get_reservation(outcome.reservation_id)
    assert reservation.outcome is None
    assert [pending.job_id for pending in runtime.jobs.pending()] == [outcome.job_id]

    provider.statuses = [snapshot('COMPLETED', images(IMAGE))]
    job = await runtime.orchestrator.reconcile(outcome.job_id)

    assert job.state == JobState.COMPLETED
    account = await runtime.ledger.get_account('actor')
    assert account.balance == Decimal('9.5')
    assert account.reserved_total == Decimal('0')


@pytest.mark.asyncio
async def test_cancellation_during_settlement_is_reconciled_later(make_runtime, ledger) -> None:
    provider = ScriptedProvider([snapshot('COMPLETED', images(IMAGE))])
    runtime = await funded(make_runtime(provider))
    entered = asyncio.Event()

    async def hanging_settle(reservation_id, outcome):
        entered.set()
        await asyncio.Event().wait()

    ledger.settle = hanging_settle
    task = asyncio.create_task(runtime.orchestrator.run('actor', 'flux_pro', {'prompt': 'x'}))
    await entered.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    account = await runtime.ledger.get_account('actor')
    assert account.reserved_total == Decimal('0.5')
    pending = runtime.jobs.pending()
    assert [job.job_id for job in pending] == ['job-1']
    assert pending[0].state == JobState.COMPLETED

    del ledger.settle
    calls = provider.status_calls
    job = await runtime.orchestrator.reconcile('job-1')

    assert provider.status_calls == calls
    assert job.credits_settled == Decimal('0.5')
    assert runtime.jobs.pending() == []
    account = await runtime.ledger.get_account('actor')
    assert account.balance == Decimal('9.5')
    assert account.reserved_total == Decimal('0')


@pytest.mark.asyncio
async def test_cancelled_submission_is_released_by_reconciliation(make_runtime) -> None:
    entered = asyncio.Event()

    class HangingSubmit(ScriptedProvider):
        async def submit(self, request):
            entered.set()
            await asyncio.Event().wait()

    runtime = await funded(make_runtime(HangingSubmit()))
    task = asyncio.create_task(runtime.orchestrator.run('actor', 'flux_pro', {'prompt': 'x'}))
    await entered.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    pending = runtime.jobs.pending()
    assert len(pending) == 1
    job = pending[0]
    assert job.accepted is False
    assert job.job_id == job.reservation_id
    account = await runtime.ledger.get_account('actor')
    assert account.reserved_total == Decimal('0.5')

    assert await runtime.orchestrator.reconcile_pending() == 1

    assert job.state == JobState.FAILED
    assert job.error == 'submit_cancelled'
    reservation = await runtime.ledger.get_reservation(job.reservation_id)
    assert reservation.outcome == SettleOutcome.REFUND
    account = await runtime.ledger.get_account('actor')
    assert account.balance == Decimal('10')
    assert account.reserved_total == Decimal('0')
