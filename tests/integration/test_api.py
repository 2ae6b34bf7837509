from __future__ import annotations

from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient

from conftest import ScriptedProvider, make_settings, snapshot
from genflow.services.provider import ProviderError
from genflow.web.app import create_app


IMAGE = 'https://v3.fal.media/files/out.png'


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider([snapshot('COMPLETED', {'images': [{'url': IMAGE}]})])


@pytest.fixture
def runtime(make_runtime, provider):
    return make_runtime(provider, settings=make_settings(SIGNUP_BONUS_CREDITS='5', RATE_LIMIT_MAX_REQUESTS=3))


@pytest.fixture
async def client(runtime):
    app = create_app(runtime)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.mark.asyncio
async def test_health(client: AsyncClient) -> None:
    resp = await client.get("/health")

    assert resp.status_code == 200
    assert resp.json() == {"ok": True}


@pytest.mark.asyncio
async def test_capabilities_list_prices(client: AsyncClient) -> None:
    resp = await client.get("/api/capabilities")

    caps = {item["key"]: item for item in resp.json()["capabilities"]}
    assert caps["veo3_fast"]["pricing"]["amount"] == "2.2"
    assert caps["hunyuan3d"]["options"][0]["values"][2] == {"value": "Geometry", "label": "Geometry only", "price": "2"}


@pytest.mark.asyncio
async def test_generate_completed(client: AsyncClient) -> None:
    resp = await client.post("/api/generate/flux_pro", json={"actor_id": "alice", "params": {"prompt": "cat"}})

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "completed"
    assert body["artifact"] == IMAGE
    assert body["credits_deducted"] == "0.5"
    assert body["remaining_credits"] == "4.5"


@pytest.mark.asyncio
async def test_generate_pending_returns_202(client: AsyncClient, provider: ScriptedProvider) -> None:
    provider.statuses = [snapshot("IN_PROGRESS")]

    resp = await client.post("/api/generate/flux_pro", json={"actor_id": "alice", "params": {"prompt": "cat"}})

    assert resp.status_code == 202
    assert resp.json() == {"status": "pending", "job_id": "job-1"}
    pending = (await client.get("/api/jobs/pending")).json()["jobs"]
    assert [job["job_id"] for job in pending] == ["job-1"]
    assert pending[0]["state"] == "timed_out"

    provider.statuses = [snapshot("COMPLETED", {"images": [{"url": IMAGE}]})]
    resolved = await client.post("/api/jobs/job-1/reconcile")

    assert resolved.status_code == 200
    assert resolved.json()["settled"] is True
    assert resolved.json()["artifacts"] == [IMAGE]
    assert (await client.get("/api/jobs/pending")).json()["jobs"] == []


@pytest.mark.asyncio
async def test_reconcile_unknown_job_is_404(client: AsyncClient) -> None:
    resp = await client.post("/api/jobs/missing/reconcile")

    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_generate_insufficient_credits_is_402(client: AsyncClient) -> None:
    resp = await client.post("/api/generate/veo3_fast", json={"actor_id": "bob", "params": {"prompt": "waves"}})

    assert resp.status_code == 402
    assert resp.json()["error"] == "insufficient_credits"


@pytest.mark.asyncio
async def test_generate_rate_limited_is_429(client: AsyncClient) -> None:
    for _ in range(3):
        await client.post("/api/generate/flux_pro", json={"actor_id": "carol", "params": {"prompt": "x"}})

    resp = await client.post("/api/generate/flux_pro", json={"actor_id": "carol", "params": {"prompt": "x"}})

    assert resp.status_code == 429
    assert resp.json()["error"] == "rate_limited"


@pytest.mark.asyncio
async def test_generate_unknown_capability_is_400(client: AsyncClient) -> None:
    resp = await client.post("/api/generate/teleport", json={"actor_id": "alice", "params": {}})

    assert resp.status_code == 400
    assert resp.json()["error"] == "submission_rejected"


@pytest.mark.asyncio
async def test_generate_provider_outage_is_503(client: AsyncClient, provider: ScriptedProvider) -> None:
    provider.submit_error = ProviderError("service unavailable", 503)

    resp = await client.post("/api/generate/flux_pro", json={"actor_id": "alice", "params": {"prompt": "x"}})

    assert resp.status_code == 503
    assert resp.json()["error"] == "submission_unavailable"


@pytest.mark.asyncio
async def test_generate_provider_failure_is_502(client: AsyncClient, provider: ScriptedProvider) -> None:
    provider.statuses = [snapshot("FAILED", error="boom")]

    resp = await client.post("/api/generate/flux_pro", json={"actor_id": "alice", "params": {"prompt": "x"}})

    assert resp.status_code == 502
    assert resp.json()["error"] == "provider_failed"
    credits = (await client.get("/api/credits/alice")).json()
    assert credits["available"] == "5"


@pytest.mark.asyncio
async def test_generate_requires_actor(client: AsyncClient) -> None:
    resp = await client.post("/api/generate/flux_pro", json={"params": {"prompt": "x"}})

    assert resp.status_code == 400
    assert resp.json()["error"] == "actor_id_required"


@pytest.mark.asyncio
async def test_signup_bonus_applies_once(client: AsyncClient) -> None:
    first = (await client.get("/api/credits/dave")).json()
    second = (await client.get("/api/credits/dave")).json()

    assert first["balance"] == "5"
    assert second["balance"] == "5"


@pytest.mark.asyncio
async def test_deposit_is_idempotent(client: AsyncClient, runtime) -> None:
    payload = {"amount": "2.5", "idempotency_key": "order-1"}
    await client.post("/api/credits/erin/deposit", json=payload)
    resp = await client.post("/api/credits/erin/deposit", json=payload)

    assert resp.status_code == 200
    assert resp.json()["balance"] == "7.5"
    account = await runtime.ledger.get_account("erin")
    assert account.balance == Decimal("7.5")


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", ["-1", "abc", 0, None])
async def test_deposit_rejects_bad_amounts(client: AsyncClient, amount) -> None:
    resp = await client.post("/api/credits/erin/deposit", json={"amount": amount})

    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_amount"


@pytest.mark.asyncio
async def test_shutdown_waits_for_the_watch_task(runtime) -> None:
    app = create_app(runtime)
    await app.router.startup()
    task = app.state.watch_task
    assert task is not None and not task.done()

    await app.router.shutdown()

    assert task.done()
    assert task.cancelled()
    assert app.state.watch_task is None
