from __future__ import annotations

import asyncio
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from genflow.capabilities.base import CapabilitySpec
from genflow.capabilities.registry import list_capabilities
from genflow.config import get_settings
from genflow.runtime import Runtime, build_runtime
from genflow.services.jobs import GenerationJob
from genflow.utils.credits import credits_to_display, to_non_negative_credits
from genflow.utils.logging import configure_logging, get_logger


logger = get_logger("web")

ERROR_STATUS_CODES = {
    "rate_limited": 429,
    "insufficient_credits": 402,
    "submission_rejected": 400,
    "submission_unavailable": 503,
}


def _capability_payload(spec: CapabilitySpec) -> Dict[str, Any]:
    pricing = spec.pricing
    return {
        "key": spec.key,
        "display_name": spec.display_name,
        "artifact_kind": spec.artifact_kind,
        "provider": spec.provider,
        "pricing": {
            "mode": pricing.mode,
            "amount": credits_to_display(pricing.amount),
            "unit_param": pricing.unit_param,
            "unit_default": pricing.unit_default,
            "minimum": credits_to_display(pricing.minimum),
        },
        "options": [
            {
                "key": opt.key,
                "label": opt.label,
                "default": opt.default,
                "values": [
                    {
                        "value": value.value,
                        "label": value.label,
                        "price": credits_to_display(value.price) if value.price is not None else None,
                    }
                    for value in opt.values
                ],
            }
            for opt in spec.options
        ],
        "inputs": list(spec.input_keys),
        "required_inputs": list(spec.required_inputs),
        "max_wait_seconds": spec.max_wait_seconds,
    }


def _job_payload(job: GenerationJob) -> Dict[str, Any]:
    return {
        "job_id": job.job_id,
        "actor_id": job.actor_id,
        "capability": job.capability,
        "state": job.state.value,
        "reservation_id": job.reservation_id,
        "credits_reserved": credits_to_display(job.credits_reserved),
        "credits_settled": credits_to_display(job.credits_settled) if job.credits_settled is not None else None,
        "poll_attempt": job.poll_attempt,
        "submitted_at": job.submitted_at.isoformat(),
        "artifacts": list(job.result),
        "error": job.error,
        "accepted": job.accepted,
    }


def _account_payload(account) -> Dict[str, Any]:
    return {
        "actor_id": account.actor_id,
        "balance": credits_to_display(account.balance),
        "reserved": credits_to_display(account.reserved_total),
        "available": credits_to_display(account.available),
    }


async def _json_body(request: Request) -> Dict[str, Any] | None:
    try:
        data = await request.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def create_app(runtime: Runtime | None = None) -> FastAPI:
    settings = runtime.settings if runtime is not None else get_settings()
    app = FastAPI(title="genflow")
    app.state.runtime = runtime
    app.state.owns_runtime = runtime is None
    app.state.watch_task = None

    @app.on_event("startup")
    async def startup() -> None:
        if app.state.runtime is None:
            configure_logging(settings.log_level)
            app.state.runtime = build_runtime(settings)
        orchestrator = app.state.runtime.orchestrator
        app.state.watch_task = asyncio.create_task(orchestrator.watch_pending(settings.reconcile_interval_seconds))
        logger.info("api_started", host=settings.api_host, port=settings.api_port)

    @app.on_event("shutdown")
    async def shutdown() -> None:
        task = app.state.watch_task
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            app.state.watch_task = None
        if app.state.owns_runtime and app.state.runtime is not None:
            await app.state.runtime.close()

    def get_runtime() -> Runtime:
        return app.state.runtime

    @app.get("/health")
    async def health():
        return {"ok": True}

    @app.get("/api/capabilities")
    async def capabilities():
        return {"capabilities": [_capability_payload(spec) for spec in list_capabilities()]}

    @app.post("/api/generate/{capability}")
    async def generate(capability: str, request: Request):
        data = await _json_body(request)
        if data is None:
            return JSONResponse({"status": "error", "error": "invalid_payload"}, status_code=400)
        actor_id = str(data.get("actor_id") or "").strip()
        if not actor_id:
            return JSONResponse({"status": "error", "error": "actor_id_required"}, status_code=400)
        params = data.get("params") or {}
        if not isinstance(params, dict):
            return JSONResponse({"status": "error", "error": "invalid_params"}, status_code=400)

        runtime = get_runtime()
        await runtime.ensure_actor(actor_id)
        result = await runtime.orchestrator.submit_and_await(actor_id, capability, params)
        if result["status"] == "completed":
            return JSONResponse(result, status_code=200)
        if result["status"] == "pending":
            return JSONResponse(result, status_code=202)
        return JSONResponse(result, status_code=ERROR_STATUS_CODES.get(result["error"], 502))

    @app.get("/api/credits/{actor_id}")
    async def credits(actor_id: str):
        runtime = get_runtime()
        await runtime.ensure_actor(actor_id)
        account = await runtime.ledger.get_account(actor_id)
        return _account_payload(account)

    @app.post("/api/credits/{actor_id}/deposit")
    async def deposit(actor_id: str, request: Request):
        data = await _json_body(request)
        if data is None:
            return JSONResponse({"error": "invalid_payload"}, status_code=400)
        try:
            amount = to_non_negative_credits(data.get("amount"))
        except ValueError:
            return JSONResponse({"error": "invalid_amount"}, status_code=400)
        if amount <= 0:
            return JSONResponse({"error": "invalid_amount"}, status_code=400)

        runtime = get_runtime()
        await runtime.ensure_actor(actor_id)
        account = await runtime.ledger.deposit(
            actor_id,
            amount,
            reason=str(data.get("reason") or "deposit"),
            idempotency_key=data.get("idempotency_key") or None,
        )
        return _account_payload(account)

    @app.get("/api/jobs/pending")
    async def pending_jobs():
        jobs = get_runtime().jobs.pending()
        return {"jobs": [_job_payload(job) for job in jobs]}

    @app.post("/api/jobs/{job_id}/reconcile")
    async def reconcile_job(job_id: str):
        try:
            job = await get_runtime().orchestrator.reconcile(job_id)
        except KeyError:
            return JSONResponse({"error": "not_found"}, status_code=404)
        payload = _job_payload(job)
        payload["settled"] = job.credits_settled is not None
        return payload

    return app
