"""JSON endpoints over the record store. Decimals are serialized as strings."""

from __future__ import annotations

import time

import structlog
from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from burnbot.exceptions import RecordNotFound
from burnbot.models import RewardStatus, to_document

log = structlog.get_logger(__name__)

router = APIRouter()

_MAX_LIMIT = 500


@router.get("/health")
async def health() -> JSONResponse:
    return JSONResponse(content={"status": "ok", "time": time.time()})


@router.get("/status")
async def get_status(request: Request) -> JSONResponse:
    """Last pipeline result, last reconcile report, and timer state."""
    orchestrator = request.app.state.orchestrator
    reconciler = request.app.state.reconciler
    scheduler = request.app.state.scheduler

    last_result = orchestrator.last_result
    last_report = reconciler.last_report
    return JSONResponse(content={
        "scheduler_running": scheduler.is_running if scheduler is not None else False,
        "pipeline_running": orchestrator.is_running,
        "reconciling": reconciler.is_reconciling,
        "last_run": last_result.to_dict() if last_result else None,
        "last_reconcile": last_report.to_dict() if last_report else None,
    })


@router.get("/rewards")
async def list_rewards(
    request: Request,
    status: str | None = None,
    limit: int = Query(50, ge=1, le=_MAX_LIMIT),
) -> JSONResponse:
    store = request.app.state.store
    wanted: RewardStatus | None = None
    if status is not None:
        try:
            wanted = RewardStatus(status)
        except ValueError:
            valid = ", ".join(s.value for s in RewardStatus)
            return JSONResponse(
                status_code=400,
                content={"error": f"Unknown status {status!r}; expected one of {valid}"},
            )

    rewards = await store.find_rewards(status=wanted, limit=limit)
    return JSONResponse(content=[to_document(r) for r in rewards])


@router.get("/rewards/{reward_id}")
async def get_reward(request: Request, reward_id: str) -> JSONResponse:
    store = request.app.state.store
    try:
        reward = await store.get_reward(reward_id)
    except RecordNotFound:
        return JSONResponse(status_code=404, content={"error": f"Reward {reward_id} not found"})

    burn = await store.find_burn_for_reward(reward_id)
    content = to_document(reward)
    content["burn"] = to_document(burn) if burn else None
    return JSONResponse(content=content)


@router.get("/burns")
async def list_burns(
    request: Request, limit: int = Query(50, ge=1, le=_MAX_LIMIT)
) -> JSONResponse:
    burns = await request.app.state.store.find_burns(limit=limit)
    return JSONResponse(content=[to_document(b) for b in burns])


@router.get("/metrics")
async def get_metrics(request: Request) -> JSONResponse:
    """Latest metrics snapshot, or 404 before the first snapshot exists."""
    latest = await request.app.state.store.latest_metrics()
    if latest is None:
        return JSONResponse(status_code=404, content={"error": "No metrics recorded yet"})
    return JSONResponse(content=to_document(latest))


@router.get("/metrics/history")
async def get_metrics_history(
    request: Request, limit: int = Query(50, ge=1, le=_MAX_LIMIT)
) -> JSONResponse:
    history = await request.app.state.store.metrics_history(limit=limit)
    return JSONResponse(content=[to_document(s) for s in history])


@router.get("/milestones")
async def list_milestones(request: Request) -> JSONResponse:
    milestones = await request.app.state.store.find_milestones()
    return JSONResponse(content=[to_document(m) for m in milestones])
