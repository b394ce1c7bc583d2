"""POST endpoints for manual pipeline and reconcile triggers."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from burnbot.models import RunState

log = structlog.get_logger(__name__)

router = APIRouter()


@router.post("/run")
async def trigger_run(request: Request) -> JSONResponse:
    """Run one pipeline cycle now. Returns 409 when a run is already active."""
    orchestrator = request.app.state.orchestrator
    log.info("pipeline_run_requested_via_api")
    result = await orchestrator.run()
    status_code = 409 if result.reason == "run_in_progress" else 200
    if result.state == RunState.FAILED:
        status_code = 500
    return JSONResponse(status_code=status_code, content=result.to_dict())


@router.post("/reconcile")
async def trigger_reconcile(request: Request) -> JSONResponse:
    """Run one reconcile pass now. Returns 409 when a pass is already active."""
    reconciler = request.app.state.reconciler
    if reconciler.is_reconciling:
        return JSONResponse(status_code=409, content={"error": "Reconcile already in progress"})
    log.info("reconcile_requested_via_api")
    report = await reconciler.reconcile_all()
    return JSONResponse(content=report.to_dict())
