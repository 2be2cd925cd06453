"""
Analysis router - handles analysis job operations.

Provides endpoints for starting pipeline jobs, status polling,
cancellation, listing with filtering capabilities and recent job events.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query

from neuron.analysis import AnalysisPipeline
from neuron.api.deps import get_events, get_pipeline, validate_id
from neuron.api.errors import handle_endpoint_error
from neuron.core.events import EventBus
from neuron.models.errors import job_not_active_error, job_not_found_error
from neuron.models.jobs import RunStatus
from neuron.models.requests import StartAnalysisRequest

router = APIRouter(prefix="/analysis", tags=["analysis"])


@router.post("/jobs", status_code=202)
async def start_job(
    request: StartAnalysisRequest,
    pipeline: AnalysisPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """
    Start an analysis job in the background.

    Args:
        request: Run type and pipeline options
        pipeline: Injected analysis pipeline

    Returns:
        The created (queued) run
    """
    try:
        run, _ = await pipeline.start_job(request.run_type, request.to_options())
    except Exception as e:
        raise handle_endpoint_error(e, "Start analysis job") from e
    return run.to_dict()


# List route must come before the parameterized route
@router.get("/jobs")
async def list_jobs(
    status: RunStatus | None = Query(None, description="Filter by run status"),
    limit: int = Query(50, ge=1, le=500),
    pipeline: AnalysisPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """List analysis runs, newest first."""
    runs = await pipeline.list_jobs(status=status, limit=limit)
    return {
        "jobs": [run.to_dict() for run in runs],
        "total": len(runs),
        "active_job_ids": await pipeline.active_job_ids(),
    }


@router.get("/jobs/{job_id}")
async def get_job(
    job_id: str,
    pipeline: AnalysisPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """
    Get status, progress and results of a specific job.

    Args:
        job_id: 12-character run identifier
        pipeline: Injected analysis pipeline

    Returns:
        Run data including the latest progress snapshot
    """
    validate_id(job_id, "job ID")

    run = await pipeline.get_job(job_id)
    if run is None:
        raise HTTPException(status_code=404, detail=job_not_found_error(job_id).to_dict())
    return run.to_dict()


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(
    job_id: str,
    pipeline: AnalysisPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """
    Cancel a queued or running job.

    The run is marked cancelled immediately; the job stops at its next
    batch or pair boundary.
    """
    validate_id(job_id, "job ID")

    if not await pipeline.cancel_job(job_id):
        if await pipeline.get_job(job_id) is None:
            raise HTTPException(status_code=404, detail=job_not_found_error(job_id).to_dict())
        raise HTTPException(status_code=409, detail=job_not_active_error(job_id).to_dict())

    run = await pipeline.get_job(job_id)
    return {
        "success": True,
        "job_id": job_id,
        "message": f"Job {job_id} cancelled",
        "job": run.to_dict() if run else None,
    }


@router.get("/events")
async def list_events(
    limit: int = Query(50, ge=1, le=200),
    job_id: str | None = Query(None, description="Only events of this job"),
    events: EventBus = Depends(get_events),
) -> dict[str, Any]:
    """Recent analysis job events, oldest first."""
    history = [e for e in events.history() if e.type.startswith("analysis.job.")]
    if job_id is not None:
        history = [e for e in history if e.payload.get("job_id") == job_id]
    return {"events": [e.to_dict() for e in history[-limit:]]}
