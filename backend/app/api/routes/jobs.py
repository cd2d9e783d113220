"""Operational endpoints for the progress sync job."""
from __future__ import annotations

from time import perf_counter

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.api.schemas.jobs import JobRunRequest, JobRunResponse
from app.core.config import settings
from app.db.deps import get_db
from app.observability.metrics import log_metric
from app.observability.tracing import trace
from app.services.job_runner import JobRunResult, run_progress_sync_for_all_goals, run_progress_sync_for_goal

router = APIRouter()


@router.get("/jobs", tags=["jobs"])
def get_jobs_config(request: Request) -> dict:
    request_id = getattr(request.state, "request_id", None)
    with trace("jobs.config", request_id=request_id):
        data = {
            "scheduler_enabled": settings.scheduler_enabled,
            "schedule": {
                "timezone": settings.scheduler_timezone,
                "progress_sync_time": f"{settings.sync_job_hour:02d}:{settings.sync_job_minute:02d}",
                "day_boundary_timezone": settings.day_boundary_timezone,
            },
        }
    return {**data, "request_id": request_id or ""}


@router.post("/jobs/run-now", response_model=JobRunResponse, tags=["jobs"])
def run_job_now(
    request: Request,
    payload: JobRunRequest,
    db: Session = Depends(get_db),
) -> JobRunResponse:
    if not settings.debug:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Run-now only allowed in debug mode")

    request_id = getattr(request.state, "request_id", None)
    start = perf_counter()
    with trace("jobs.run_now", metadata={"job": payload.job}, request_id=request_id):
        if payload.goal_id is not None:
            if not payload.user_id:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="user_id is required when goal_id is given",
                )
            outcome = run_progress_sync_for_goal(db, payload.user_id, payload.goal_id)
            result = JobRunResult(
                goals_processed=1,
                days_advanced=int(outcome.advanced),
                missed_days_flagged=int(outcome.flagged),
            )
        else:
            result = run_progress_sync_for_all_goals(db)

    log_metric("jobs.run_now.latency_ms", (perf_counter() - start) * 1000, metadata={"job": payload.job})
    return JobRunResponse(
        job=payload.job,
        goals_processed=result.goals_processed,
        days_advanced=result.days_advanced,
        missed_days_flagged=result.missed_days_flagged,
        failures=result.failures,
        request_id=request_id or "",
    )
