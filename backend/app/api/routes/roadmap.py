"""Roadmap generation proxy and task redistribution endpoints."""
from __future__ import annotations

import logging
from time import perf_counter

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse, PlainTextResponse

from app.api.deps import get_generator, get_task_redistributor
from app.api.schemas.roadmap import (
    RedistributeRequest,
    RedistributeResponse,
    RoadmapDayPayload,
    RoadmapRequest,
)
from app.core.errors import GenerationFailedError, GoalValidationError
from app.observability.metrics import log_metric
from app.observability.tracing import trace
from app.services.day_progress import RoadmapDay
from app.services.roadmap_generator import RoadmapGenerator, validate_days, validate_goal_text
from app.services.task_redistributor import TaskRedistributor

logger = logging.getLogger(__name__)

router = APIRouter(tags=["roadmap"])


@router.get("/ping", response_class=PlainTextResponse)
def ping() -> str:
    return "pong"


@router.post("/generate-roadmap")
def generate_roadmap(
    payload: RoadmapRequest,
    generator: RoadmapGenerator = Depends(get_generator),
):
    """Generate a day-by-day roadmap for a goal.

    Returns the model's ``{title, durationDays, days}`` document. Invalid input
    answers 400 and generation failures answer 500, both as ``{error, details}``.
    """
    if not payload.goal or not payload.days:
        return _error(status.HTTP_400_BAD_REQUEST, "Missing required fields", "Both 'goal' and 'days' are required")
    try:
        goal = validate_goal_text(payload.goal)
    except GoalValidationError as exc:
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid goal", exc.message)
    try:
        days = validate_days(payload.days)
    except GoalValidationError as exc:
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid days", exc.message)

    start = perf_counter()
    try:
        with trace("roadmap.proxy", metadata={"days": days}):
            roadmap = generator.generate(goal, days)
    except GenerationFailedError as exc:
        logger.error("Roadmap generation failed: %s", exc.message)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to generate valid roadmap", exc.message)

    log_metric("roadmap.proxy.latency_ms", (perf_counter() - start) * 1000, metadata={"days": days})
    return roadmap.model_dump(by_alias=True)


@router.post("/redistribute-tasks", response_model=RedistributeResponse)
def redistribute(
    payload: RedistributeRequest,
    redistributor: TaskRedistributor = Depends(get_task_redistributor),
) -> RedistributeResponse:
    """Re-deal incomplete tasks across the remaining days, at most four per day."""
    remaining = [RoadmapDay(day=entry.day, tasks=tuple(entry.tasks)) for entry in payload.remaining_days]
    with trace("roadmap.redistribute", metadata={"incomplete": len(payload.incomplete_tasks)}):
        days = redistributor.redistribute(remaining, payload.incomplete_tasks, payload.total_remaining_days)
    # Days left without tasks are omitted from the answer.
    return RedistributeResponse(
        days=[RoadmapDayPayload(day=day.day, tasks=list(day.tasks)) for day in days if day.tasks]
    )


def _error(status_code: int, error: str, details: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "details": details})
