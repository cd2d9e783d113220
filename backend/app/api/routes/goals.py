"""Goal progress API routes."""
from __future__ import annotations

from time import perf_counter
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Request, Response, status

from app.api.deps import get_goal_controller
from app.api.schemas.goal import (
    DayPlanResponse,
    GoalCreateRequest,
    GoalResponse,
    MissedDayResponse,
    ResolveRequest,
    ResolveResponse,
    TaskPayload,
    TodayResponse,
)
from app.core.errors import DuplicateRequestError
from app.observability.metrics import log_metric
from app.observability.tracing import trace
from app.services.day_progress import DayPlanSnapshot, GoalSnapshot
from app.services.goal_controller import GoalController

router = APIRouter(tags=["goals"])


@router.get("/goals", response_model=List[GoalResponse])
def list_goals(controller: GoalController = Depends(get_goal_controller)) -> List[GoalResponse]:
    with trace("goals.list"):
        goals = controller.load_goals()
    log_metric("goals.list.count", len(goals))
    return [_serialize_goal(goal) for goal in goals]


@router.post("/goals", response_model=GoalResponse, status_code=status.HTTP_201_CREATED)
def create_goal(
    payload: GoalCreateRequest,
    controller: GoalController = Depends(get_goal_controller),
) -> GoalResponse:
    """Generate a roadmap for the goal and store it with all of its day plans."""
    start = perf_counter()
    with trace("goals.create", metadata={"days": payload.days}):
        goal = controller.generate_goal_with_roadmap(payload.title, payload.days)
    if goal is None:
        raise DuplicateRequestError()

    log_metric("goals.create.latency_ms", (perf_counter() - start) * 1000, metadata={"days": payload.days})
    return _serialize_goal(goal)


@router.get("/goals/{goal_id}", response_model=GoalResponse)
def get_goal(goal_id: UUID, controller: GoalController = Depends(get_goal_controller)) -> GoalResponse:
    with trace("goals.get", goal_id=goal_id):
        goal = controller.sync_current_day(goal_id)
    return _serialize_goal(goal)


@router.get("/goals/{goal_id}/days", response_model=List[DayPlanResponse])
def get_roadmap(goal_id: UUID, controller: GoalController = Depends(get_goal_controller)) -> List[DayPlanResponse]:
    with trace("goals.roadmap", goal_id=goal_id):
        days = controller.get_roadmap(goal_id)
    return [_serialize_day(day) for day in days]


@router.get("/goals/{goal_id}/today", response_model=TodayResponse)
def get_today(
    goal_id: UUID,
    request: Request,
    controller: GoalController = Depends(get_goal_controller),
) -> TodayResponse:
    """Sync the goal with the calendar and return today's plan plus any missed day."""
    with trace("goals.today", goal_id=goal_id):
        view = controller.load_today(goal_id)
    return TodayResponse(
        goal=_serialize_goal(view.goal),
        today=view.today,
        day_plan=_serialize_day(view.day_plan) if view.day_plan is not None else None,
        missed_day=view.missed_day,
        request_id=_request_id(request),
    )


@router.get("/goals/{goal_id}/missed-day", response_model=MissedDayResponse)
def get_missed_day(
    goal_id: UUID,
    request: Request,
    controller: GoalController = Depends(get_goal_controller),
) -> MissedDayResponse:
    with trace("goals.missed_day", goal_id=goal_id):
        missed = controller.check_for_missed_day(goal_id)
    return MissedDayResponse(
        goal_id=goal_id,
        missed_day=missed,
        pending_adjustment=missed is not None,
        request_id=_request_id(request),
    )


@router.post("/goals/{goal_id}/tasks/{index}/toggle", response_model=DayPlanResponse)
def toggle_task(
    goal_id: UUID,
    index: int,
    controller: GoalController = Depends(get_goal_controller),
) -> DayPlanResponse:
    """Flip one task on today's plan; today is taken from the calendar at call time."""
    with trace("goals.toggle_task", metadata={"index": index}, goal_id=goal_id):
        plan = controller.toggle_task(goal_id, index)
    log_metric("goals.toggle_task.success", 1, metadata={"goal_id": str(goal_id)})
    return _serialize_day(plan)


@router.post("/goals/{goal_id}/complete-day", response_model=GoalResponse)
def complete_day(goal_id: UUID, controller: GoalController = Depends(get_goal_controller)) -> GoalResponse:
    with trace("goals.complete_day", goal_id=goal_id):
        goal = controller.complete_day(goal_id)
    return _serialize_goal(goal)


@router.post("/goals/{goal_id}/resolve", response_model=ResolveResponse)
def resolve_missed_day(
    goal_id: UUID,
    payload: ResolveRequest,
    request: Request,
    controller: GoalController = Depends(get_goal_controller),
) -> ResolveResponse:
    """Apply the user's decision for the pending missed day; a no-op if none is pending."""
    with trace("goals.resolve", metadata={"action": payload.action}, goal_id=goal_id):
        goal, applied = controller.resolve_skip_action(goal_id, payload.action)
    return ResolveResponse(
        goal=_serialize_goal(goal),
        action=payload.action,
        applied=applied,
        request_id=_request_id(request),
    )


@router.delete("/goals/{goal_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_goal(goal_id: UUID, controller: GoalController = Depends(get_goal_controller)) -> Response:
    with trace("goals.delete", goal_id=goal_id):
        controller.delete_goal(goal_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or ""


def _serialize_goal(goal: GoalSnapshot) -> GoalResponse:
    return GoalResponse(
        id=goal.id,
        title=goal.title,
        duration_days=goal.duration_days,
        current_day=goal.current_day,
        created_at=goal.created_at_ms,
        pending_adjustment=goal.pending_adjustment,
        last_missed_day=goal.last_missed_day,
        timezone=goal.timezone,
    )


def _serialize_day(plan: DayPlanSnapshot) -> DayPlanResponse:
    return DayPlanResponse(
        day=plan.day,
        tasks=[TaskPayload(description=task.description, is_completed=task.is_completed) for task in plan.tasks],
        status=plan.status,
    )
