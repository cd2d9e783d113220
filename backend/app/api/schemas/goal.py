"""Schemas for goal progress endpoints."""
from __future__ import annotations

from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class GoalCreateRequest(BaseModel):
    title: str = Field(..., max_length=500)
    days: int = Field(..., ge=1, le=365)


class GoalResponse(BaseModel):
    id: UUID
    title: str
    duration_days: int
    current_day: int
    created_at: int
    pending_adjustment: bool
    last_missed_day: Optional[int]
    timezone: Optional[str] = None


class TaskPayload(BaseModel):
    description: str
    is_completed: bool


class DayPlanResponse(BaseModel):
    day: int
    tasks: List[TaskPayload]
    status: str


class TodayResponse(BaseModel):
    goal: GoalResponse
    today: int
    day_plan: Optional[DayPlanResponse]
    missed_day: Optional[int]
    request_id: str


class MissedDayResponse(BaseModel):
    goal_id: UUID
    missed_day: Optional[int]
    pending_adjustment: bool
    request_id: str


class ResolveRequest(BaseModel):
    action: Literal["SKIP", "MARK_COMPLETED", "ADJUST_ROADMAP", "EXTEND"]


class ResolveResponse(BaseModel):
    goal: GoalResponse
    action: str
    applied: bool
    request_id: str
