"""Schemas for the roadmap proxy and task redistribution endpoints."""
from __future__ import annotations

from typing import Any, List

from pydantic import BaseModel, ConfigDict, Field


class RoadmapRequest(BaseModel):
    # Validated by the generator so errors keep the {error, details} shape.
    goal: Any = None
    days: Any = None


class RoadmapDayPayload(BaseModel):
    day: int
    tasks: List[str]


class RoadmapPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(..., min_length=1)
    duration_days: int = Field(..., alias="durationDays", ge=1, le=365)
    days: List[RoadmapDayPayload]


class RedistributeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    remaining_days: List[RoadmapDayPayload] = Field(..., alias="remainingDays")
    incomplete_tasks: List[str] = Field(..., alias="incompleteTasks")
    total_remaining_days: int = Field(..., alias="totalRemainingDays", ge=0)


class RedistributeResponse(BaseModel):
    days: List[RoadmapDayPayload]
