"""Schemas for job operations endpoints."""
from __future__ import annotations

from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel


class JobRunRequest(BaseModel):
    job: Literal["progress_sync"] = "progress_sync"
    user_id: Optional[str] = None
    goal_id: Optional[UUID] = None


class JobRunResponse(BaseModel):
    job: str
    goals_processed: int
    days_advanced: int
    missed_days_flagged: int
    failures: int
    request_id: str
