"""FastAPI dependencies wiring requests to the goal services."""
from __future__ import annotations

from datetime import tzinfo
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.deps import get_db
from app.services.day_progress import resolve_timezone
from app.services.goal_controller import GoalController, day_plan_cache
from app.services.goal_store import GoalStore
from app.services.inflight import generation_guard
from app.services.roadmap_generator import RoadmapGenerator, get_roadmap_generator
from app.services.task_redistributor import LocalTaskRedistributor, TaskRedistributor


def get_current_user_id(x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")) -> Optional[str]:
    """Caller identity; ``None`` lets the store reject the call as unauthenticated."""
    cleaned = (x_user_id or "").strip()
    return cleaned or None


def get_day_timezone(x_timezone: Optional[str] = Header(default=None, alias="X-Timezone")) -> tzinfo:
    return resolve_timezone((x_timezone or "").strip() or settings.day_boundary_timezone)


def get_goal_store(
    db: Session = Depends(get_db),
    user_id: Optional[str] = Depends(get_current_user_id),
) -> GoalStore:
    return GoalStore(db, user_id)


def get_generator() -> RoadmapGenerator:
    return get_roadmap_generator()


def get_task_redistributor() -> TaskRedistributor:
    return LocalTaskRedistributor()


def get_goal_controller(
    store: GoalStore = Depends(get_goal_store),
    generator: RoadmapGenerator = Depends(get_generator),
    redistributor: TaskRedistributor = Depends(get_task_redistributor),
    tz: tzinfo = Depends(get_day_timezone),
) -> GoalController:
    return GoalController(
        store,
        generator=generator,
        redistributor=redistributor,
        guard=generation_guard,
        guard_key=("generate", store.user_id),
        tz=tz,
        cache=day_plan_cache,
    )
