"""Batch job keeping stored goal progress in step with the calendar."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.errors import GoalError
from app.core.retry import RetryConfig
from app.observability.metrics import log_metric
from app.services.goal_controller import GoalController, day_plan_cache
from app.services.goal_store import GoalStore, list_goal_refs

logger = logging.getLogger(__name__)


@dataclass
class JobRunResult:
    goals_processed: int
    days_advanced: int
    missed_days_flagged: int
    failures: int = 0


@dataclass
class GoalSyncOutcome:
    advanced: bool
    flagged: bool


def run_progress_sync_for_goal(
    db: Session,
    user_id: str,
    goal_id: UUID,
    *,
    now: Optional[datetime] = None,
    retry_config: Optional[RetryConfig] = None,
) -> GoalSyncOutcome:
    """Advance one goal's day pointer and flag its first missed day, if any.

    Days are counted in the zone stored on the goal, so a user's day is never
    judged missed before their own local midnight.
    """
    store = GoalStore(db, user_id)
    controller = GoalController(
        store,
        retry_config=retry_config,
        cache=day_plan_cache,
        clock=(lambda: now) if now is not None else None,
    )
    before = store.get_goal(goal_id)
    missed = controller.check_for_missed_day(goal_id)
    after = store.get_goal(goal_id)
    return GoalSyncOutcome(
        advanced=after.current_day > before.current_day,
        flagged=missed is not None and not before.pending_adjustment,
    )


def run_progress_sync_for_all_goals(
    db: Session,
    *,
    now: Optional[datetime] = None,
    goal_refs: Optional[Iterable[Tuple[str, UUID]]] = None,
    retry_config: Optional[RetryConfig] = None,
) -> JobRunResult:
    refs: List[Tuple[str, UUID]] = list(goal_refs) if goal_refs is not None else list_goal_refs(db)
    result = JobRunResult(goals_processed=0, days_advanced=0, missed_days_flagged=0)
    for user_id, goal_id in refs:
        try:
            outcome = run_progress_sync_for_goal(db, user_id, goal_id, now=now, retry_config=retry_config)
        except GoalError as exc:
            result.failures += 1
            logger.error("Progress sync failed for goal %s (user %s): %s", goal_id, user_id, exc.message)
            continue
        result.goals_processed += 1
        if outcome.advanced:
            result.days_advanced += 1
        if outcome.flagged:
            result.missed_days_flagged += 1

    log_metric(
        "jobs.progress_sync.goals",
        result.goals_processed,
        metadata={"advanced": result.days_advanced, "flagged": result.missed_days_flagged, "failures": result.failures},
    )
    return result
