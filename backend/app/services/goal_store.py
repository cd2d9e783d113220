"""Per-user persistence of goals and their day plans."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.errors import (
    ConcurrentModificationError,
    GoalNotFoundError,
    NotAuthenticatedError,
    classify_exception,
)
from app.db.models.day_plan import DayPlan
from app.db.models.goal import Goal
from app.services.day_progress import (
    DayPlanSnapshot,
    DayStatus,
    DayWrite,
    GoalSnapshot,
    ResolutionPlan,
    RoadmapDay,
    timezone_name,
)

logger = logging.getLogger(__name__)


class GoalStore:
    """Keyed document access to one user's goals.

    Every method fails fast with ``NotAuthenticatedError`` when no user is bound.
    Mutations run in a single transaction with the touched rows locked (where the
    dialect supports it) and versioned, so concurrent writers cannot lose updates.
    Raw SQLAlchemy errors are translated into the shared error taxonomy.
    """

    def __init__(self, db: Session, user_id: Optional[str]) -> None:
        self.db = db
        self.user_id = user_id

    # ------------------------------------------------------------------ reads

    def list_goals(self) -> List[GoalSnapshot]:
        user_id = self.require_user()
        with self._transaction():
            rows = (
                self.db.query(Goal)
                .filter(Goal.user_id == user_id)
                .order_by(Goal.created_at_ms.desc())
                .all()
            )
            return [_goal_snapshot(row) for row in rows]

    def get_goal(self, goal_id: UUID) -> GoalSnapshot:
        self.require_user()
        with self._transaction():
            return _goal_snapshot(self._load_goal(goal_id))

    def get_day_plans(self, goal_id: UUID) -> Dict[int, DayPlanSnapshot]:
        self.require_user()
        with self._transaction():
            self._load_goal(goal_id)
            return {row.day_number: _day_snapshot(row) for row in self._load_days(goal_id)}

    def get_day_plan(self, goal_id: UUID, day: int) -> Optional[DayPlanSnapshot]:
        self.require_user()
        with self._transaction():
            self._load_goal(goal_id)
            row = self._load_day(goal_id, day)
            return _day_snapshot(row) if row is not None else None

    def get_goal_with_days(self, goal_id: UUID) -> Tuple[GoalSnapshot, Dict[int, DayPlanSnapshot]]:
        self.require_user()
        with self._transaction():
            goal = _goal_snapshot(self._load_goal(goal_id))
            days = {row.day_number: _day_snapshot(row) for row in self._load_days(goal_id)}
            return goal, days

    # -------------------------------------------------------------- mutations

    def create_goal(
        self,
        *,
        title: str,
        duration_days: int,
        days: Sequence[RoadmapDay],
        created_at_ms: int,
        timezone: Optional[str] = None,
    ) -> GoalSnapshot:
        """Persist a goal and all of its day plans atomically.

        ``timezone`` pins the zone the goal's days are counted in; it defaults to
        the configured day boundary zone.
        """
        user_id = self.require_user()
        zone = timezone_name(timezone)
        with self._transaction():
            goal = Goal(
                user_id=user_id,
                title=title,
                duration_days=duration_days,
                current_day=1,
                created_at_ms=created_at_ms,
                timezone=zone,
                pending_adjustment=False,
                last_missed_day=None,
            )
            self.db.add(goal)
            self.db.flush()
            for day in days:
                self.db.add(
                    DayPlan(
                        goal_id=goal.id,
                        day_number=day.day,
                        tasks=list(day.tasks),
                        completed=[False] * len(day.tasks),
                        status=DayStatus.PENDING.value,
                    )
                )
            self.db.flush()
            snapshot = _goal_snapshot(goal)
        logger.info("Created goal %s with %d day plans", snapshot.id, len(days))
        return snapshot

    def advance_current_day(self, goal_id: UUID, day: int) -> GoalSnapshot:
        """Move the stored pointer forward to ``day``; never moves it back."""
        self.require_user()
        with self._transaction():
            goal = self._load_goal(goal_id, lock=True)
            if day > goal.current_day:
                logger.debug("Advancing goal %s from day %s to %s", goal_id, goal.current_day, day)
                goal.current_day = day
                self.db.flush()
            return _goal_snapshot(goal)

    def mark_missed_day(self, goal_id: UUID, day: int) -> GoalSnapshot:
        """Enter the pending-adjustment state unless a decision is already outstanding."""
        self.require_user()
        with self._transaction():
            goal = self._load_goal(goal_id, lock=True)
            if not goal.pending_adjustment:
                goal.pending_adjustment = True
                goal.last_missed_day = day
                self.db.flush()
                logger.info("Goal %s flagged missed day %s", goal_id, day)
            return _goal_snapshot(goal)

    def update_day(
        self,
        goal_id: UUID,
        day: int,
        mutate: Callable[[DayPlanSnapshot], DayPlanSnapshot],
    ) -> DayPlanSnapshot:
        """Atomic read-modify-write of a single day record."""
        self.require_user()
        with self._transaction():
            self._load_goal(goal_id)
            row = self._load_day(goal_id, day, lock=True)
            if row is None:
                raise GoalNotFoundError(f"Day {day} does not exist for this goal.")
            updated = mutate(_day_snapshot(row))
            _write_day(row, DayWrite(day, updated.descriptions, updated.completed_flags, updated.status))
            self.db.flush()
            return _day_snapshot(row)

    def complete_day(self, goal_id: UUID, expected_day: int) -> GoalSnapshot:
        """Mark ``expected_day`` completed and advance the pointer past it.

        Both fields change in one transaction. If the stored pointer is no longer
        ``expected_day`` the call is a no-op, so a retried request cannot advance twice.
        """
        self.require_user()
        with self._transaction():
            goal = self._load_goal(goal_id, lock=True)
            if goal.current_day != expected_day:
                logger.info(
                    "Skipping completion of day %s for goal %s; stored day is %s",
                    expected_day,
                    goal_id,
                    goal.current_day,
                )
                return _goal_snapshot(goal)
            row = self._load_day(goal_id, expected_day, lock=True)
            if row is not None:
                row.status = DayStatus.COMPLETED.value
            goal.current_day = expected_day + 1
            self.db.flush()
            return _goal_snapshot(goal)

    def apply_resolution(self, goal_id: UUID, plan: ResolutionPlan) -> Tuple[GoalSnapshot, bool]:
        """Apply a resolution plan and clear the pending flags in one transaction.

        Returns ``(goal, applied)``. Nothing is written when the goal is no longer
        pending on ``plan.missed_day``; a day changed since the plan was computed
        raises ``ConcurrentModificationError`` so the caller can re-plan.
        """
        self.require_user()
        with self._transaction():
            goal = self._load_goal(goal_id, lock=True)
            if plan.is_noop or not goal.pending_adjustment or goal.last_missed_day != plan.missed_day:
                return _goal_snapshot(goal), False

            rows = {row.day_number: row for row in self._load_days(goal_id, lock=True)}
            for day, version in plan.expected_versions:
                row = rows.get(day)
                if version is not None and row is not None and row.version != version:
                    raise ConcurrentModificationError(f"Day {day} changed while resolving the missed day.")

            for write in plan.writes:
                row = rows.get(write.day)
                if row is None:
                    row = DayPlan(goal_id=goal.id, day_number=write.day)
                    self.db.add(row)
                    rows[write.day] = row
                _write_day(row, write)

            for write in plan.new_days:
                if write.day in rows:
                    continue
                row = DayPlan(goal_id=goal.id, day_number=write.day)
                _write_day(row, write)
                self.db.add(row)
                rows[write.day] = row

            if plan.duration_days is not None:
                goal.duration_days = plan.duration_days
            goal.pending_adjustment = False
            goal.last_missed_day = None
            self.db.flush()
            snapshot = _goal_snapshot(goal)
        logger.info(
            "Resolved missed day %s on goal %s with %s (%d day writes)",
            plan.missed_day,
            goal_id,
            plan.action.value,
            len(plan.writes) + len(plan.new_days),
        )
        return snapshot, True

    def delete_goal(self, goal_id: UUID) -> None:
        self.require_user()
        with self._transaction():
            goal = self._load_goal(goal_id, lock=True)
            self.db.delete(goal)
        logger.info("Deleted goal %s", goal_id)

    # ---------------------------------------------------------------- helpers

    def require_user(self) -> str:
        if not self.user_id:
            raise NotAuthenticatedError()
        return self.user_id

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        try:
            yield
            self.db.commit()
        except Exception as exc:
            self.db.rollback()
            classified = classify_exception(exc)
            if classified is exc:
                raise
            raise classified from exc

    def _load_goal(self, goal_id: UUID, *, lock: bool = False) -> Goal:
        query = self.db.query(Goal).filter(Goal.id == goal_id, Goal.user_id == self.user_id)
        if lock:
            query = query.with_for_update()
        goal = query.populate_existing().one_or_none()
        if goal is None:
            raise GoalNotFoundError()
        return goal

    def _load_days(self, goal_id: UUID, *, lock: bool = False) -> List[DayPlan]:
        query = self.db.query(DayPlan).filter(DayPlan.goal_id == goal_id).order_by(DayPlan.day_number.asc())
        if lock:
            query = query.with_for_update()
        return query.populate_existing().all()

    def _load_day(self, goal_id: UUID, day: int, *, lock: bool = False) -> Optional[DayPlan]:
        query = self.db.query(DayPlan).filter(DayPlan.goal_id == goal_id, DayPlan.day_number == day)
        if lock:
            query = query.with_for_update()
        return query.populate_existing().one_or_none()


def list_goal_refs(db: Session) -> List[Tuple[str, UUID]]:
    """(user id, goal id) for every stored goal, for batch jobs."""
    rows = db.query(Goal.user_id, Goal.id).order_by(Goal.created_at_ms.asc()).all()
    return [(row[0], row[1]) for row in rows]


def _write_day(row: DayPlan, write: DayWrite) -> None:
    # Reassign the lists so the JSON columns are flagged dirty.
    row.tasks = list(write.tasks)
    row.completed = list(write.completed)
    row.status = write.status


def _goal_snapshot(row: Goal) -> GoalSnapshot:
    # Completing the last day leaves current_day one past the end; reads clamp it.
    duration = max(1, row.duration_days)
    return GoalSnapshot(
        id=row.id,
        title=row.title,
        duration_days=row.duration_days,
        current_day=max(1, min(row.current_day, duration)),
        created_at_ms=row.created_at_ms,
        pending_adjustment=bool(row.pending_adjustment),
        last_missed_day=row.last_missed_day if row.pending_adjustment else None,
        version=row.version,
        timezone=row.timezone,
    )


def _day_snapshot(row: DayPlan) -> DayPlanSnapshot:
    return DayPlanSnapshot.from_arrays(
        day=row.day_number,
        tasks=row.tasks,
        completed=row.completed,
        status=row.status,
        version=row.version,
    )
