"""Orchestration of goal intents on top of the progress engine and the store.

The controller keeps an explicit local view (``goals_state`` / ``day_state``) that
it updates optimistically, persists through the store with retry, and rolls back
by re-emitting the previous value when a write fails.
"""
from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Hashable, List, Optional, Tuple, TypeVar, Union
from uuid import UUID

from app.core.config import settings
from app.core.errors import GoalError, GoalValidationError, OperationCancelledError, PendingAdjustmentError
from app.core.retry import RetryConfig, with_retry
from app.observability.metrics import log_metric
from app.services.day_progress import (
    DayPlanSnapshot,
    GoalSnapshot,
    SkipAction,
    TimezoneLike,
    calculate_current_day,
    find_missed_day,
    mark_day_completed,
    parse_action,
    plan_resolution,
    resolve_timezone,
    should_advance,
    timezone_name,
    toggle_task,
)
from app.services.goal_store import GoalStore
from app.services.inflight import InFlightGuard
from app.services.roadmap_generator import (
    RoadmapGenerator,
    get_roadmap_generator,
    normalize_roadmap,
    validate_days,
)
from app.services.task_redistributor import LocalTaskRedistributor, TaskRedistributor
from app.services.view_state import LOADING, Error, Success, ViewState

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class TodayView:
    goal: GoalSnapshot
    today: int
    day_plan: Optional[DayPlanSnapshot]
    missed_day: Optional[int]


class DayPlanCache:
    """Bounded LRU map of a goal key to the last day plan loaded for it.

    Keys are opaque; controllers use ``(user_id, goal_id)``. Advisory only: any
    write path that touches a goal must invalidate its entry.
    """

    def __init__(self, max_size: int) -> None:
        self.max_size = max(1, max_size)
        self._entries: "OrderedDict[Hashable, DayPlanSnapshot]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: Hashable, day: int) -> Optional[DayPlanSnapshot]:
        with self._lock:
            plan = self._entries.get(key)
            if plan is None or plan.day != day:
                return None
            self._entries.move_to_end(key)
            return plan

    def put(self, key: Hashable, plan: DayPlanSnapshot) -> None:
        with self._lock:
            self._entries[key] = plan
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# Shared across requests so cached plans outlive a single controller.
day_plan_cache = DayPlanCache(settings.day_plan_cache_size)


class GoalController:
    def __init__(
        self,
        store: GoalStore,
        *,
        generator: Optional[RoadmapGenerator] = None,
        redistributor: Optional[TaskRedistributor] = None,
        guard: Optional[InFlightGuard] = None,
        guard_key: Optional[Hashable] = None,
        retry_config: Optional[RetryConfig] = None,
        tz: TimezoneLike = None,
        clock: Optional[Callable[[], datetime]] = None,
        cache: Optional[DayPlanCache] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.store = store
        self._generator = generator
        self.redistributor = redistributor or LocalTaskRedistributor()
        self.guard = guard or InFlightGuard()
        self.guard_key = guard_key if guard_key is not None else ("generate", store.user_id)
        self.retry_config = retry_config or RetryConfig.from_settings()
        self.tz = resolve_timezone(tz)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.cache = cache if cache is not None else DayPlanCache(settings.day_plan_cache_size)
        self.cancel_event = cancel_event or threading.Event()

        self.goals_state: ViewState = LOADING
        self.day_state: ViewState = LOADING
        self.last_error: Optional[Error] = None

    @property
    def generator(self) -> RoadmapGenerator:
        if self._generator is None:
            self._generator = get_roadmap_generator()
        return self._generator

    def cancel(self) -> None:
        """Abandon in-flight retries; later calls fail with ``OperationCancelledError``."""
        self.cancel_event.set()

    def today_for(self, goal: GoalSnapshot) -> int:
        """Calendar day of ``goal`` in the zone stored on it, else the controller's zone."""
        zone = goal.timezone or self.tz
        return calculate_current_day(goal.created_at_ms, goal.duration_days, now=self.clock(), tz=zone)

    # ------------------------------------------------------------------ reads

    def load_goals(self) -> List[GoalSnapshot]:
        self.goals_state = LOADING
        try:
            goals = self._retry(self.store.list_goals, "list_goals")
        except GoalError as exc:
            self.goals_state = self._error(exc)
            raise
        self.goals_state = Success(goals)
        return goals

    def get_roadmap(self, goal_id: UUID) -> List[DayPlanSnapshot]:
        days = self._retry(lambda: self.store.get_day_plans(goal_id), "get_day_plans")
        return [days[day] for day in sorted(days)]

    def is_adjustment_pending(self, goal_id: UUID) -> bool:
        return self._retry(lambda: self.store.get_goal(goal_id), "get_goal").pending_adjustment

    # ---------------------------------------------------------- reconciliation

    def sync_current_day(self, goal_id: UUID) -> GoalSnapshot:
        """Advance the stored day pointer to the calendar day if it lags behind.

        Only moves the pointer; judging whether skipped-over days were finished is
        left to :meth:`check_for_missed_day`.
        """
        goal = self._retry(lambda: self.store.get_goal(goal_id), "get_goal")
        today = self.today_for(goal)
        if should_advance(goal, today):
            goal = self._retry(lambda: self.store.advance_current_day(goal_id, today), "advance_current_day")
            self.cache.invalidate(self._cache_key(goal_id))
        return goal

    def check_for_missed_day(self, goal_id: UUID) -> Optional[int]:
        return self._reconcile(goal_id)[1]

    def _reconcile(self, goal_id: UUID) -> Tuple[GoalSnapshot, Optional[int]]:
        goal = self.sync_current_day(goal_id)
        if goal.pending_adjustment:
            return goal, goal.last_missed_day

        days = self._retry(lambda: self.store.get_day_plans(goal_id), "get_day_plans")
        missed = find_missed_day(goal, days, self.today_for(goal))
        if missed is None:
            return goal, None

        goal = self._retry(lambda: self.store.mark_missed_day(goal_id, missed), "mark_missed_day")
        self.cache.invalidate(self._cache_key(goal_id))
        log_metric("goal.missed_day.flagged", 1, metadata={"goal_id": str(goal_id), "day": goal.last_missed_day})
        return goal, goal.last_missed_day

    def load_today(self, goal_id: UUID) -> TodayView:
        """Sync with the calendar, detect a missed day and load today's plan."""
        self.day_state = LOADING
        try:
            goal, missed = self._reconcile(goal_id)
            today = self.today_for(goal)
            plan = self.cache.get(self._cache_key(goal_id), today)
            if plan is None:
                plan = self._retry(lambda: self.store.get_day_plan(goal_id, today), "get_day_plan")
                if plan is not None:
                    self.cache.put(self._cache_key(goal_id), plan)
        except GoalError as exc:
            self.day_state = self._error(exc)
            raise
        view = TodayView(goal=goal, today=today, day_plan=plan, missed_day=missed)
        self.day_state = Success(view)
        return view

    # -------------------------------------------------------------- mutations

    def toggle_task(self, goal_id: UUID, index: int) -> DayPlanSnapshot:
        """Flip one task on the calendar day, optimistically.

        The target day is resolved from the clock at call time, not from what is
        currently displayed.
        """
        goal = self._retry(lambda: self.store.get_goal(goal_id), "get_goal")
        if goal.pending_adjustment:
            raise PendingAdjustmentError(goal.last_missed_day)
        today = self.today_for(goal)

        previous_state = self.day_state
        local = self._local_plan(goal_id, today)
        if local is not None:
            self._emit_day(goal, today, toggle_task(local, index))

        try:
            updated = self._retry(
                lambda: self.store.update_day(goal_id, today, lambda plan: toggle_task(plan, index)),
                "toggle_task",
            )
        except (GoalError, OperationCancelledError) as exc:
            self.day_state = previous_state
            if isinstance(exc, GoalError):
                self.last_error = self._error(exc)
                logger.warning("Toggle of task %s on goal %s rolled back: %s", index, goal_id, exc.message)
            raise

        self.cache.put(self._cache_key(goal_id), updated)
        self._emit_day(goal, today, updated)
        return updated

    def complete_day(self, goal_id: UUID) -> GoalSnapshot:
        """Complete the day at ``current_day`` and advance the pointer.

        The local view advances first. A failure is surfaced as an error state and
        is not reverted silently.
        """
        goal = self._retry(lambda: self.store.get_goal(goal_id), "get_goal")
        if goal.pending_adjustment:
            raise PendingAdjustmentError(goal.last_missed_day)
        expected_day = goal.current_day

        view = self._current_view(goal_id)
        if view is not None:
            plan = view.day_plan
            if plan is not None and plan.day == expected_day:
                plan = mark_day_completed(plan)
            advanced = replace(goal, current_day=min(expected_day + 1, goal.duration_days))
            self.day_state = Success(replace(view, goal=advanced, day_plan=plan))

        try:
            updated = self._retry(lambda: self.store.complete_day(goal_id, expected_day), "complete_day")
        except GoalError as exc:
            logger.error("Completing day %s of goal %s failed: %s", expected_day, goal_id, exc.message)
            self.day_state = self._error(exc)
            self.last_error = self.day_state
            raise
        finally:
            self.cache.invalidate(self._cache_key(goal_id))

        if view is not None:
            current = self._current_view(goal_id)
            if current is not None:
                self.day_state = Success(replace(current, goal=updated))
        log_metric("goal.day.completed", 1, metadata={"goal_id": str(goal_id), "day": expected_day})
        return updated

    def resolve_skip_action(self, goal_id: UUID, action: Union[SkipAction, str]) -> Tuple[GoalSnapshot, bool]:
        """Apply SKIP / MARK_COMPLETED / ADJUST_ROADMAP (or legacy EXTEND).

        Returns ``(goal, applied)``; nothing is written when no missed day is
        pending. A lost compare-and-swap re-reads and re-plans via retry.
        """
        resolved_action = parse_action(action)

        def attempt() -> Tuple[GoalSnapshot, bool]:
            goal, days = self.store.get_goal_with_days(goal_id)
            today = self.today_for(goal)
            if should_advance(goal, today):
                goal = self.store.advance_current_day(goal_id, today)
            plan = plan_resolution(
                goal,
                days,
                resolved_action,
                redistribute=self.redistributor.redistribute,
                max_per_day=settings.max_tasks_per_day,
                extend_days=settings.extend_days,
            )
            if plan.is_noop:
                return goal, False
            if plan.dropped_tasks:
                logger.warning(
                    "Redistribution for goal %s dropped %d task(s) beyond capacity",
                    goal_id,
                    plan.dropped_tasks,
                )
            return self.store.apply_resolution(goal_id, plan)

        try:
            goal, applied = self._retry(attempt, "resolve_skip_action")
        finally:
            self.cache.invalidate(self._cache_key(goal_id))

        if self._current_view(goal_id) is not None:
            self.day_state = LOADING
        log_metric(
            "goal.missed_day.resolved",
            1 if applied else 0,
            metadata={"goal_id": str(goal_id), "action": resolved_action.value},
        )
        return goal, applied

    def generate_goal_with_roadmap(self, title: str, days: int) -> Optional[GoalSnapshot]:
        """Generate a roadmap and persist it as a new goal.

        Returns ``None`` when another generation is already in flight for this
        context; the duplicate is dropped, not queued.
        """
        cleaned_title = (title or "").strip()
        if not cleaned_title:
            raise GoalValidationError("Title cannot be blank")
        day_count = validate_days(days)
        self.store.require_user()

        with self.guard.hold(self.guard_key) as acquired:
            if not acquired:
                return None
            try:
                roadmap = self._retry(lambda: self.generator.generate(cleaned_title, day_count), "generate_roadmap")
                duration, roadmap_days = normalize_roadmap(roadmap)
                created_at_ms = int(self.clock().timestamp() * 1000)
                # Not retried: a repeated create could leave two goals behind.
                goal = self.store.create_goal(
                    title=cleaned_title,
                    duration_days=duration,
                    days=roadmap_days,
                    created_at_ms=created_at_ms,
                    timezone=timezone_name(self.tz),
                )
            except GoalError as exc:
                self.last_error = self._error(exc)
                raise

        if isinstance(self.goals_state, Success):
            self.goals_state = Success([goal, *self.goals_state.data])
        log_metric("goal.generated", 1, metadata={"duration_days": goal.duration_days})
        return goal

    def delete_goal(self, goal_id: UUID) -> None:
        self.store.delete_goal(goal_id)
        self.cache.invalidate(self._cache_key(goal_id))
        if isinstance(self.goals_state, Success):
            self.goals_state = Success([goal for goal in self.goals_state.data if goal.id != goal_id])
        if self._current_view(goal_id) is not None:
            self.day_state = LOADING

    # ---------------------------------------------------------------- helpers

    def _cache_key(self, goal_id: UUID) -> Hashable:
        return (self.store.user_id, goal_id)

    def _retry(self, block: Callable[[], T], operation: str) -> T:
        return with_retry(block, self.retry_config, operation=operation, cancel_event=self.cancel_event)

    def _current_view(self, goal_id: UUID) -> Optional[TodayView]:
        state = self.day_state
        if isinstance(state, Success) and isinstance(state.data, TodayView) and state.data.goal.id == goal_id:
            return state.data
        return None

    def _local_plan(self, goal_id: UUID, day: int) -> Optional[DayPlanSnapshot]:
        view = self._current_view(goal_id)
        if view is not None and view.day_plan is not None and view.day_plan.day == day:
            return view.day_plan
        return self.cache.get(self._cache_key(goal_id), day)

    def _emit_day(self, goal: GoalSnapshot, today: int, plan: DayPlanSnapshot) -> None:
        view = self._current_view(goal.id)
        if view is None:
            self.day_state = Success(TodayView(goal=goal, today=today, day_plan=plan, missed_day=None))
        else:
            self.day_state = Success(replace(view, today=today, day_plan=plan))

    @staticmethod
    def _error(exc: GoalError) -> Error:
        return Error(message=exc.message, error=exc, retryable=exc.retryable)
