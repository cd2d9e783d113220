"""Day progress reconciliation: calendar day, missed days and their resolution.

Everything in this module is pure. Functions take immutable snapshots of a goal
and its day plans and return new snapshots or a :class:`ResolutionPlan`; the
store applies plans and the controller decides when to call what.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from datetime import datetime, timezone, tzinfo
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.core.config import settings
from app.core.errors import DataIntegrityError, GoalValidationError

MAX_TASKS_PER_DAY = 4
EXTEND_DAYS = 3


class DayStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"  # reserved, never written by this module
    COMPLETED = "completed"
    SKIPPED = "skipped"


RESOLVED_STATUSES = frozenset({DayStatus.COMPLETED.value, DayStatus.SKIPPED.value})


class SkipAction(str, enum.Enum):
    SKIP = "SKIP"
    MARK_COMPLETED = "MARK_COMPLETED"
    ADJUST_ROADMAP = "ADJUST_ROADMAP"
    EXTEND = "EXTEND"  # legacy: adds days, moves nothing


@dataclass(frozen=True)
class TaskItem:
    description: str
    is_completed: bool = False


@dataclass(frozen=True)
class DayPlanSnapshot:
    day: int
    tasks: Tuple[TaskItem, ...] = ()
    status: str = DayStatus.PENDING.value
    version: Optional[int] = None

    @classmethod
    def from_arrays(
        cls,
        day: int,
        tasks: Sequence,
        completed: Sequence,
        status: str = DayStatus.PENDING.value,
        version: Optional[int] = None,
    ) -> "DayPlanSnapshot":
        """Build a snapshot from the stored parallel arrays, rejecting corrupt rows."""
        if not isinstance(tasks, (list, tuple)) or not isinstance(completed, (list, tuple)):
            raise DataIntegrityError(f"Day {day} has malformed task arrays.")
        if len(tasks) != len(completed):
            raise DataIntegrityError(
                f"Day {day} has {len(tasks)} tasks but {len(completed)} completion flags."
            )
        if not all(isinstance(flag, bool) for flag in completed):
            raise DataIntegrityError(f"Day {day} has non-boolean completion flags.")
        items = tuple(TaskItem(description=str(desc), is_completed=flag) for desc, flag in zip(tasks, completed))
        return cls(day=day, tasks=items, status=status, version=version)

    @property
    def descriptions(self) -> Tuple[str, ...]:
        return tuple(task.description for task in self.tasks)

    @property
    def completed_flags(self) -> Tuple[bool, ...]:
        return tuple(task.is_completed for task in self.tasks)

    def has_incomplete_tasks(self) -> bool:
        return any(not task.is_completed for task in self.tasks)


@dataclass(frozen=True)
class GoalSnapshot:
    id: UUID
    title: str
    duration_days: int
    current_day: int
    created_at_ms: int
    pending_adjustment: bool = False
    last_missed_day: Optional[int] = None
    version: Optional[int] = None
    # IANA zone whose local midnights delimit this goal's days.
    timezone: Optional[str] = None


@dataclass(frozen=True)
class RoadmapDay:
    day: int
    tasks: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DayWrite:
    """Full replacement of one day record."""

    day: int
    tasks: Tuple[str, ...]
    completed: Tuple[bool, ...]
    status: str


@dataclass(frozen=True)
class ResolutionPlan:
    action: SkipAction
    missed_day: Optional[int]
    writes: Tuple[DayWrite, ...] = ()
    new_days: Tuple[DayWrite, ...] = ()
    duration_days: Optional[int] = None
    # (day, version) pairs the plan was computed from; the store refuses stale ones.
    expected_versions: Tuple[Tuple[int, Optional[int]], ...] = ()
    incomplete_tasks: int = 0
    dropped_tasks: int = 0

    @property
    def is_noop(self) -> bool:
        return self.missed_day is None


Redistribute = Callable[[Sequence[RoadmapDay], Sequence[str], int], Sequence[RoadmapDay]]
TimezoneLike = Union[str, tzinfo, None]


def resolve_timezone(tz: TimezoneLike = None) -> tzinfo:
    """Return the zone whose local midnights delimit goal days."""
    if isinstance(tz, tzinfo):
        return tz
    name = tz or settings.day_boundary_timezone
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise GoalValidationError(f"Unknown timezone '{name}'.") from exc


def timezone_name(tz: TimezoneLike = None) -> str:
    """IANA name of ``tz`` for storage; zones without a key fall back to the default."""
    zone = resolve_timezone(tz)
    return getattr(zone, "key", None) or settings.day_boundary_timezone


def calculate_current_day(
    created_at_ms: int,
    duration_days: int,
    *,
    now: Optional[datetime] = None,
    tz: TimezoneLike = None,
) -> int:
    """Calendar day the goal is on, counting local midnights since creation.

    The creation day is day 1 and the result is clamped to ``[1, duration_days]``.
    A naive ``now`` is read as wall-clock time in ``tz``.
    """
    zone = resolve_timezone(tz)
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=zone)
    start_date = datetime.fromtimestamp(created_at_ms / 1000, tz=zone).date()
    today = current.astimezone(zone).date()
    elapsed_days = (today - start_date).days
    return max(1, min(elapsed_days + 1, duration_days))


def should_advance(goal: GoalSnapshot, today: int) -> bool:
    return today > goal.current_day


def find_missed_day(goal: GoalSnapshot, day_plans: Mapping[int, DayPlanSnapshot], today: int) -> Optional[int]:
    """Earliest day that elapsed without being resolved, or ``None``.

    While an adjustment is pending the stored day is returned unchanged. Otherwise
    the backlog ``1 .. current_day - 1`` is scanned for an unresolved day with an
    unfinished task; failing that, ``current_day`` itself counts as missed once
    the calendar has moved past it without the day being resolved. Resolved means
    completed or skipped, so a day already skipped is never flagged again.
    """
    if goal.pending_adjustment:
        return goal.last_missed_day

    for day in range(1, goal.current_day):
        plan = day_plans.get(day)
        if plan is None or plan.status in RESOLVED_STATUSES:
            continue
        if plan.has_incomplete_tasks():
            return day

    if today > goal.current_day:
        plan = day_plans.get(goal.current_day)
        status = plan.status if plan is not None else DayStatus.PENDING.value
        if status not in RESOLVED_STATUSES:
            return goal.current_day

    return None


def collect_incomplete_tasks(
    day_plans: Mapping[int, DayPlanSnapshot],
    from_day: int,
    until_day: int,
) -> List[str]:
    """Unfinished task descriptions from unresolved days in ``[from_day, until_day)``."""
    collected: List[str] = []
    for day in range(from_day, until_day):
        plan = day_plans.get(day)
        if plan is None or plan.status in RESOLVED_STATUSES:
            continue
        collected.extend(task.description for task in plan.tasks if not task.is_completed)
    return collected


def redistribute_tasks(
    remaining_days: Sequence[RoadmapDay],
    incomplete_tasks: Sequence[str],
    *,
    max_per_day: int = MAX_TASKS_PER_DAY,
) -> List[RoadmapDay]:
    """Re-deal existing and carried-over tasks across the remaining days.

    Existing tasks come first, carried-over tasks after them, all in order. Days
    are filled front to back with at most ``max_per_day`` tasks; any overflow goes
    round-robin into days with room, and whatever exceeds total capacity is
    dropped. Every remaining day is returned, emptied ones with no tasks.
    """
    if not remaining_days:
        return []

    queue: List[str] = [task for day in remaining_days for task in day.tasks]
    queue.extend(incomplete_tasks)

    buckets: List[List[str]] = [[] for _ in remaining_days]
    position = 0
    for bucket in buckets:
        chunk = queue[position:position + max_per_day]
        bucket.extend(chunk)
        position += len(chunk)

    overflow = queue[position:]
    while overflow:
        open_buckets = [bucket for bucket in buckets if len(bucket) < max_per_day]
        if not open_buckets:
            break
        for bucket in open_buckets:
            if not overflow:
                break
            bucket.append(overflow.pop(0))

    return [RoadmapDay(day=day.day, tasks=tuple(bucket)) for day, bucket in zip(remaining_days, buckets)]


def plan_resolution(
    goal: GoalSnapshot,
    day_plans: Mapping[int, DayPlanSnapshot],
    action: Union[SkipAction, str],
    *,
    redistribute: Optional[Redistribute] = None,
    max_per_day: int = MAX_TASKS_PER_DAY,
    extend_days: int = EXTEND_DAYS,
) -> ResolutionPlan:
    """Decide the writes that resolve the goal's pending missed day.

    Returns a no-op plan when nothing is pending, which makes repeating a
    resolution harmless. Clearing the pending flags is implied by every non-noop
    plan and is applied by the store in the same transaction as the writes.
    """
    action = parse_action(action)
    if not goal.pending_adjustment or goal.last_missed_day is None:
        return ResolutionPlan(action=action, missed_day=None)

    missed = goal.last_missed_day
    missed_plan = day_plans.get(missed)

    if action is SkipAction.SKIP:
        writes: Tuple[DayWrite, ...] = ()
        if missed_plan is not None:
            writes = (
                DayWrite(missed, missed_plan.descriptions, missed_plan.completed_flags, DayStatus.SKIPPED.value),
            )
        return ResolutionPlan(action, missed, writes=writes, expected_versions=_versions(day_plans, writes))

    if action is SkipAction.MARK_COMPLETED:
        writes = ()
        if missed_plan is not None:
            writes = (
                DayWrite(
                    missed,
                    missed_plan.descriptions,
                    tuple(True for _ in missed_plan.tasks),
                    DayStatus.COMPLETED.value,
                ),
            )
        return ResolutionPlan(action, missed, writes=writes, expected_versions=_versions(day_plans, writes))

    if action is SkipAction.EXTEND:
        new_days = tuple(
            DayWrite(day, (), (), DayStatus.PENDING.value)
            for day in range(goal.duration_days + 1, goal.duration_days + extend_days + 1)
        )
        return ResolutionPlan(action, missed, new_days=new_days, duration_days=goal.duration_days + extend_days)

    return _plan_adjustment(goal, day_plans, missed, redistribute, max_per_day)


def _plan_adjustment(
    goal: GoalSnapshot,
    day_plans: Mapping[int, DayPlanSnapshot],
    missed: int,
    redistribute: Optional[Redistribute],
    max_per_day: int,
) -> ResolutionPlan:
    """Re-deal unfinished work from ``[missed, current_day)`` over the remaining days.

    Source days are marked skipped afterwards, except days already completed,
    which keep their status.
    """
    # A missed day detected at current_day (calendar not synced yet) still needs
    # a non-empty source range.
    current = max(goal.current_day, missed + 1)
    incomplete = collect_incomplete_tasks(day_plans, missed, current)
    if not incomplete:
        return ResolutionPlan(SkipAction.ADJUST_ROADMAP, missed)

    remaining = [
        RoadmapDay(day=day, tasks=day_plans[day].descriptions if day in day_plans else ())
        for day in range(current, goal.duration_days + 1)
    ]
    if redistribute is None:
        dealt = redistribute_tasks(remaining, incomplete, max_per_day=max_per_day)
    else:
        dealt = redistribute(remaining, incomplete, len(remaining))
    dealt_by_day: Dict[int, Tuple[str, ...]] = {entry.day: tuple(entry.tasks) for entry in dealt}

    writes: List[DayWrite] = []
    placed = 0
    # Days the re-deal left empty are still written, as empty lists; skipping them
    # would keep their old tasks next to the copies dealt elsewhere.
    for day in remaining:
        tasks = dealt_by_day.get(day.day, ())
        placed += len(tasks)
        writes.append(DayWrite(day.day, tasks, tuple(False for _ in tasks), DayStatus.PENDING.value))

    for day in range(missed, current):
        plan = day_plans.get(day)
        if plan is None or plan.status == DayStatus.COMPLETED.value:
            continue
        writes.append(DayWrite(day, plan.descriptions, plan.completed_flags, DayStatus.SKIPPED.value))

    total = sum(len(day.tasks) for day in remaining) + len(incomplete)
    frozen_writes = tuple(writes)
    return ResolutionPlan(
        SkipAction.ADJUST_ROADMAP,
        missed,
        writes=frozen_writes,
        expected_versions=_versions(day_plans, frozen_writes),
        incomplete_tasks=len(incomplete),
        dropped_tasks=max(0, total - placed),
    )


def toggle_task(plan: DayPlanSnapshot, index: int) -> DayPlanSnapshot:
    """Flip one task's completion flag."""
    if index < 0 or index >= len(plan.tasks):
        raise DataIntegrityError(f"Task index {index} is out of range for day {plan.day}.")
    tasks = list(plan.tasks)
    tasks[index] = replace(tasks[index], is_completed=not tasks[index].is_completed)
    return replace(plan, tasks=tuple(tasks))


def mark_day_completed(plan: DayPlanSnapshot) -> DayPlanSnapshot:
    return replace(plan, status=DayStatus.COMPLETED.value)


def parse_action(action: Union[SkipAction, str]) -> SkipAction:
    if isinstance(action, SkipAction):
        return action
    try:
        return SkipAction(str(action).strip().upper())
    except ValueError as exc:
        raise GoalValidationError(f"Unknown resolution action '{action}'.") from exc


def _versions(day_plans: Mapping[int, DayPlanSnapshot], writes: Sequence[DayWrite]) -> Tuple[Tuple[int, Optional[int]], ...]:
    return tuple(
        (write.day, day_plans[write.day].version)
        for write in writes
        if write.day in day_plans
    )
