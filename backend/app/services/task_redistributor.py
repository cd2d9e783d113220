"""Task redistribution collaborators used by ADJUST_ROADMAP."""
from __future__ import annotations

import logging
from collections import Counter
from typing import List, Optional, Protocol, Sequence

from app.core.config import settings
from app.core.errors import GenerationFailedError, GoalError, OperationCancelledError
from app.core.retry import RetryConfig, with_retry
from app.services.day_progress import RoadmapDay, redistribute_tasks

logger = logging.getLogger(__name__)


class TaskRedistributor(Protocol):
    def redistribute(
        self,
        remaining_days: Sequence[RoadmapDay],
        incomplete_tasks: Sequence[str],
        total_remaining_days: int,
    ) -> List[RoadmapDay]:
        ...


class LocalTaskRedistributor:
    """Deterministic packing: existing tasks then carried-over ones, capped per day."""

    def __init__(self, max_per_day: Optional[int] = None) -> None:
        self.max_per_day = max_per_day or settings.max_tasks_per_day

    def redistribute(
        self,
        remaining_days: Sequence[RoadmapDay],
        incomplete_tasks: Sequence[str],
        total_remaining_days: int,
    ) -> List[RoadmapDay]:
        days = list(remaining_days)[: max(total_remaining_days, 0)]
        return redistribute_tasks(days, incomplete_tasks, max_per_day=self.max_per_day)


class FallbackTaskRedistributor:
    """Delegate to another redistributor and fall back to local packing on failure.

    The delegate's answer is only accepted if it stays within the day range and
    the per-day cap and does not invent tasks; otherwise the local result is used.
    """

    def __init__(
        self,
        delegate: TaskRedistributor,
        *,
        local: Optional[LocalTaskRedistributor] = None,
        retry_config: Optional[RetryConfig] = None,
    ) -> None:
        self.delegate = delegate
        self.local = local or LocalTaskRedistributor()
        self.retry_config = retry_config

    def redistribute(
        self,
        remaining_days: Sequence[RoadmapDay],
        incomplete_tasks: Sequence[str],
        total_remaining_days: int,
    ) -> List[RoadmapDay]:
        try:
            result = with_retry(
                lambda: self.delegate.redistribute(remaining_days, incomplete_tasks, total_remaining_days),
                self.retry_config,
                operation="redistribute_tasks",
            )
            _check_result(result, remaining_days, incomplete_tasks, self.local.max_per_day)
            return list(result)
        except OperationCancelledError:
            raise
        except GoalError as exc:
            logger.warning("Delegated redistribution failed, using local packing: %s", exc.message)
        return self.local.redistribute(remaining_days, incomplete_tasks, total_remaining_days)


def _check_result(
    result: Sequence[RoadmapDay],
    remaining_days: Sequence[RoadmapDay],
    incomplete_tasks: Sequence[str],
    max_per_day: int,
) -> None:
    allowed_days = {day.day for day in remaining_days}
    available = Counter(task for day in remaining_days for task in day.tasks)
    available.update(incomplete_tasks)
    placed: Counter = Counter()
    for day in result:
        if day.day not in allowed_days:
            raise GenerationFailedError(f"Redistribution returned unknown day {day.day}")
        if len(day.tasks) > max_per_day:
            raise GenerationFailedError(f"Redistribution put {len(day.tasks)} tasks on day {day.day}")
        placed.update(day.tasks)
    if placed - available:
        raise GenerationFailedError("Redistribution returned tasks that were not supplied")
