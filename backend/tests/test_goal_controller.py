from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.api.schemas.roadmap import RoadmapPayload
from app.core.errors import (
    ConcurrentModificationError,
    DataIntegrityError,
    GenerationFailedError,
    GoalValidationError,
    NotAuthenticatedError,
    OperationCancelledError,
    PendingAdjustmentError,
    TransientStoreError,
)
from app.core.retry import RetryConfig
from app.db.models.day_plan import DayPlan
from app.db.models.goal import Goal
from app.services.day_progress import DayPlanSnapshot, DayStatus, RoadmapDay, SkipAction
from app.services.goal_controller import DayPlanCache, GoalController, TodayView
from app.services.goal_store import GoalStore
from app.services.inflight import InFlightGuard
from app.services.view_state import Error, Loading, Success

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
FAST_RETRY = RetryConfig(max_attempts=3, initial_delay_ms=0, max_delay_ms=0)


class _FakeGenerator:
    def __init__(self, payload=None, failures=None):
        self.payload = payload or {
            "title": "Run a 5k",
            "durationDays": 3,
            "days": [
                {"day": 1, "tasks": ["Walk 20 minutes", "  "]},
                {"day": 3, "tasks": ["Jog 1 km"]},
                {"day": 9, "tasks": ["Ignored"]},
            ],
        }
        self.failures = list(failures or [])
        self.calls = 0

    def generate(self, goal, days):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return RoadmapPayload.model_validate(self.payload)


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )

    @event.listens_for(engine, "connect")
    def set_fk(conn, record):  # pragma: no cover - sqlite setup
        cursor = conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Goal.__table__.create(bind=engine)
    DayPlan.__table__.create(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def _controller(session_factory, user_id="user-1", **kwargs) -> GoalController:
    kwargs.setdefault("retry_config", FAST_RETRY)
    kwargs.setdefault("clock", lambda: NOW)
    kwargs.setdefault("tz", "UTC")
    return GoalController(GoalStore(session_factory(), user_id), **kwargs)


def _seed_goal(controller: GoalController, *, days_ago: int, duration: int = 5, tasks_per_day: int = 1):
    created_at_ms = int((NOW - timedelta(days=days_ago)).timestamp() * 1000)
    roadmap = [
        RoadmapDay(day, tuple(f"d{day}" if tasks_per_day == 1 else f"d{day}-{i}" for i in range(tasks_per_day)))
        for day in range(1, duration + 1)
    ]
    return controller.store.create_goal(
        title="Learn guitar",
        duration_days=duration,
        days=roadmap,
        created_at_ms=created_at_ms,
    )


def test_generate_goal_normalizes_and_persists(session_factory) -> None:
    generator = _FakeGenerator()
    controller = _controller(session_factory, generator=generator)
    controller.load_goals()

    goal = controller.generate_goal_with_roadmap("  Run a 5k  ", 3)

    assert goal is not None
    assert goal.title == "Run a 5k"
    assert goal.duration_days == 3
    assert goal.created_at_ms == int(NOW.timestamp() * 1000)
    days = controller.get_roadmap(goal.id)
    assert [day.day for day in days] == [1, 2, 3]
    assert days[0].descriptions == ("Walk 20 minutes",)
    assert days[1].descriptions == ()
    assert days[2].descriptions == ("Jog 1 km",)
    assert isinstance(controller.goals_state, Success)
    assert [g.id for g in controller.goals_state.data] == [goal.id]


def test_generate_rejects_blank_title_before_calling_generator(session_factory) -> None:
    generator = _FakeGenerator()
    controller = _controller(session_factory, generator=generator)

    with pytest.raises(GoalValidationError):
        controller.generate_goal_with_roadmap("   ", 3)
    with pytest.raises(GoalValidationError):
        controller.generate_goal_with_roadmap("Run", 0)
    assert generator.calls == 0


def test_generate_requires_authenticated_user(session_factory) -> None:
    generator = _FakeGenerator()
    controller = _controller(session_factory, user_id=None, generator=generator)

    with pytest.raises(NotAuthenticatedError):
        controller.generate_goal_with_roadmap("Run a 5k", 3)
    assert generator.calls == 0


def test_generate_retries_transient_generator_failures(session_factory) -> None:
    generator = _FakeGenerator(failures=[GenerationFailedError("timeout", retryable=True)])
    controller = _controller(session_factory, generator=generator)

    goal = controller.generate_goal_with_roadmap("Run a 5k", 3)

    assert goal is not None
    assert generator.calls == 2


def test_generate_failure_is_surfaced_and_nothing_is_stored(session_factory) -> None:
    generator = _FakeGenerator(failures=[GenerationFailedError("JSON parsing failed")])
    controller = _controller(session_factory, generator=generator)

    with pytest.raises(GenerationFailedError):
        controller.generate_goal_with_roadmap("Run a 5k", 3)

    assert generator.calls == 1
    assert isinstance(controller.last_error, Error)
    assert controller.last_error.message == "JSON parsing failed"
    assert controller.load_goals() == []


def test_duplicate_generation_is_dropped_while_one_is_in_flight(session_factory) -> None:
    entered = threading.Event()
    release = threading.Event()

    class _BlockingGenerator(_FakeGenerator):
        def generate(self, goal, days):
            entered.set()
            release.wait(5)
            return super().generate(goal, days)

    generator = _BlockingGenerator()
    guard = InFlightGuard()
    first = _controller(session_factory, generator=generator, guard=guard)
    second = _controller(session_factory, generator=generator, guard=guard)
    results = {}

    worker = threading.Thread(target=lambda: results.setdefault("first", first.generate_goal_with_roadmap("Run a 5k", 3)))
    worker.start()
    assert entered.wait(5)

    assert second.generate_goal_with_roadmap("Run a 5k", 3) is None

    release.set()
    worker.join(5)
    assert results["first"] is not None
    assert generator.calls == 1
    assert not guard.is_held(first.guard_key)


def test_guard_is_released_after_failure(session_factory) -> None:
    guard = InFlightGuard()
    controller = _controller(
        session_factory,
        generator=_FakeGenerator(failures=[GenerationFailedError("bad")]),
        guard=guard,
    )

    with pytest.raises(GenerationFailedError):
        controller.generate_goal_with_roadmap("Run a 5k", 3)

    assert not guard.is_held(controller.guard_key)
    assert controller.generate_goal_with_roadmap("Run a 5k", 3) is not None


def test_load_today_syncs_day_and_flags_first_missed_day(session_factory) -> None:
    controller = _controller(session_factory)
    goal = _seed_goal(controller, days_ago=2)

    view = controller.load_today(goal.id)

    assert isinstance(controller.day_state, Success)
    assert controller.day_state.data == view
    assert view.today == 3
    assert view.goal.current_day == 3
    assert view.missed_day == 1
    assert view.goal.pending_adjustment is True
    assert view.day_plan.day == 3
    assert controller.is_adjustment_pending(goal.id) is True


def test_missed_day_detection_is_stable_until_resolved(session_factory) -> None:
    controller = _controller(session_factory)
    goal = _seed_goal(controller, days_ago=3)

    assert controller.check_for_missed_day(goal.id) == 1
    controller.store.update_day(goal.id, 1, lambda plan: plan)
    assert controller.check_for_missed_day(goal.id) == 1


def test_no_missed_day_on_first_day(session_factory) -> None:
    controller = _controller(session_factory)
    goal = _seed_goal(controller, days_ago=0)

    assert controller.check_for_missed_day(goal.id) is None
    assert controller.sync_current_day(goal.id).current_day == 1


def test_toggle_task_twice_restores_state(session_factory) -> None:
    controller = _controller(session_factory)
    goal = _seed_goal(controller, days_ago=0, tasks_per_day=2)
    controller.load_today(goal.id)

    once = controller.toggle_task(goal.id, 0)
    assert once.completed_flags == (True, False)
    assert controller.day_state.data.day_plan.completed_flags == (True, False)

    twice = controller.toggle_task(goal.id, 0)
    assert twice.completed_flags == (False, False)
    assert controller.store.get_day_plan(goal.id, 1).completed_flags == (False, False)


def test_toggle_task_rolls_back_local_state_on_failure(session_factory, monkeypatch) -> None:
    controller = _controller(session_factory)
    goal = _seed_goal(controller, days_ago=0, tasks_per_day=2)
    controller.load_today(goal.id)
    before = controller.day_state
    calls = {"count": 0}

    def broken_update(*args, **kwargs):
        calls["count"] += 1
        raise OperationalError("UPDATE day_plans", {}, Exception("connection reset"))

    monkeypatch.setattr(controller.store, "update_day", broken_update)

    with pytest.raises(TransientStoreError):
        controller.toggle_task(goal.id, 1)

    assert calls["count"] == FAST_RETRY.max_attempts
    assert controller.day_state is before
    assert isinstance(controller.last_error, Error)
    assert controller.last_error.retryable is True
    assert controller.store.get_day_plan(goal.id, 1).completed_flags == (False, False)


def test_toggle_task_refused_while_adjustment_pending(session_factory) -> None:
    controller = _controller(session_factory)
    goal = _seed_goal(controller, days_ago=2)
    controller.load_today(goal.id)

    with pytest.raises(PendingAdjustmentError) as excinfo:
        controller.toggle_task(goal.id, 0)
    assert excinfo.value.missed_day == 1


def test_toggle_task_out_of_range_is_not_retried(session_factory) -> None:
    controller = _controller(session_factory)
    goal = _seed_goal(controller, days_ago=0)

    with pytest.raises(DataIntegrityError):
        controller.toggle_task(goal.id, 5)


def test_complete_day_advances_and_is_safe_to_repeat(session_factory) -> None:
    controller = _controller(session_factory)
    goal = _seed_goal(controller, days_ago=0)
    controller.load_today(goal.id)

    updated = controller.complete_day(goal.id)

    assert updated.current_day == 2
    assert controller.day_state.data.goal.current_day == 2
    assert controller.store.get_day_plan(goal.id, 1).status == DayStatus.COMPLETED.value
    assert controller.complete_day(goal.id).current_day == 3


def test_complete_day_failure_surfaces_error_state(session_factory, monkeypatch) -> None:
    controller = _controller(session_factory)
    goal = _seed_goal(controller, days_ago=0)
    controller.load_today(goal.id)
    calls = {"count": 0}

    def broken_complete(goal_id, expected_day):
        calls["count"] += 1
        raise DataIntegrityError("partial write")

    monkeypatch.setattr(controller.store, "complete_day", broken_complete)

    with pytest.raises(DataIntegrityError):
        controller.complete_day(goal.id)

    assert calls["count"] == 1
    assert isinstance(controller.day_state, Error)
    assert controller.day_state.message == "partial write"


def test_adjust_roadmap_redistributes_missed_tasks(session_factory) -> None:
    controller = _controller(session_factory)
    goal = _seed_goal(controller, days_ago=2)
    assert controller.check_for_missed_day(goal.id) == 1

    resolved, applied = controller.resolve_skip_action(goal.id, "ADJUST_ROADMAP")

    assert applied is True
    assert resolved.pending_adjustment is False
    days = {day.day: day for day in controller.get_roadmap(goal.id)}
    assert days[1].status == DayStatus.SKIPPED.value
    assert days[2].status == DayStatus.SKIPPED.value
    assert days[3].descriptions == ("d3", "d4", "d5", "d1")
    assert days[4].descriptions == ("d2",)
    assert days[5].descriptions == ()
    assert controller.check_for_missed_day(goal.id) is None


def test_resolution_twice_changes_nothing(session_factory) -> None:
    controller = _controller(session_factory)
    goal = _seed_goal(controller, days_ago=2)
    controller.check_for_missed_day(goal.id)

    controller.resolve_skip_action(goal.id, SkipAction.SKIP)
    snapshot = controller.get_roadmap(goal.id)
    _, applied = controller.resolve_skip_action(goal.id, SkipAction.SKIP)

    assert applied is False
    assert controller.get_roadmap(goal.id) == snapshot


def test_skip_resolutions_walk_the_backlog_one_day_at_a_time(session_factory) -> None:
    controller = _controller(session_factory)
    goal = _seed_goal(controller, days_ago=2)

    assert controller.check_for_missed_day(goal.id) == 1
    controller.resolve_skip_action(goal.id, "SKIP")
    assert controller.check_for_missed_day(goal.id) == 2
    controller.resolve_skip_action(goal.id, "MARK_COMPLETED")
    assert controller.check_for_missed_day(goal.id) is None

    day_two = controller.store.get_day_plan(goal.id, 2)
    assert day_two.status == DayStatus.COMPLETED.value
    assert day_two.completed_flags == (True,)


def test_resolution_replans_after_losing_a_race(session_factory, monkeypatch) -> None:
    controller = _controller(session_factory)
    goal = _seed_goal(controller, days_ago=2)
    controller.check_for_missed_day(goal.id)
    original = controller.store.apply_resolution
    calls = {"count": 0}

    def racing_apply(goal_id, plan):
        calls["count"] += 1
        if calls["count"] == 1:
            raise ConcurrentModificationError()
        return original(goal_id, plan)

    monkeypatch.setattr(controller.store, "apply_resolution", racing_apply)

    _, applied = controller.resolve_skip_action(goal.id, "SKIP")

    assert applied is True
    assert calls["count"] == 2


def test_delegated_redistribution_falls_back_to_local(session_factory) -> None:
    from app.services.task_redistributor import FallbackTaskRedistributor

    class _BrokenRedistributor:
        def redistribute(self, remaining_days, incomplete_tasks, total_remaining_days):
            raise GenerationFailedError("upstream down")

    redistributor = FallbackTaskRedistributor(_BrokenRedistributor(), retry_config=FAST_RETRY)
    controller = _controller(session_factory, redistributor=redistributor)
    goal = _seed_goal(controller, days_ago=2)
    controller.check_for_missed_day(goal.id)

    _, applied = controller.resolve_skip_action(goal.id, SkipAction.ADJUST_ROADMAP)

    assert applied is True
    assert controller.store.get_day_plan(goal.id, 4).descriptions == ("d2",)


def test_resolve_with_unknown_action(session_factory) -> None:
    controller = _controller(session_factory)
    goal = _seed_goal(controller, days_ago=2)

    with pytest.raises(GoalValidationError):
        controller.resolve_skip_action(goal.id, "POSTPONE")


def test_delete_goal_updates_goal_list(session_factory) -> None:
    controller = _controller(session_factory)
    keep = _seed_goal(controller, days_ago=0)
    drop = _seed_goal(controller, days_ago=0)
    controller.load_goals()

    controller.delete_goal(drop.id)

    assert [goal.id for goal in controller.goals_state.data] == [keep.id]


def test_cancelled_controller_stops_work(session_factory) -> None:
    controller = _controller(session_factory)
    controller.cancel()

    with pytest.raises(OperationCancelledError):
        controller.load_goals()
    assert isinstance(controller.goals_state, Loading)


def test_day_plan_cache_evicts_least_recently_used() -> None:
    cache = DayPlanCache(max_size=2)
    first, second, third = (object(), object(), object())
    plan = DayPlanSnapshot(day=1)

    cache.put(first, plan)
    cache.put(second, plan)
    assert cache.get(first, 1) is plan
    cache.put(third, plan)

    assert cache.get(second, 1) is None
    assert cache.get(first, 1) is plan
    assert cache.get(first, 2) is None
    assert len(cache) == 2


def test_today_view_is_emitted_as_success(session_factory) -> None:
    controller = _controller(session_factory)
    goal = _seed_goal(controller, days_ago=0)

    controller.load_today(goal.id)

    assert isinstance(controller.day_state.data, TodayView)
    assert controller.day_state.data.missed_day is None


def test_generated_goal_keeps_its_creation_timezone(session_factory) -> None:
    creator = _controller(session_factory, generator=_FakeGenerator(), tz="America/Los_Angeles")
    goal = creator.generate_goal_with_roadmap("Run a 5k", 3)
    assert goal.timezone == "America/Los_Angeles"

    # 20:00 on the creation day in Los Angeles, the next day in UTC.
    later = datetime(2026, 10, 20, 3, 0, tzinfo=timezone.utc)
    viewer = _controller(session_factory, tz="UTC", clock=lambda: later)

    assert viewer.today_for(viewer.store.get_goal(goal.id)) == 1
    assert viewer.check_for_missed_day(goal.id) is None
    assert viewer.store.get_goal(goal.id).current_day == 1


def test_shared_cache_is_scoped_per_user(session_factory) -> None:
    cache = DayPlanCache(max_size=8)
    owner = _controller(session_factory, cache=cache)
    goal = _seed_goal(owner, days_ago=0)

    owner.load_today(goal.id)
    assert cache.get(("user-1", goal.id), 1) is not None
    assert cache.get(("user-2", goal.id), 1) is None

    owner.complete_day(goal.id)
    assert cache.get(("user-1", goal.id), 1) is None
