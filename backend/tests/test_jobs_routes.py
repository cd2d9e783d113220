from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.db.deps import get_db
from app.db.models.day_plan import DayPlan
from app.db.models.goal import Goal
from app.main import app
from app.services.day_progress import RoadmapDay
from app.services.goal_store import GoalStore

DAY_MS = 24 * 60 * 60 * 1000


@pytest.fixture()
def client(monkeypatch):
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )

    @event.listens_for(engine, "connect")
    def set_fk(conn, record):  # pragma: no cover
        cursor = conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    Goal.__table__.create(bind=engine)
    DayPlan.__table__.create(bind=engine)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    monkeypatch.setattr(settings, "debug", True)
    with TestClient(app) as test_client:
        yield test_client, TestingSessionLocal
    app.dependency_overrides.clear()


def _seed_goal(session_factory, user_id: str, days_ago: int):
    return GoalStore(session_factory(), user_id).create_goal(
        title="Read daily",
        duration_days=4,
        days=[RoadmapDay(day, (f"chapter {day}",)) for day in range(1, 5)],
        created_at_ms=int(time.time() * 1000) - days_ago * DAY_MS,
    )


def test_jobs_config_reports_schedule(client):
    test_client, _ = client
    response = test_client.get("/jobs")

    assert response.status_code == 200
    body = response.json()
    assert body["scheduler_enabled"] is settings.scheduler_enabled
    assert body["schedule"]["progress_sync_time"] == f"{settings.sync_job_hour:02d}:{settings.sync_job_minute:02d}"
    assert body["request_id"]


def test_run_now_syncs_all_goals(client):
    test_client, session_factory = client
    _seed_goal(session_factory, "alice", days_ago=2)
    _seed_goal(session_factory, "bob", days_ago=0)

    response = test_client.post("/jobs/run-now", json={"job": "progress_sync"})

    assert response.status_code == 200
    body = response.json()
    assert body["goals_processed"] == 2
    assert body["days_advanced"] == 1
    assert body["missed_days_flagged"] == 1


def test_run_now_for_single_goal(client):
    test_client, session_factory = client
    goal = _seed_goal(session_factory, "alice", days_ago=1)

    response = test_client.post(
        "/jobs/run-now",
        json={"job": "progress_sync", "user_id": "alice", "goal_id": str(goal.id)},
    )

    assert response.status_code == 200
    assert response.json()["goals_processed"] == 1
    assert response.json()["missed_days_flagged"] == 1


def test_run_now_single_goal_requires_user(client):
    test_client, session_factory = client
    goal = _seed_goal(session_factory, "alice", days_ago=1)

    response = test_client.post("/jobs/run-now", json={"goal_id": str(goal.id)})

    assert response.status_code == 422


def test_run_now_forbidden_outside_debug(client, monkeypatch):
    test_client, _ = client
    monkeypatch.setattr(settings, "debug", False)

    response = test_client.post("/jobs/run-now", json={"job": "progress_sync"})

    assert response.status_code == 403
