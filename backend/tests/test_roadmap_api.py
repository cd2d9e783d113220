from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from app.api.deps import get_generator
from app.api.schemas.roadmap import RoadmapPayload
from app.core.errors import GenerationFailedError
from app.main import app


class _StubGenerator:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def generate(self, goal, days):
        self.calls.append((goal, days))
        if self.error:
            raise self.error
        return RoadmapPayload.model_validate(
            {"title": goal, "durationDays": days, "days": [{"day": 1, "tasks": ["Start"]}]}
        )


@pytest.fixture()
def client():
    generator = _StubGenerator()
    app.dependency_overrides[get_generator] = lambda: generator
    with TestClient(app) as test_client:
        yield test_client, generator
    app.dependency_overrides.clear()


def test_ping_returns_pong(client) -> None:
    test_client, _ = client
    response = test_client.get("/ping")

    assert response.status_code == 200
    assert response.text == "pong"


def test_generate_roadmap_returns_model_document(client) -> None:
    test_client, generator = client
    response = test_client.post("/generate-roadmap", json={"goal": "  Learn {Rust}  ", "days": "5"})

    assert response.status_code == 200
    body = response.json()
    assert body == {"title": "Learn Rust", "durationDays": 5, "days": [{"day": 1, "tasks": ["Start"]}]}
    assert generator.calls == [("Learn Rust", 5)]


@pytest.mark.parametrize(
    ("payload", "error"),
    [
        ({"goal": "Learn Rust"}, "Missing required fields"),
        ({"goal": "ab", "days": 5}, "Invalid goal"),
        ({"goal": "Learn Rust", "days": 400}, "Invalid days"),
        ({"goal": "Learn Rust", "days": "soon"}, "Invalid days"),
    ],
)
def test_generate_roadmap_rejects_invalid_input(client, payload, error) -> None:
    test_client, generator = client
    response = test_client.post("/generate-roadmap", json=payload)

    assert response.status_code == 400
    assert response.json()["error"] == error
    assert response.json()["details"]
    assert generator.calls == []


def test_generate_roadmap_failure_answers_500(client) -> None:
    test_client, generator = client
    generator.error = GenerationFailedError("JSON parsing failed: Expecting value")

    response = test_client.post("/generate-roadmap", json={"goal": "Learn Rust", "days": 3})

    assert response.status_code == 500
    assert response.json() == {
        "error": "Failed to generate valid roadmap",
        "details": "JSON parsing failed: Expecting value",
    }


def test_redistribute_tasks_packs_and_omits_empty_days(client) -> None:
    test_client, _ = client
    response = test_client.post(
        "/redistribute-tasks",
        json={
            "remainingDays": [
                {"day": 3, "tasks": ["a", "b"]},
                {"day": 4, "tasks": ["c"]},
                {"day": 5, "tasks": []},
            ],
            "incompleteTasks": ["x", "y", "z"],
            "totalRemainingDays": 3,
        },
    )

    assert response.status_code == 200
    assert response.json() == {
        "days": [
            {"day": 3, "tasks": ["a", "b", "c", "x"]},
            {"day": 4, "tasks": ["y", "z"]},
        ]
    }


def test_redistribute_tasks_validates_shape(client) -> None:
    test_client, _ = client
    response = test_client.post("/redistribute-tasks", json={"remainingDays": "nope"})

    assert response.status_code == 422
