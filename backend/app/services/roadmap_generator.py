"""LLM-backed roadmap generation with validation, JSON repair and caching."""
from __future__ import annotations

import json
import logging
import re
from functools import lru_cache
from threading import Lock
from time import monotonic
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import openai
from pydantic import ValidationError

from app.api.schemas.roadmap import RoadmapPayload
from app.core.config import settings
from app.core.errors import GenerationFailedError, GoalError, GoalValidationError, classify_exception
from app.observability.metrics import log_metric
from app.observability.tracing import trace
from app.services.day_progress import RoadmapDay

logger = logging.getLogger(__name__)

MIN_GOAL_LENGTH = 3
MAX_GOAL_LENGTH = 500
MAX_REQUEST_DAYS = 365
_UNSAFE_GOAL_CHARS = re.compile(r"[<>{}\[\]\\]")
_TRAILING_COMMA_OBJECT = re.compile(r",\s*}")
_TRAILING_COMMA_ARRAY = re.compile(r",\s*]")
_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


class RoadmapGenerator(Protocol):
    def generate(self, goal: str, days: int) -> RoadmapPayload:
        ...


def validate_goal_text(goal: Any) -> str:
    """Trim and sanitize the goal text or raise ``GoalValidationError``."""
    if not goal or not isinstance(goal, str):
        raise GoalValidationError("Goal must be a non-empty string")
    trimmed = goal.strip()
    if not trimmed:
        raise GoalValidationError("Goal cannot be empty")
    if len(trimmed) < MIN_GOAL_LENGTH:
        raise GoalValidationError(f"Goal must be at least {MIN_GOAL_LENGTH} characters long")
    if len(trimmed) > MAX_GOAL_LENGTH:
        raise GoalValidationError(f"Goal must be less than {MAX_GOAL_LENGTH} characters")
    return _UNSAFE_GOAL_CHARS.sub("", trimmed)


def validate_days(days: Any) -> int:
    """Parse the requested day count and apply the configured safety cap."""
    if isinstance(days, bool):
        raise GoalValidationError("Days must be a valid number")
    try:
        parsed = int(days)
    except (TypeError, ValueError) as exc:
        raise GoalValidationError("Days must be a valid number") from exc
    if parsed < 1:
        raise GoalValidationError("Days must be at least 1")
    if parsed > MAX_REQUEST_DAYS:
        raise GoalValidationError(f"Days cannot exceed {MAX_REQUEST_DAYS}")
    return min(parsed, settings.roadmap_max_days)


def cache_key(goal: str, days: int) -> str:
    return f"{goal.lower().strip()}-{days}"


class RoadmapCache:
    """In-process TTL cache of generated roadmaps."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[RoadmapPayload, float]] = {}
        self._lock = Lock()

    def get(self, key: str) -> Optional[RoadmapPayload]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            payload, stored_at = entry
            if self._clock() - stored_at > self.ttl_seconds:
                del self._entries[key]
                return None
            return payload

    def set(self, key: str, payload: RoadmapPayload) -> None:
        with self._lock:
            self._entries[key] = (payload, self._clock())

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, (_, stored_at) in self._entries.items() if now - stored_at > self.ttl_seconds]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.info("Roadmap cache cleanup: evicted %d expired entries", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def build_roadmap_prompt(goal: str, days: int) -> str:
    return (
        "You are an expert goal planner.\n\n"
        f"Create a {days}-day roadmap to achieve this goal:\n"
        f'"{goal}"\n\n'
        "The goal can be anything: learning a skill, fitness, building an app, a productivity habit, "
        "a business, or a lifestyle change.\n\n"
        "Rules:\n"
        "- Return ONLY valid JSON, no explanation text\n"
        f"- Max {settings.max_tasks_per_day} tasks per day\n"
        "- Tasks must be short (3-6 words) and realistic\n"
        "- Spread effort across days: many days means fewer tasks per day, few days means more\n"
        "- Adjust difficulty automatically and avoid repetition\n"
        "- Make the roadmap achievable\n\n"
        "Format:\n"
        '{"title": "string", "durationDays": number, "days": [{"day": 1, "tasks": ["task1", "task2"]}]}'
    )


def parse_roadmap(text: Optional[str]) -> RoadmapPayload:
    """Parse model output into a validated roadmap, repairing common JSON slips."""
    if not text or not isinstance(text, str):
        raise GenerationFailedError("Empty or invalid AI response content")

    cleaned = _CODE_FENCE.sub("", text.strip())
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        repaired = _TRAILING_COMMA_ARRAY.sub("]", _TRAILING_COMMA_OBJECT.sub("}", cleaned)).strip()
        try:
            data = json.loads(repaired)
        except json.JSONDecodeError as exc:
            raise GenerationFailedError(f"JSON parsing failed: {exc.msg}") from exc

    if not isinstance(data, dict):
        raise GenerationFailedError("Response is not an object")
    try:
        return RoadmapPayload.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise GenerationFailedError(f"Invalid roadmap structure at '{location}': {first.get('msg')}") from exc


def normalize_roadmap(payload: RoadmapPayload) -> Tuple[int, List[RoadmapDay]]:
    """Exactly one day per number in ``1..durationDays``; blank tasks removed."""
    duration = payload.duration_days
    by_day: Dict[int, Tuple[str, ...]] = {}
    for entry in payload.days:
        if entry.day < 1 or entry.day > duration or entry.day in by_day:
            continue
        by_day[entry.day] = tuple(task.strip() for task in entry.tasks if task and task.strip())
    return duration, [RoadmapDay(day=day, tasks=by_day.get(day, ())) for day in range(1, duration + 1)]


class OpenAIRoadmapGenerator:
    """Roadmap generator backed by any OpenAI-compatible chat completions API."""

    def __init__(
        self,
        client: Optional[Any] = None,
        *,
        cache: Optional[RoadmapCache] = None,
        attempts: Optional[int] = None,
        model: Optional[str] = None,
    ) -> None:
        self._client = client
        self.cache = cache if cache is not None else RoadmapCache(settings.roadmap_cache_ttl_seconds)
        self.attempts = max(1, attempts or settings.roadmap_attempts)
        self.model = model or settings.llm_model

    def generate(self, goal: str, days: int) -> RoadmapPayload:
        goal_text = validate_goal_text(goal)
        day_count = validate_days(days)
        key = cache_key(goal_text, day_count)

        cached = self.cache.get(key)
        if cached is not None:
            logger.info("Roadmap cache hit for %d-day goal", day_count)
            log_metric("roadmap.cache.hit", 1, metadata={"days": day_count})
            return cached

        logger.info("Roadmap cache miss, generating %d-day roadmap", day_count)
        prompt = build_roadmap_prompt(goal_text, day_count)
        last_error: Optional[GoalError] = None
        metadata = {"days": day_count, "model": self.model, "goal_length": len(goal_text)}

        with trace("roadmap.generate", metadata=metadata):
            for attempt in range(1, self.attempts + 1):
                try:
                    payload = parse_roadmap(self._complete(prompt))
                except GoalError as exc:
                    last_error = exc
                    logger.warning("Roadmap attempt %d failed: %s", attempt, exc.message)
                    continue
                except openai.OpenAIError as exc:
                    classified = classify_exception(exc)
                    last_error = classified if isinstance(classified, GoalError) else GenerationFailedError(cause=exc)
                    logger.warning("Roadmap attempt %d: AI call failed - %s", attempt, last_error.message)
                    continue

                self.cache.set(key, payload)
                log_metric("roadmap.generate.attempts", attempt, metadata={"days": day_count})
                return payload

        log_metric("roadmap.generate.failed", 1, metadata={"days": day_count})
        raise GenerationFailedError(
            last_error.message if last_error else "AI returned invalid response after multiple attempts",
            cause=last_error,
            retryable=bool(last_error and last_error.retryable),
        )

    def _complete(self, prompt: str) -> str:
        completion = self._get_client().chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            response_format={"type": "json_object"},
        )
        choices = getattr(completion, "choices", None) or []
        if not choices:
            raise GenerationFailedError("Invalid API response structure: missing choices")
        return choices[0].message.content

    def _get_client(self):
        if self._client is None:
            if not settings.llm_api_key:
                raise GenerationFailedError("Roadmap service is not configured (LLM_API_KEY missing).")
            self._client = openai.OpenAI(
                api_key=settings.llm_api_key,
                base_url=settings.llm_base_url,
                timeout=settings.llm_timeout_seconds,
                max_retries=0,
            )
        return self._client


@lru_cache
def get_roadmap_generator() -> RoadmapGenerator:
    return OpenAIRoadmapGenerator()
