"""Application configuration managed via environment variables."""
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "AimWise Backend"
    debug: bool = False
    log_level: str = "INFO"
    database_url: str = "postgresql+psycopg2://aimwise@localhost:5432/aimwise"
    opik_enabled: bool = False
    opik_api_key: str | None = None
    opik_project: str = "aimwise"

    # Roadmap generation (any OpenAI-compatible endpoint)
    llm_api_key: str | None = None
    llm_base_url: str = "https://openrouter.ai/api/v1"
    llm_model: str = "deepseek/deepseek-chat"
    llm_temperature: float = 0.6
    llm_max_tokens: int = 4000
    llm_timeout_seconds: float = 60.0
    roadmap_attempts: int = 2
    roadmap_cache_ttl_seconds: int = 3600
    roadmap_max_days: int = 120

    # Day progress
    day_boundary_timezone: str = "UTC"
    max_tasks_per_day: int = 4
    extend_days: int = 3
    day_plan_cache_size: int = 64

    # Store retry/backoff
    retry_max_attempts: int = 3
    retry_initial_delay_ms: int = 1000
    retry_max_delay_ms: int = 10000
    retry_factor: float = 2.0

    # Progress sync worker
    scheduler_enabled: bool = False
    scheduler_timezone: str = "UTC"
    sync_job_hour: int = 0
    sync_job_minute: int = 5
    jobs_run_on_startup: bool = False


@lru_cache
def get_settings() -> Settings:
    """Return a cached Settings instance."""
    return Settings()


settings = get_settings()
