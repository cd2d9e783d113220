"""Main FastAPI application for the AimWise backend."""
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.api.routes.goals import router as goals_router
from app.api.routes.jobs import router as jobs_router
from app.api.routes.roadmap import router as roadmap_router
from app.core.config import settings
from app.core.errors import GoalError
from app.core.logging import configure_logging
from app.core.middleware import RequestContextMiddleware
from app.observability.client import init_opik
from app.observability.tracing import trace

configure_logging(log_level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(RequestContextMiddleware)
app.include_router(roadmap_router)
app.include_router(goals_router)
app.include_router(jobs_router)


@app.exception_handler(GoalError)
async def goal_error_handler(request: Request, exc: GoalError) -> JSONResponse:
    """Render service failures as ``{error, details}`` with the kind's status code."""
    log = logger.warning if exc.status_code < 500 else logger.error
    log("%s %s failed: %s (%s)", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.on_event("startup")
async def startup_observability() -> None:
    """Initialize observability backends after the event loop starts."""
    init_opik()


@app.get("/health", tags=["health"], summary="Readiness check")
async def health_check(request: Request) -> dict[str, str]:
    """Return a simple status payload so automation can check the API is up."""
    with trace("http.health_check", metadata={"route": "/health"}, request_id=request.state.request_id):
        return {"status": "ok"}
