"""Opik trace spans for goal operations."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from time import perf_counter
from typing import TYPE_CHECKING, Any, Dict, Iterator, Optional

from app.core.context import get_request_id, get_user_id
from app.observability.client import get_opik_client

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from opik.api_objects.trace.trace_client import Trace

logger = logging.getLogger(__name__)


@contextmanager
def trace(
    name: str,
    metadata: Optional[Dict[str, Any]] = None,
    user_id: Optional[str] = None,
    request_id: Optional[str] = None,
    goal_id: Optional[Any] = None,
) -> Iterator[Optional["Trace"]]:
    """Wrap a block in an Opik trace; a no-op when Opik is off.

    Request and user ids default to the ones bound by the request middleware.
    Elapsed time is attached as ``duration_ms`` and an escaping exception is
    recorded on the trace before it propagates.
    """
    client = get_opik_client()
    opik_trace: Optional["Trace"] = None

    if client:
        trace_metadata = dict(metadata or {})
        resolved_user = user_id or get_user_id()
        resolved_request = request_id or get_request_id()
        if resolved_user:
            trace_metadata.setdefault("user_id", str(resolved_user))
        if resolved_request:
            trace_metadata.setdefault("request_id", resolved_request)
        if goal_id is not None:
            trace_metadata.setdefault("goal_id", str(goal_id))
        try:
            opik_trace = client.trace(name=name, metadata=trace_metadata or None)
        except Exception as exc:  # pragma: no cover - remote client failure
            logger.debug("Unable to start Opik trace %s: %s", name, exc)
            opik_trace = None

    started = perf_counter()
    try:
        yield opik_trace
    except Exception as exc:
        if opik_trace:
            try:
                opik_trace.update(error_info={"exception_type": type(exc).__name__, "message": str(exc)})
            except Exception:  # pragma: no cover
                logger.debug("Failed to attach error info to Opik trace %s", name, exc_info=True)
        raise
    finally:
        if opik_trace:
            try:
                opik_trace.update(metadata={"duration_ms": round((perf_counter() - started) * 1000, 2)})
                opik_trace.end()
            except Exception:  # pragma: no cover
                logger.debug("Failed to close Opik trace %s cleanly", name, exc_info=True)
