"""Counters and timings recorded as single-shot Opik traces."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from time import perf_counter
from typing import Any, Dict, Iterator, Optional

from app.observability import tracing

logger = logging.getLogger(__name__)


def log_metric(name: str, value: float | int, metadata: Optional[Dict[str, Any]] = None) -> None:
    """Record ``value`` under ``metric:<name>`` when Opik is enabled."""
    if not tracing.get_opik_client():
        return

    payload: Dict[str, Any] = dict(metadata or {})
    payload["value"] = value
    try:
        with tracing.trace(f"metric:{name}", metadata=payload):
            pass
    except Exception as exc:  # pragma: no cover - remote client failure
        logger.debug("Unable to record metric %s: %s", name, exc)


@contextmanager
def timed(name: str, metadata: Optional[Dict[str, Any]] = None) -> Iterator[None]:
    """Log ``<name>.latency_ms`` for the wrapped block, even when it raises."""
    started = perf_counter()
    try:
        yield
    finally:
        log_metric(f"{name}.latency_ms", round((perf_counter() - started) * 1000, 2), metadata=metadata)
