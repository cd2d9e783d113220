"""Retry with exponential backoff for store and generator calls."""
from __future__ import annotations

import functools
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from app.core.config import settings
from app.core.errors import OperationCancelledError, classify_exception, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 10000
    factor: float = 2.0

    @classmethod
    def from_settings(cls) -> "RetryConfig":
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay_ms=settings.retry_initial_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
            factor=settings.retry_factor,
        )


NO_RETRY = RetryConfig(max_attempts=1)


def calculate_delay(attempt: int, config: RetryConfig) -> int:
    """Delay in ms before retrying after ``attempt`` (1-indexed) failed."""
    exponential = int(config.initial_delay_ms * config.factor ** (attempt - 1))
    return min(exponential, config.max_delay_ms)


def with_retry(
    block: Callable[[], T],
    config: Optional[RetryConfig] = None,
    *,
    operation: str = "operation",
    cancel_event: Optional[threading.Event] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """Run ``block`` and retry retryable failures with exponential backoff.

    Raw exceptions are classified first. Non-retryable kinds are raised on the
    first failure; retryable kinds are raised once attempts run out. Cancellation
    (a set ``cancel_event`` or ``OperationCancelledError``) is never retried, and
    a set ``cancel_event`` also cuts the backoff wait short.
    """
    config = config or RetryConfig.from_settings()
    attempt = 0

    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError(f"{operation} cancelled")
        attempt += 1
        try:
            return block()
        except OperationCancelledError:
            raise
        except Exception as exc:
            classified = classify_exception(exc)
            if not is_retryable(classified) or attempt >= config.max_attempts:
                if attempt > 1:
                    logger.warning("%s failed after %d attempts: %s", operation, attempt, classified)
                if classified is exc:
                    raise
                raise classified from exc

            delay_ms = calculate_delay(attempt, config)
            logger.info(
                "%s failed (attempt %d/%d), retrying in %dms: %s",
                operation,
                attempt,
                config.max_attempts,
                delay_ms,
                classified,
            )
            _wait(delay_ms / 1000, cancel_event, sleep)
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelledError(f"{operation} cancelled") from exc


def retrying(
    config: Optional[RetryConfig] = None,
    *,
    operation: Optional[str] = None,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator form of :func:`with_retry`."""

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        name = operation or func.__qualname__

        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            return with_retry(lambda: func(*args, **kwargs), config, operation=name)

        return wrapper

    return decorator


def _wait(seconds: float, cancel_event: Optional[threading.Event], sleep: Optional[Callable[[float], None]]) -> None:
    if sleep is not None:
        sleep(seconds)
    elif cancel_event is not None:
        cancel_event.wait(seconds)
    else:
        time.sleep(seconds)
