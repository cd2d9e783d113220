"""Error taxonomy shared by the store, the controller and the HTTP layer.

Low-level failures (SQLAlchemy, OpenAI SDK, sockets) are translated into one of
these kinds by :func:`classify_exception` before they leave the service layer, so
routes only ever see ``GoalError`` subclasses plus deliberate cancellation.
"""
from __future__ import annotations

import asyncio
import socket

import openai
from fastapi import status
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm.exc import StaleDataError

NO_CONNECTION_MESSAGE = "No internet connection. Check your network and try again."
TIMEOUT_MESSAGE = "The request timed out. Please try again."
SERVER_ERROR_MESSAGE = "The server had a problem handling the request. Please try again later."


class GoalError(Exception):
    """Base class for every failure surfaced by the goal services."""

    kind = "error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable = False
    default_message = "Something went wrong."

    def __init__(self, message: str | None = None, *, cause: BaseException | None = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.cause = cause

    def to_payload(self) -> dict:
        return {"error": self.kind, "details": self.message}


class NotAuthenticatedError(GoalError):
    kind = "not_authenticated"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "You are signed out. Please log in again."


class TransientStoreError(GoalError):
    """Network, timeout or store-unavailable failure; safe to retry."""

    kind = "transient"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True
    default_message = SERVER_ERROR_MESSAGE

    def __init__(self, message: str | None = None, *, cause: BaseException | None = None, reason: str = "server") -> None:
        super().__init__(message, cause=cause)
        self.reason = reason


class ConcurrentModificationError(TransientStoreError):
    """A compare-and-swap lost against another writer; re-read and try again."""

    kind = "conflict_retry"
    default_message = "The goal was changed elsewhere. Please try again."

    def __init__(self, message: str | None = None, *, cause: BaseException | None = None) -> None:
        super().__init__(message, cause=cause, reason="conflict")


class DataIntegrityError(GoalError):
    kind = "data_integrity"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Stored goal data is inconsistent."


class GoalValidationError(GoalError):
    kind = "validation"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid input."


class GoalNotFoundError(GoalError):
    kind = "not_found"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Goal not found."


class PendingAdjustmentError(GoalError):
    kind = "pending_adjustment"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Resolve the missed day before continuing."

    def __init__(self, missed_day: int | None, message: str | None = None) -> None:
        super().__init__(message or f"Day {missed_day} was missed. Resolve it before continuing.")
        self.missed_day = missed_day


class DuplicateRequestError(GoalError):
    kind = "duplicate_request"
    status_code = status.HTTP_409_CONFLICT
    default_message = "A roadmap is already being generated."


class GenerationFailedError(GoalError):
    kind = "generation_failed"
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "Failed to generate a roadmap."

    def __init__(
        self,
        message: str | None = None,
        *,
        cause: BaseException | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message, cause=cause)
        self.retryable = retryable


class OperationCancelledError(Exception):
    """Raised when a caller deliberately abandons an operation.

    Not a ``GoalError``: cancellation is not a failure and must never be retried.
    """


def classify_exception(exc: BaseException) -> BaseException:
    """Translate a raw exception into the taxonomy; unknown errors pass through."""
    if isinstance(exc, (GoalError, OperationCancelledError, asyncio.CancelledError)):
        return exc

    if isinstance(exc, StaleDataError):
        return ConcurrentModificationError(cause=exc)
    if isinstance(exc, (sa_exc.IntegrityError, sa_exc.DataError)):
        return DataIntegrityError("The store rejected inconsistent goal data.", cause=exc)
    if isinstance(exc, sa_exc.TimeoutError):
        return TransientStoreError(TIMEOUT_MESSAGE, cause=exc, reason="timeout")
    if isinstance(exc, (sa_exc.OperationalError, sa_exc.InterfaceError, sa_exc.DisconnectionError)):
        return TransientStoreError(SERVER_ERROR_MESSAGE, cause=exc, reason="server")
    if isinstance(exc, sa_exc.SQLAlchemyError):
        return DataIntegrityError("The store could not process the request.", cause=exc)

    if isinstance(exc, openai.APITimeoutError):
        return GenerationFailedError(TIMEOUT_MESSAGE, cause=exc, retryable=True)
    if isinstance(exc, openai.APIConnectionError):
        return GenerationFailedError(NO_CONNECTION_MESSAGE, cause=exc, retryable=True)
    if isinstance(exc, openai.APIStatusError):
        code = exc.status_code
        return GenerationFailedError(
            f"Roadmap service error ({code}). Please try again later.",
            cause=exc,
            retryable=code >= 500 or code == 429,
        )

    if isinstance(exc, (socket.timeout, TimeoutError)):
        return TransientStoreError(TIMEOUT_MESSAGE, cause=exc, reason="timeout")
    if isinstance(exc, (ConnectionError, socket.gaierror)):
        return TransientStoreError(NO_CONNECTION_MESSAGE, cause=exc, reason="connectivity")
    if isinstance(exc, OSError):
        return TransientStoreError(SERVER_ERROR_MESSAGE, cause=exc, reason="server")

    return exc


def describe_error(exc: BaseException) -> str:
    """Return the human-readable message shown to the user for ``exc``."""
    classified = classify_exception(exc)
    if isinstance(classified, GoalError):
        return classified.message
    if isinstance(classified, (OperationCancelledError, asyncio.CancelledError)):
        return "Cancelled."
    return "Unexpected error. Please try again."


def is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", False))
