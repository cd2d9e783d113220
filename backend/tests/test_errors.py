from __future__ import annotations

import socket

import httpx
import openai
import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from app.core.errors import (
    NO_CONNECTION_MESSAGE,
    TIMEOUT_MESSAGE,
    ConcurrentModificationError,
    DataIntegrityError,
    GenerationFailedError,
    OperationCancelledError,
    PendingAdjustmentError,
    TransientStoreError,
    classify_exception,
    describe_error,
    is_retryable,
)

REQUEST = httpx.Request("POST", "https://example.invalid/v1/chat/completions")


def _status_error(code: int) -> openai.APIStatusError:
    response = httpx.Response(code, request=REQUEST)
    return openai.APIStatusError("upstream", response=response, body=None)


def test_stale_rows_are_concurrent_modifications() -> None:
    classified = classify_exception(StaleDataError("version mismatch"))

    assert isinstance(classified, ConcurrentModificationError)
    assert classified.retryable is True


def test_store_errors_are_split_by_kind() -> None:
    transient = classify_exception(OperationalError("SELECT 1", {}, Exception("gone")))
    integrity = classify_exception(IntegrityError("INSERT", {}, Exception("duplicate")))

    assert isinstance(transient, TransientStoreError)
    assert isinstance(integrity, DataIntegrityError)
    assert not is_retryable(integrity)


@pytest.mark.parametrize(
    ("exc", "message"),
    [
        (socket.timeout("timed out"), TIMEOUT_MESSAGE),
        (ConnectionRefusedError("refused"), NO_CONNECTION_MESSAGE),
        (openai.APIConnectionError(request=REQUEST), NO_CONNECTION_MESSAGE),
        (openai.APITimeoutError(request=REQUEST), TIMEOUT_MESSAGE),
    ],
)
def test_user_messages_distinguish_connectivity_from_timeouts(exc, message) -> None:
    assert describe_error(exc) == message


@pytest.mark.parametrize(("code", "retryable"), [(500, True), (503, True), (429, True), (400, False), (401, False)])
def test_generator_status_errors(code, retryable) -> None:
    classified = classify_exception(_status_error(code))

    assert isinstance(classified, GenerationFailedError)
    assert classified.retryable is retryable


def test_cancellation_and_unknown_errors_pass_through() -> None:
    cancelled = OperationCancelledError("stop")
    unknown = KeyError("x")

    assert classify_exception(cancelled) is cancelled
    assert classify_exception(unknown) is unknown
    assert describe_error(cancelled) == "Cancelled."


def test_error_payload_shape() -> None:
    error = PendingAdjustmentError(4)

    assert error.status_code == 409
    assert error.to_payload() == {
        "error": "pending_adjustment",
        "details": "Day 4 was missed. Resolve it before continuing.",
    }
