from __future__ import annotations

from app.services.inflight import InFlightGuard


def test_second_acquire_fails_until_released() -> None:
    guard = InFlightGuard()

    assert guard.try_acquire("ctx") is True
    assert guard.try_acquire("ctx") is False
    assert guard.try_acquire("other") is True

    guard.release("ctx")
    assert guard.try_acquire("ctx") is True


def test_hold_releases_on_error() -> None:
    guard = InFlightGuard()

    try:
        with guard.hold("ctx") as acquired:
            assert acquired is True
            assert guard.is_held("ctx")
            raise RuntimeError("generation failed")
    except RuntimeError:
        pass

    assert not guard.is_held("ctx")


def test_nested_hold_reports_duplicate_without_releasing_owner() -> None:
    guard = InFlightGuard()

    with guard.hold("ctx") as outer:
        with guard.hold("ctx") as inner:
            assert outer is True
            assert inner is False
        assert guard.is_held("ctx")
    assert not guard.is_held("ctx")
