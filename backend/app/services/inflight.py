"""At-most-one-in-flight guard for long-running requests."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from threading import Lock
from typing import Hashable, Iterator, Set

logger = logging.getLogger(__name__)


class InFlightGuard:
    """Compare-and-set flags keyed by the context issuing a request.

    A second acquire for a key that is already held fails immediately; callers
    drop the duplicate instead of queueing it.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._held: Set[Hashable] = set()

    def try_acquire(self, key: Hashable) -> bool:
        with self._lock:
            if key in self._held:
                return False
            self._held.add(key)
            return True

    def release(self, key: Hashable) -> None:
        with self._lock:
            self._held.discard(key)

    def is_held(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._held

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[bool]:
        """Yield whether the key was acquired; release it on exit if it was."""
        acquired = self.try_acquire(key)
        if not acquired:
            logger.info("Dropping duplicate request for %s", key)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(key)


generation_guard = InFlightGuard()
