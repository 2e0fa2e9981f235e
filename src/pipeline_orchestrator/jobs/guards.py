"""Per-job in-flight operation guards."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class OperationGuards:
    """Non-blocking mutual exclusion keyed by (operation, job id).

    Guards live on one lifecycle manager instance and are held only for the
    manager-side mutation, never for the worker's lifetime.
    """

    def __init__(self) -> None:
        self._held: set[tuple[str, str]] = set()
        self._lock = threading.Lock()

    def try_acquire(self, operation: str, job_id: str) -> bool:
        key = (operation, job_id)
        with self._lock:
            if key in self._held:
                return False
            self._held.add(key)
            return True

    def release(self, operation: str, job_id: str) -> None:
        with self._lock:
            self._held.discard((operation, job_id))

    def is_held(self, operation: str, job_id: str) -> bool:
        with self._lock:
            return (operation, job_id) in self._held

    @contextmanager
    def hold(self, operation: str, job_id: str) -> Iterator[bool]:
        """Yield whether the guard was acquired; release on every exit path."""

        acquired = self.try_acquire(operation, job_id)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(operation, job_id)
