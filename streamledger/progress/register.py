from __future__ import annotations

import threading
from typing import Callable

from streamledger.progress.types import ProgressSnapshot


class ProgressSlotBusyError(RuntimeError):
    pass


class ProgressRegister:
    """Single process-wide slot holding the progress of the job currently executing.

    The slot is empty between jobs. ``begin`` occupies it, ``mutate`` is only
    accepted from the owning job, and ``release``/``reset`` are the only ways to
    empty it again.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._current: ProgressSnapshot | None = None

    def begin(self, snapshot: ProgressSnapshot) -> ProgressSnapshot:
        with self._lock:
            if self._current is not None and self._current.job_id != snapshot.job_id:
                raise ProgressSlotBusyError(
                    f"Progress slot is held by job {self._current.job_id}; cannot start {snapshot.job_id}"
                )
            self._current = snapshot
            return snapshot

    def mutate(self, job_id: str, change: Callable[[ProgressSnapshot], ProgressSnapshot]) -> ProgressSnapshot | None:
        with self._lock:
            if self._current is None or self._current.job_id != job_id:
                return None
            self._current = change(self._current)
            return self._current

    def release(self, job_id: str) -> bool:
        with self._lock:
            if self._current is None or self._current.job_id != job_id:
                return False
            self._current = None
            return True

    def reset(self) -> ProgressSnapshot | None:
        with self._lock:
            previous = self._current
            self._current = None
            return previous

    def current(self) -> ProgressSnapshot | None:
        with self._lock:
            return self._current

    def is_busy(self) -> bool:
        with self._lock:
            return self._current is not None
