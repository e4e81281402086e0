from __future__ import annotations

from sqlalchemy.exc import DBAPIError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

RESOURCE_EXHAUSTION_MARKERS: tuple[str, ...] = (
    "out of shared memory",
    "max_locks_per_transaction",
    "too many connections",
    "remaining connection slots are reserved",
    "database or disk is full",
    "out of memory",
    "could not resize shared memory",
)


class ResourceExhaustedError(RuntimeError):
    def __init__(self, phase: str, cause: BaseException, *, committed: int = 0):
        self.phase = phase
        self.cause = cause
        self.committed = committed
        super().__init__(
            f"{phase} aborted after {committed} committed rows: store resources exhausted ({cause}). "
            "Reduce the batch size or raise the store's lock/connection limits, then re-run; "
            "completed batches are kept."
        )


def is_resource_exhaustion(exc: BaseException) -> bool:
    if isinstance(exc, ResourceExhaustedError):
        return True
    if isinstance(exc, (PoolTimeoutError, MemoryError)):
        return True
    if isinstance(exc, DBAPIError):
        message = str(exc.orig or exc).lower()
        return any(marker in message for marker in RESOURCE_EXHAUSTION_MARKERS)
    return False
