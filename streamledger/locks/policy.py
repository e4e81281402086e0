from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from streamledger.core.config import Settings
from streamledger.locks.heavy_ops import HeavyOpsLockService
from streamledger.locks.types import HeavyOpsLockHolder

logger = logging.getLogger(__name__)


class HeavyOpsLockTimeoutError(RuntimeError):
    def __init__(self, holder: HeavyOpsLockHolder, waited_seconds: float):
        self.holder = holder
        self.waited_seconds = waited_seconds
        minutes = int(waited_seconds // 60)
        super().__init__(
            f"Timed out waiting for {holder.description or holder.job_type} "
            f"(job {holder.job_id}) to complete after {minutes} minutes"
        )


@dataclass(frozen=True)
class LockWaitPolicy:
    interval_seconds: float
    max_wait_seconds: float
    backoff_factor: float = 1.0
    max_interval_seconds: float | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "LockWaitPolicy":
        return cls(
            interval_seconds=settings.heavy_ops_wait_interval_seconds,
            max_wait_seconds=settings.heavy_ops_max_wait_seconds,
            backoff_factor=settings.heavy_ops_wait_backoff_factor,
            max_interval_seconds=settings.heavy_ops_wait_max_interval_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Sleep before retry ``attempt`` (1-based)."""
        delay = self.interval_seconds * (self.backoff_factor ** max(0, attempt - 1))
        if self.max_interval_seconds is not None:
            delay = min(delay, self.max_interval_seconds)
        return delay


def acquire_with_wait(
    lock_service: HeavyOpsLockService,
    *,
    job_type: str,
    job_id: str,
    description: str,
    policy: LockWaitPolicy,
    on_wait: Callable[[HeavyOpsLockHolder, float], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> float:
    """Block until the heavy-ops lock is held by ``job_id``.

    Returns the number of seconds spent waiting. ``on_wait`` runs before every
    sleep with the current holder and elapsed seconds; exceptions it raises
    (for example a lost queue lock) abort the wait.
    """
    started = clock()
    attempt = 0
    while True:
        holder = lock_service.acquire(job_type, job_id, description)
        elapsed = clock() - started
        if holder is None:
            if attempt:
                logger.info("Job %s acquired heavy-ops lock after waiting %.1fs", job_id, elapsed)
            return elapsed

        if elapsed >= policy.max_wait_seconds:
            logger.error(
                "Job %s gave up waiting for heavy-ops lock held by %s after %.1fs",
                job_id,
                holder.job_id,
                elapsed,
            )
            raise HeavyOpsLockTimeoutError(holder, elapsed)

        attempt += 1
        if on_wait is not None:
            on_wait(holder, elapsed)
        delay = min(policy.delay_for(attempt), max(0.0, policy.max_wait_seconds - elapsed))
        logger.info(
            "Job %s waiting %.1fs for heavy-ops lock held by %s (%s)",
            job_id,
            delay,
            holder.job_id,
            holder.description,
        )
        sleep(delay)
