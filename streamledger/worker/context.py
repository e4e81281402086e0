from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from sqlalchemy.orm import Session, sessionmaker

from streamledger.core.config import Settings
from streamledger.jobs.service import LockLostError, MaintenanceQueueService
from streamledger.jobs.types import JobSnapshot
from streamledger.locks.heavy_ops import HeavyOpsLockService
from streamledger.progress.tracker import ProgressTracker

logger = logging.getLogger(__name__)


@dataclass
class JobContext:
    """Everything a maintenance handler needs while it runs one job."""

    job: JobSnapshot
    settings: Settings
    session_factory: sessionmaker[Session]
    queue: MaintenanceQueueService
    heavy_lock: HeavyOpsLockService
    tracker: ProgressTracker
    sleep: Callable[[float], None] = time.sleep
    holds_heavy_lock: bool = False
    _last_percent: int = field(default=-1, init=False)

    @property
    def job_id(self) -> str:
        return self.job.id

    @property
    def job_type(self) -> str:
        return self.job.job_type

    @property
    def token(self) -> str:
        if self.job.lock_token is None:
            raise LockLostError(f"Job {self.job.id} has no execution lock")
        return self.job.lock_token

    def option(self, name: str, default: Any = None) -> Any:
        return self.job.payload.get(name, default)

    def extend_locks(self) -> None:
        self.queue.extend_lock(self.job.id, self.token)
        if self.holds_heavy_lock and not self.heavy_lock.extend(self.job.id):
            raise LockLostError(f"Lost heavy-ops lock for job {self.job.id} - aborting to allow clean retry")

    def report_percent(self, percent: int) -> None:
        bounded = max(0, min(100, int(percent)))
        if bounded == self._last_percent:
            return
        self.queue.update_progress(self.job.id, self.token, bounded)
        self._last_percent = bounded

    def pause(self) -> None:
        delay_ms = self.settings.batch_delay_ms
        if delay_ms > 0:
            self.sleep(delay_ms / 1000.0)

    def checkpoint(self, message: str) -> None:
        """Extend both locks before a phase that may outlast the extension interval."""
        self.tracker.running(message)
        self.extend_locks()

    def after_batch(
        self,
        *,
        processed: int,
        updated: int,
        skipped: int,
        errored: int,
        message: str,
    ) -> None:
        snapshot = self.tracker.advance(
            processed=processed,
            updated=updated,
            skipped=skipped,
            errored=errored,
            message=message,
        )
        if snapshot is not None:
            self.report_percent(snapshot.percent)
        self.extend_locks()
        self.pause()
