from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from streamledger.progress.channel import ProgressPublisher
from streamledger.progress.register import ProgressRegister
from streamledger.progress.types import ProgressSnapshot, ProgressStatus, WaitingFor

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class ProgressTracker:
    """Mutates the progress register on behalf of one job and publishes the result."""

    def __init__(
        self,
        register: ProgressRegister,
        publisher: ProgressPublisher,
        *,
        job_id: str,
        job_type: str,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._register = register
        self._publisher = publisher
        self._job_id = job_id
        self._job_type = job_type
        self._now = now
        self._finished = False

    @property
    def job_id(self) -> str:
        return self._job_id

    def snapshot(self) -> ProgressSnapshot | None:
        current = self._register.current()
        if current is None or current.job_id != self._job_id:
            return None
        return current

    def start(self, message: str = "Starting...") -> ProgressSnapshot:
        now = self._now()
        snapshot = ProgressSnapshot(
            job_id=self._job_id,
            job_type=self._job_type,
            status=ProgressStatus.RUNNING,
            total=0,
            processed=0,
            updated=0,
            skipped=0,
            errored=0,
            message=message,
            started_at=now,
            updated_at=now,
        )
        self._register.begin(snapshot)
        self._publisher.maybe_publish(snapshot, force=True)
        return snapshot

    def waiting(self, holder: WaitingFor, message: str | None = None) -> ProgressSnapshot | None:
        text = message or f"Waiting for {holder.description or holder.job_type} to complete..."
        return self._apply(
            lambda current: current.evolve(
                status=ProgressStatus.WAITING,
                waiting_for=holder,
                message=text,
                updated_at=self._now(),
            ),
            force=True,
        )

    def running(self, message: str) -> ProgressSnapshot | None:
        return self._apply(
            lambda current: current.evolve(
                status=ProgressStatus.RUNNING,
                waiting_for=None,
                message=message,
                updated_at=self._now(),
            ),
        )

    def set_total(self, total: int, message: str | None = None) -> ProgressSnapshot | None:
        return self._apply(
            lambda current: current.evolve(
                total=max(0, total),
                message=message if message is not None else current.message,
                updated_at=self._now(),
            ),
            force=True,
        )

    def advance(
        self,
        *,
        processed: int = 0,
        updated: int = 0,
        skipped: int = 0,
        errored: int = 0,
        message: str | None = None,
    ) -> ProgressSnapshot | None:
        def change(current: ProgressSnapshot) -> ProgressSnapshot:
            next_processed = current.processed + processed
            return current.evolve(
                status=ProgressStatus.RUNNING,
                waiting_for=None,
                processed=next_processed,
                total=max(current.total, next_processed),
                updated=current.updated + updated,
                skipped=current.skipped + skipped,
                errored=current.errored + errored,
                message=message if message is not None else current.message,
                updated_at=self._now(),
            )

        return self._apply(change)

    def complete(self, message: str) -> ProgressSnapshot | None:
        return self._finish(ProgressStatus.COMPLETE, message)

    def fail(self, message: str) -> ProgressSnapshot | None:
        return self._finish(ProgressStatus.ERROR, message)

    def _finish(self, status: ProgressStatus, message: str) -> ProgressSnapshot | None:
        if self._finished:
            return None
        now = self._now()
        final = self._apply(
            lambda current: current.evolve(
                status=status,
                waiting_for=None,
                message=message,
                updated_at=now,
                completed_at=now,
            ),
            force=True,
        )
        self._finished = True
        self._register.release(self._job_id)
        return final

    def _apply(
        self,
        change: Callable[[ProgressSnapshot], ProgressSnapshot],
        *,
        force: bool = False,
    ) -> ProgressSnapshot | None:
        snapshot = self._register.mutate(self._job_id, change)
        if snapshot is None:
            logger.debug("Progress slot no longer owned by job %s; update ignored", self._job_id)
            return None
        self._publisher.maybe_publish(snapshot, force=force)
        return snapshot
