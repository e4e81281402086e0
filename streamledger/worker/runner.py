from __future__ import annotations

import logging
import os
import socket
import threading
import time
from typing import Callable, Mapping

from sqlalchemy.orm import Session, sessionmaker

from streamledger.core.config import Settings
from streamledger.handlers.registry import MaintenanceHandler
from streamledger.jobs.service import LockLostError, MaintenanceQueueService
from streamledger.jobs.types import JobSnapshot
from streamledger.locks.heavy_ops import HeavyOpsLockService
from streamledger.locks.policy import LockWaitPolicy, acquire_with_wait
from streamledger.locks.types import HeavyOpsLockHolder
from streamledger.progress.channel import NullProgressChannel, ProgressChannel, ProgressPublisher
from streamledger.progress.register import ProgressRegister
from streamledger.progress.tracker import ProgressTracker
from streamledger.progress.types import PROGRESS_EVENT, JobResult, WaitingFor
from streamledger.worker.context import JobContext

logger = logging.getLogger(__name__)


class UnknownJobTypeError(RuntimeError):
    pass


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class MaintenanceWorker:
    """Single-concurrency consumer of the maintenance queue."""

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        handlers: Mapping[str, MaintenanceHandler],
        *,
        channel: ProgressChannel | None = None,
        register: ProgressRegister | None = None,
        worker_id: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._handlers = dict(handlers)
        self._channel = channel or NullProgressChannel()
        self._sleep = sleep
        self._clock = clock
        self.worker_id = worker_id or default_worker_id()
        self.queue = MaintenanceQueueService(settings, session_factory)
        self.heavy_lock = HeavyOpsLockService(settings, session_factory)
        self.register = register or ProgressRegister()
        self.wait_policy = LockWaitPolicy.from_settings(settings)
        self._started = False
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._monitor: StalledJobMonitor | None = None

    def start(self) -> list[str]:
        """Reconcile state left by a previous process. Returns the ids of requeued jobs."""
        recovered = self.queue.recover_orphaned_active(self.worker_id)
        if recovered:
            logger.warning("Requeued %d maintenance job(s) orphaned by a previous process", len(recovered))
        expired_locks = self.heavy_lock.cleanup_expired()
        if expired_locks:
            logger.info("Removed %d expired heavy-ops lock row(s)", expired_locks)
        self.register.reset()
        self._started = True
        return recovered

    def run_once(self) -> JobSnapshot | None:
        if not self._started:
            self.start()
        self.release_stalled_progress(self.queue.sweep_stalled())
        job = self.queue.claim_next(self.worker_id)
        if job is None:
            return None
        return self._execute(job)

    def release_stalled_progress(self, stalled: list[JobSnapshot]) -> None:
        for job in stalled:
            if self.register.release(job.id):
                logger.warning("Cleared progress of stalled job %s", job.id)

    def _publisher(self) -> ProgressPublisher:
        return ProgressPublisher(
            self._channel,
            event=PROGRESS_EVENT,
            every_rows=self._settings.progress_publish_every_rows,
            min_interval_seconds=self._settings.progress_publish_min_interval_seconds,
            clock=self._clock,
        )

    def _execute(self, job: JobSnapshot) -> JobSnapshot:
        handler = self._handlers.get(job.job_type)
        if handler is None:
            error = UnknownJobTypeError(f"Unknown maintenance job type: {job.job_type}")
            logger.error("%s (job %s)", error, job.id)
            return self._settle_failure(job, str(error), JobResult(success=False, job_type=job.job_type, message=str(error)))

        tracker = ProgressTracker(self.register, self._publisher(), job_id=job.id, job_type=job.job_type)
        context = JobContext(
            job=job,
            settings=self._settings,
            session_factory=self._session_factory,
            queue=self.queue,
            heavy_lock=self.heavy_lock,
            tracker=tracker,
            sleep=self._sleep,
        )
        started = self._clock()
        logger.info("Starting job %s (%s)", job.id, job.job_type)
        tracker.start(f"Starting {handler.description}...")
        failure: JobResult | None = None
        result: JobResult | None = None
        try:
            if handler.requires_heavy_lock:
                acquire_with_wait(
                    self.heavy_lock,
                    job_type=job.job_type,
                    job_id=job.id,
                    description=handler.description,
                    policy=self.wait_policy,
                    on_wait=lambda holder, _elapsed: self._on_lock_wait(context, holder),
                    sleep=self._sleep,
                    clock=self._clock,
                )
                context.holds_heavy_lock = True
                tracker.running(f"Running {handler.description}...")
            result = handler.run(context)
        except Exception as exc:
            reason = str(exc) or exc.__class__.__name__
            duration_ms = int((self._clock() - started) * 1000)
            logger.error("Job %s failed after %dms: %s", job.id, duration_ms, reason, exc_info=True)
            current = tracker.snapshot()
            failure = JobResult(
                success=False,
                job_type=job.job_type,
                processed=current.processed if current else 0,
                updated=current.updated if current else 0,
                skipped=current.skipped if current else 0,
                errors=current.errored if current else 0,
                duration_ms=duration_ms,
                message=reason,
            )
            tracker.fail(f"Job failed: {reason}")
        finally:
            if context.holds_heavy_lock:
                self.heavy_lock.release(job.id)
                context.holds_heavy_lock = False

        if failure is not None or result is None:
            failure = failure or JobResult(success=False, job_type=job.job_type, message="Handler returned no result")
            return self._settle_failure(job, failure.message, failure)

        result.duration_ms = int((self._clock() - started) * 1000)
        if not result.success:
            tracker.fail(result.message)
            return self._settle_failure(job, result.message or "Job reported failure", result)

        tracker.complete(result.message)
        logger.info("Job %s completed in %dms: %s", job.id, result.duration_ms, result.message)
        try:
            return self.queue.complete(job.id, job.lock_token or "", result.to_dict())
        except LockLostError:
            logger.warning("Job %s finished after losing its execution lock; result not recorded", job.id)
            return self.queue.get_job(job.id)

    def _on_lock_wait(self, context: JobContext, holder: HeavyOpsLockHolder) -> None:
        context.tracker.waiting(
            WaitingFor(
                job_type=holder.job_type,
                job_id=holder.job_id,
                description=holder.description,
                started_at=holder.started_at,
            )
        )
        context.extend_locks()

    def _settle_failure(self, job: JobSnapshot, reason: str, result: JobResult) -> JobSnapshot:
        try:
            return self.queue.fail(job.id, job.lock_token or "", reason, result.to_dict())
        except LockLostError:
            logger.warning("Job %s failed after losing its execution lock; failure not recorded", job.id)
            return self.queue.get_job(job.id)

    def run_forever(self, stop_event: threading.Event | None = None) -> None:
        stop = stop_event or self._stop_event
        if not self._started:
            self.start()
        while not stop.is_set():
            try:
                job = self.run_once()
            except Exception:
                logger.exception("Maintenance worker loop error")
                job = None
            if job is None:
                stop.wait(self._settings.worker_poll_seconds)

    def start_background(self) -> threading.Thread:
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self.start()
        self._stop_event.clear()
        self._monitor = StalledJobMonitor(self, interval_seconds=self._settings.stalled_check_interval_seconds)
        self._monitor.start()
        self._thread = threading.Thread(target=self.run_forever, name="maintenance-worker", daemon=True)
        self._thread.start()
        logger.info("Maintenance worker %s started", self.worker_id)
        return self._thread

    def close(self, timeout: float = 10.0) -> None:
        self._stop_event.set()
        if self._monitor is not None:
            self._monitor.stop(timeout)
            self._monitor = None
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Maintenance worker %s stopped", self.worker_id)


class StalledJobMonitor:
    """Periodically detects jobs whose execution lock expired while the worker is busy."""

    def __init__(self, worker: MaintenanceWorker, *, interval_seconds: float):
        self._worker = worker
        self._interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name="maintenance-stall-monitor", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        self._stop_event.set()
        self._thread.join(timeout=timeout)

    def check(self) -> list[JobSnapshot]:
        stalled = self._worker.queue.sweep_stalled()
        self._worker.release_stalled_progress(stalled)
        return stalled

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval_seconds):
            try:
                self.check()
            except Exception:
                logger.exception("Stalled job check failed")
