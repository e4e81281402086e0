from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from streamledger.core.config import Settings
from streamledger.db.models import ADMITTED_JOB_STATES, TERMINAL_JOB_STATES, JobState, MaintenanceJob
from streamledger.jobs.types import ClearStuckResult, JobSnapshot, JobStatusView, QueueStats

logger = logging.getLogger(__name__)

JOB_ID_PREFIX = "maintenance"
CONFLICT_MESSAGE = "A maintenance job is already in progress"


class JobConflictError(RuntimeError):
    pass


class JobNotFoundError(RuntimeError):
    pass


class InvalidJobStateError(RuntimeError):
    pass


class LockLostError(RuntimeError):
    pass


ALLOWED_TRANSITIONS: dict[JobState, set[JobState]] = {
    JobState.WAITING: {JobState.ACTIVE, JobState.FAILED},
    JobState.DELAYED: {JobState.ACTIVE, JobState.WAITING, JobState.FAILED},
    JobState.ACTIVE: {JobState.COMPLETED, JobState.FAILED, JobState.STALLED, JobState.WAITING},
    JobState.STALLED: {JobState.ACTIVE, JobState.WAITING, JobState.FAILED},
    JobState.COMPLETED: set(),
    JobState.FAILED: set(),
}


class MaintenanceQueueService:
    """Durable, globally serialized queue of maintenance jobs.

    At most one job may be admitted (waiting, delayed, active or stalled) at a
    time. The check in ``enqueue`` is backed by a partial unique index so two
    processes racing to enqueue cannot both succeed.
    """

    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _lock_delta(self, seconds: int | None = None) -> timedelta:
        return timedelta(seconds=seconds if seconds is not None else self._settings.job_lock_duration_seconds)

    def _coerce_utc(self, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def _enforce_transition(self, from_state: JobState, to_state: JobState) -> None:
        if to_state not in ALLOWED_TRANSITIONS[from_state]:
            raise InvalidJobStateError(f"Illegal transition: {from_state.value} -> {to_state.value}")

    def _normalize_job_type(self, job_type: str) -> str:
        normalized = str(getattr(job_type, "value", job_type)).strip()
        if not normalized:
            raise ValueError("job_type cannot be blank")
        return normalized

    def _next_job_id(self, session: Session, job_type: str, now: datetime) -> str:
        epoch_ms = int(now.timestamp() * 1000)
        while True:
            job_id = f"{JOB_ID_PREFIX}-{job_type}-{epoch_ms}"
            if session.get(MaintenanceJob, job_id) is None:
                return job_id
            epoch_ms += 1

    def enqueue(
        self,
        job_type: str,
        *,
        initiator_id: str | None = None,
        options: dict[str, Any] | None = None,
        delay_seconds: int | None = None,
    ) -> JobSnapshot:
        normalized_type = self._normalize_job_type(job_type)
        if delay_seconds is not None and delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")

        with self._session_factory() as session:
            admitted = session.scalar(
                select(MaintenanceJob.id).where(MaintenanceJob.state.in_(ADMITTED_JOB_STATES)).limit(1)
            )
            if admitted is not None:
                raise JobConflictError(CONFLICT_MESSAGE)

            now = self._now()
            delayed = bool(delay_seconds)
            job = MaintenanceJob(
                id=self._next_job_id(session, normalized_type, now),
                job_type=normalized_type,
                state=JobState.DELAYED if delayed else JobState.WAITING,
                initiator_id=initiator_id,
                payload=dict(options or {}),
                attempts=0,
                stalled_count=0,
                progress=0,
                run_after=now + timedelta(seconds=delay_seconds or 0),
                created_at=now,
                updated_at=now,
            )
            session.add(job)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise JobConflictError(CONFLICT_MESSAGE) from exc
            session.refresh(job)
            logger.info("Enqueued maintenance job %s (%s) by %s", job.id, normalized_type, initiator_id or "system")
            return self._to_snapshot(job)

    def get_job(self, job_id: str) -> JobSnapshot:
        with self._session_factory() as session:
            job = session.get(MaintenanceJob, job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            return self._to_snapshot(job)

    def get_status(self, job_id: str) -> JobStatusView:
        snapshot = self.get_job(job_id)
        return JobStatusView(
            job_id=snapshot.id,
            job_type=snapshot.job_type,
            state=snapshot.state,
            progress=snapshot.progress,
            result=snapshot.result,
            failed_reason=snapshot.failed_reason,
            created_at=snapshot.created_at,
            started_at=snapshot.started_at,
            finished_at=snapshot.finished_at,
        )

    def list_active(self) -> list[JobSnapshot]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(MaintenanceJob)
                .where(MaintenanceJob.state.in_(ADMITTED_JOB_STATES))
                .order_by(MaintenanceJob.created_at.asc(), MaintenanceJob.id.asc())
            ).all()
            return [self._to_snapshot(row) for row in rows]

    def history(self, limit: int = 10) -> list[JobSnapshot]:
        bounded_limit = max(1, min(limit, 200))
        with self._session_factory() as session:
            rows = session.scalars(
                select(MaintenanceJob)
                .where(MaintenanceJob.state.in_(TERMINAL_JOB_STATES))
                .order_by(MaintenanceJob.finished_at.desc(), MaintenanceJob.id.desc())
                .limit(bounded_limit)
            ).all()
            return [self._to_snapshot(row) for row in rows]

    def stats(self) -> QueueStats:
        with self._session_factory() as session:
            counts = {
                state: int(count)
                for state, count in session.execute(
                    select(MaintenanceJob.state, func.count(MaintenanceJob.id)).group_by(MaintenanceJob.state)
                ).all()
            }
        return QueueStats(
            waiting=counts.get(JobState.WAITING, 0),
            delayed=counts.get(JobState.DELAYED, 0),
            active=counts.get(JobState.ACTIVE, 0),
            stalled=counts.get(JobState.STALLED, 0),
            completed=counts.get(JobState.COMPLETED, 0),
            failed=counts.get(JobState.FAILED, 0),
        )

    def is_job_type_running(self, job_type: str) -> tuple[bool, JobState | None]:
        """Report whether a job of this type is admitted, and in which state."""
        normalized_type = self._normalize_job_type(job_type)
        with self._session_factory() as session:
            state = session.scalar(
                select(MaintenanceJob.state)
                .where(
                    MaintenanceJob.job_type == normalized_type,
                    MaintenanceJob.state.in_(ADMITTED_JOB_STATES),
                )
                .limit(1)
            )
            return state is not None, state

    def claim_next(self, worker_id: str) -> JobSnapshot | None:
        normalized_worker_id = worker_id.strip()
        if not normalized_worker_id:
            raise ValueError("worker_id cannot be blank")

        now = self._now()
        token = uuid4().hex
        claimable = or_(
            MaintenanceJob.state.in_([JobState.STALLED, JobState.WAITING]),
            (MaintenanceJob.state == JobState.DELAYED) & (MaintenanceJob.run_after <= now),
        )
        candidate = (
            select(MaintenanceJob.id)
            .where(claimable)
            .order_by(
                case((MaintenanceJob.state == JobState.STALLED, 0), else_=1),
                MaintenanceJob.created_at.asc(),
                MaintenanceJob.id.asc(),
            )
            .limit(1)
            .scalar_subquery()
        )
        with self._session_factory() as session:
            result = session.execute(
                update(MaintenanceJob)
                .where(MaintenanceJob.id == candidate, claimable)
                .values(
                    state=JobState.ACTIVE,
                    worker_id=normalized_worker_id,
                    lock_token=token,
                    lock_expires_at=now + self._lock_delta(),
                    attempts=MaintenanceJob.attempts + 1,
                    started_at=func.coalesce(MaintenanceJob.started_at, now),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if int(result.rowcount or 0) != 1:
                session.rollback()
                return None
            session.commit()

            claimed = session.scalar(select(MaintenanceJob).where(MaintenanceJob.lock_token == token))
            if claimed is None:
                raise JobConflictError("Claimed job disappeared before snapshot fetch")
            logger.info(
                "Worker %s claimed job %s (%s), attempt %d",
                normalized_worker_id,
                claimed.id,
                claimed.job_type,
                claimed.attempts,
            )
            return self._to_snapshot(claimed)

    def extend_lock(self, job_id: str, token: str, seconds: int | None = None) -> datetime:
        duration = seconds if seconds is not None else self._settings.job_lock_extend_seconds
        with self._session_factory() as session:
            now = self._now()
            expires_at = now + self._lock_delta(duration)
            result = session.execute(
                update(MaintenanceJob)
                .where(
                    MaintenanceJob.id == job_id,
                    MaintenanceJob.lock_token == token,
                    MaintenanceJob.state == JobState.ACTIVE,
                    MaintenanceJob.lock_expires_at > now,
                )
                .values(lock_expires_at=expires_at, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if int(result.rowcount or 0) != 1:
                session.rollback()
                raise LockLostError(f"Lost lock for job {job_id} - aborting to allow clean retry")
            session.commit()
            return expires_at

    def update_progress(self, job_id: str, token: str, percent: int) -> None:
        bounded = max(0, min(100, int(percent)))
        with self._session_factory() as session:
            result = session.execute(
                update(MaintenanceJob)
                .where(
                    MaintenanceJob.id == job_id,
                    MaintenanceJob.lock_token == token,
                    MaintenanceJob.state == JobState.ACTIVE,
                )
                .values(progress=bounded, updated_at=self._now())
                .execution_options(synchronize_session=False)
            )
            if int(result.rowcount or 0) != 1:
                session.rollback()
                raise LockLostError(f"Lost lock for job {job_id} - aborting to allow clean retry")
            session.commit()

    def complete(self, job_id: str, token: str, result: dict[str, Any] | None = None) -> JobSnapshot:
        return self._finish(job_id, token, JobState.COMPLETED, result=result, failed_reason=None)

    def fail(
        self,
        job_id: str,
        token: str,
        reason: str,
        result: dict[str, Any] | None = None,
    ) -> JobSnapshot:
        return self._finish(job_id, token, JobState.FAILED, result=result, failed_reason=reason)

    def _finish(
        self,
        job_id: str,
        token: str,
        target: JobState,
        *,
        result: dict[str, Any] | None,
        failed_reason: str | None,
    ) -> JobSnapshot:
        with self._session_factory() as session:
            job = session.get(MaintenanceJob, job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            if job.state != JobState.ACTIVE or job.lock_token != token:
                raise LockLostError(f"Job {job_id} is no longer owned by this worker")
            self._enforce_transition(job.state, target)
            now = self._now()
            job.state = target
            job.result = result
            job.failed_reason = failed_reason
            if target == JobState.COMPLETED:
                job.progress = 100
            job.lock_token = None
            job.lock_expires_at = None
            job.finished_at = now
            job.updated_at = now
            session.commit()
            session.refresh(job)
            snapshot = self._to_snapshot(job)
        if target == JobState.COMPLETED:
            logger.info("Maintenance job %s completed", job_id)
        else:
            logger.error("Maintenance job %s failed: %s", job_id, failed_reason)
        self.prune_history()
        return snapshot

    def recover_orphaned_active(self, worker_id: str | None = None) -> list[str]:
        """Move jobs left active by a previous process back to waiting.

        Only jobs whose execution lock already lapsed, or that were claimed under
        ``worker_id`` itself, are requeued. A job still locked by another live
        worker is left to ``sweep_stalled``.
        """
        now = self._now()
        abandoned = or_(MaintenanceJob.lock_expires_at.is_(None), MaintenanceJob.lock_expires_at <= now)
        if worker_id is not None:
            abandoned = or_(abandoned, MaintenanceJob.worker_id == worker_id.strip())
        with self._session_factory() as session:
            orphaned = list(
                session.scalars(
                    select(MaintenanceJob).where(MaintenanceJob.state == JobState.ACTIVE, abandoned)
                ).all()
            )
            for job in orphaned:
                self._enforce_transition(job.state, JobState.WAITING)
                job.state = JobState.WAITING
                job.worker_id = None
                job.lock_token = None
                job.lock_expires_at = None
                job.run_after = now
                job.updated_at = now
                logger.warning("Recovered orphaned maintenance job %s (%s) to waiting", job.id, job.job_type)
            if orphaned:
                session.commit()
            return [job.id for job in orphaned]

    def sweep_stalled(self) -> list[JobSnapshot]:
        """Mark active jobs whose execution lock expired as stalled, or failed past the stall limit."""
        with self._session_factory() as session:
            now = self._now()
            expired = list(
                session.scalars(
                    select(MaintenanceJob).where(
                        MaintenanceJob.state == JobState.ACTIVE,
                        or_(MaintenanceJob.lock_expires_at.is_(None), MaintenanceJob.lock_expires_at <= now),
                    )
                ).all()
            )
            for job in expired:
                job.stalled_count += 1
                if job.stalled_count > self._settings.max_stalled_count:
                    self._enforce_transition(job.state, JobState.FAILED)
                    job.state = JobState.FAILED
                    job.failed_reason = "job stalled more than allowable limit"
                    job.finished_at = now
                    logger.error("Maintenance job %s exceeded stall limit; failed", job.id)
                else:
                    self._enforce_transition(job.state, JobState.STALLED)
                    job.state = JobState.STALLED
                    logger.warning("Maintenance job %s stalled (%d)", job.id, job.stalled_count)
                job.worker_id = None
                job.lock_token = None
                job.lock_expires_at = None
                job.updated_at = now
            if expired:
                session.commit()
            return [self._to_snapshot(job) for job in expired]

    def clear_stuck(self) -> ClearStuckResult:
        with self._session_factory() as session:
            now = self._now()
            running = list(
                session.scalars(
                    select(MaintenanceJob).where(MaintenanceJob.state.in_([JobState.ACTIVE, JobState.STALLED]))
                ).all()
            )
            for job in running:
                self._enforce_transition(job.state, JobState.FAILED)
                job.state = JobState.FAILED
                job.failed_reason = "Manually cleared (stuck job)"
                job.worker_id = None
                job.lock_token = None
                job.lock_expires_at = None
                job.finished_at = now
                job.updated_at = now
            removed_waiting = session.execute(
                delete(MaintenanceJob).where(MaintenanceJob.state == JobState.WAITING)
            ).rowcount
            removed_delayed = session.execute(
                delete(MaintenanceJob).where(MaintenanceJob.state == JobState.DELAYED)
            ).rowcount
            session.commit()
        outcome = ClearStuckResult(
            failed_active=len(running),
            removed_waiting=int(removed_waiting or 0),
            removed_delayed=int(removed_delayed or 0),
        )
        logger.warning("Cleared stuck maintenance jobs: %s", asdict(outcome))
        return outcome

    def obliterate(self) -> int:
        with self._session_factory() as session:
            removed = int(session.execute(delete(MaintenanceJob)).rowcount or 0)
            session.commit()
        logger.warning("Obliterated maintenance queue (%d jobs removed)", removed)
        return removed

    def prune_history(self, *, session: Session | None = None) -> int:
        owns_session = session is None
        local_session = session or self._session_factory()
        cutoff = self._now() - timedelta(days=self._settings.job_retention_days)
        removed = int(
            local_session.execute(
                delete(MaintenanceJob).where(
                    MaintenanceJob.state.in_(TERMINAL_JOB_STATES),
                    MaintenanceJob.finished_at < cutoff,
                )
            ).rowcount
            or 0
        )
        for state, keep in (
            (JobState.COMPLETED, self._settings.keep_completed_jobs),
            (JobState.FAILED, self._settings.keep_failed_jobs),
        ):
            overflow = select(MaintenanceJob.id).where(MaintenanceJob.state == state).order_by(
                MaintenanceJob.finished_at.desc(), MaintenanceJob.id.desc()
            ).offset(keep)
            overflow_ids = list(local_session.scalars(overflow).all())
            if overflow_ids:
                local_session.execute(delete(MaintenanceJob).where(MaintenanceJob.id.in_(overflow_ids)))
                removed += len(overflow_ids)
        if owns_session:
            local_session.commit()
            local_session.close()
        return removed

    def _to_snapshot(self, job: MaintenanceJob) -> JobSnapshot:
        return JobSnapshot(
            id=job.id,
            job_type=job.job_type,
            state=job.state,
            initiator_id=job.initiator_id,
            payload=dict(job.payload or {}),
            attempts=job.attempts,
            stalled_count=job.stalled_count,
            progress=job.progress,
            result=job.result,
            failed_reason=job.failed_reason,
            worker_id=job.worker_id,
            lock_token=job.lock_token,
            lock_expires_at=self._coerce_utc(job.lock_expires_at),
            run_after=self._coerce_utc(job.run_after),
            created_at=self._coerce_utc(job.created_at) or job.created_at,
            updated_at=self._coerce_utc(job.updated_at) or job.updated_at,
            started_at=self._coerce_utc(job.started_at),
            finished_at=self._coerce_utc(job.finished_at),
        )


def snapshot_to_dict(snapshot: JobSnapshot) -> dict[str, Any]:
    return {
        "id": snapshot.id,
        "type": snapshot.job_type,
        "state": snapshot.state.value,
        "initiator_id": snapshot.initiator_id,
        "payload": snapshot.payload,
        "attempts": snapshot.attempts,
        "stalled_count": snapshot.stalled_count,
        "progress": snapshot.progress,
        "result": snapshot.result,
        "failed_reason": snapshot.failed_reason,
        "worker_id": snapshot.worker_id,
        "lock_expires_at": snapshot.lock_expires_at,
        "run_after": snapshot.run_after,
        "created_at": snapshot.created_at,
        "updated_at": snapshot.updated_at,
        "started_at": snapshot.started_at,
        "finished_at": snapshot.finished_at,
    }


def status_to_dict(status: JobStatusView) -> dict[str, Any]:
    return {
        "job_id": status.job_id,
        "type": status.job_type,
        "state": status.state.value,
        "progress": status.progress,
        "result": status.result,
        "failed_reason": status.failed_reason,
        "created_at": status.created_at,
        "started_at": status.started_at,
        "finished_at": status.finished_at,
    }
