from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import streamledger.db.session as db_session_module
from streamledger.core.config import Settings, get_settings
from streamledger.db.init_db import initialize_database
from streamledger.db.models import JobState, MaintenanceJob
from streamledger.handlers import DEFAULT_HANDLERS
from streamledger.handlers.registry import MaintenanceHandler
from streamledger.jobs.service import MaintenanceQueueService
from streamledger.locks.heavy_ops import HeavyOpsLockService
from streamledger.progress.channel import ProgressPublisher
from streamledger.progress.tracker import ProgressTracker
from streamledger.progress.types import PROGRESS_EVENT, JobResult
from streamledger.worker.runner import MaintenanceWorker, StalledJobMonitor


class RecordingChannel:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        self.events.append((event, payload))

    def statuses(self) -> list[str]:
        return [payload["status"] for _event, payload in self.events]


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def setup_env(tmp_path: Path, *, max_wait_seconds: int = 10) -> Settings:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["STREAMLEDGER_STATE_ROOT"] = state_root.as_posix()
    os.environ["STREAMLEDGER_HEAVY_OPS_WAIT_INTERVAL_SECONDS"] = "5"
    os.environ["STREAMLEDGER_HEAVY_OPS_MAX_WAIT_SECONDS"] = str(max_wait_seconds)
    os.environ["STREAMLEDGER_BATCH_DELAY_MS"] = "0"

    get_settings.cache_clear()
    db_session_module._engine = None
    db_session_module._session_factory = None
    initialize_database()
    return get_settings()


def make_worker(
    settings: Settings,
    handlers: dict[str, MaintenanceHandler] | None = None,
    *,
    clock: FakeClock | None = None,
    channel: RecordingChannel | None = None,
    worker_id: str = "worker-test",
) -> MaintenanceWorker:
    fake = clock or FakeClock()
    return MaintenanceWorker(
        settings,
        db_session_module.get_session_factory(),
        DEFAULT_HANDLERS if handlers is None else handlers,
        channel=channel,
        worker_id=worker_id,
        sleep=fake.sleep,
        clock=fake,
    )


def _expire_lock(job_id: str) -> None:
    with db_session_module.get_session_factory()() as session:
        job = session.get(MaintenanceJob, job_id)
        assert job is not None
        job.lock_expires_at = datetime.now(tz=timezone.utc) - timedelta(seconds=5)
        session.commit()


def test_run_once_without_jobs_returns_none(tmp_path: Path) -> None:
    worker = make_worker(setup_env(tmp_path))

    assert worker.run_once() is None


def test_worker_completes_job_and_releases_everything(tmp_path: Path) -> None:
    settings = setup_env(tmp_path)
    channel = RecordingChannel()
    worker = make_worker(settings, channel=channel)
    job = worker.queue.enqueue("fix_imported_progress", initiator_id="admin")

    finished = worker.run_once()

    assert finished is not None and finished.id == job.id
    assert finished.state == JobState.COMPLETED
    assert finished.progress == 100
    assert finished.result is not None
    assert finished.result["success"] is True
    assert finished.result["type"] == "fix_imported_progress"
    assert finished.result["message"] == "No imported sessions need progress repair"
    assert worker.heavy_lock.status() is None
    assert worker.register.current() is None
    assert {event for event, _payload in channel.events} == {PROGRESS_EVENT}
    assert channel.statuses()[0] == "running"
    assert channel.statuses()[-1] == "complete"


def test_handler_exception_fails_job_without_retry(tmp_path: Path) -> None:
    settings = setup_env(tmp_path)

    def explode(_ctx: Any) -> JobResult:
        raise RuntimeError("disk on fire")

    handlers = {"normalize_codecs": MaintenanceHandler("normalize_codecs", "codec name normalization", explode)}
    channel = RecordingChannel()
    worker = make_worker(settings, handlers, channel=channel)
    worker.queue.enqueue("normalize_codecs")

    finished = worker.run_once()

    assert finished is not None
    assert finished.state == JobState.FAILED
    assert finished.failed_reason == "disk on fire"
    assert finished.result is not None and finished.result["success"] is False
    assert finished.attempts == 1
    assert worker.heavy_lock.status() is None
    assert worker.register.current() is None
    assert channel.statuses()[-1] == "error"
    assert worker.run_once() is None


def test_unsuccessful_result_fails_job_and_keeps_result(tmp_path: Path) -> None:
    settings = setup_env(tmp_path)

    def half_broken(ctx: Any) -> JobResult:
        return JobResult(
            success=False,
            job_type=ctx.job_type,
            processed=4,
            errors=3,
            message="3 of 4 rows failed",
        )

    handlers = {"backfill_user_dates": MaintenanceHandler("backfill_user_dates", "user activity date backfill", half_broken)}
    worker = make_worker(settings, handlers)
    worker.queue.enqueue("backfill_user_dates")

    finished = worker.run_once()

    assert finished is not None
    assert finished.state == JobState.FAILED
    assert finished.failed_reason == "3 of 4 rows failed"
    assert finished.result is not None
    assert (finished.result["processed"], finished.result["errors"]) == (4, 3)


def test_unknown_job_type_fails(tmp_path: Path) -> None:
    settings = setup_env(tmp_path)
    worker = make_worker(settings, handlers={})
    worker.queue.enqueue("rebuild_aggregates")

    finished = worker.run_once()

    assert finished is not None
    assert finished.state == JobState.FAILED
    assert finished.failed_reason == "Unknown maintenance job type: rebuild_aggregates"


def test_worker_waits_for_heavy_lock_then_runs(tmp_path: Path) -> None:
    settings = setup_env(tmp_path, max_wait_seconds=60)
    lock = HeavyOpsLockService(settings, db_session_module.get_session_factory())
    assert lock.acquire("backfill_library_snapshots", "other-job", "library snapshot backfill") is None

    clock = FakeClock()
    original_sleep = clock.sleep

    def release_after_first_wait(seconds: float) -> None:
        original_sleep(seconds)
        lock.release("other-job")

    clock.sleep = release_after_first_wait  # type: ignore[method-assign]
    channel = RecordingChannel()
    worker = make_worker(settings, clock=clock, channel=channel)
    job = worker.queue.enqueue("normalize_codecs")

    finished = worker.run_once()

    assert finished is not None and finished.id == job.id
    assert finished.state == JobState.COMPLETED
    assert clock.sleeps == [5.0]
    waiting = [payload for _event, payload in channel.events if payload["status"] == "waiting"]
    assert len(waiting) == 1
    assert waiting[0]["waiting_for"]["job_id"] == "other-job"
    assert waiting[0]["message"] == "Waiting for library snapshot backfill to complete..."
    assert lock.status() is None


def test_worker_gives_up_waiting_for_heavy_lock(tmp_path: Path) -> None:
    settings = setup_env(tmp_path, max_wait_seconds=10)
    lock = HeavyOpsLockService(settings, db_session_module.get_session_factory())
    lock.acquire("backfill_library_snapshots", "other-job", "library snapshot backfill")
    clock = FakeClock()
    worker = make_worker(settings, clock=clock)
    worker.queue.enqueue("rebuild_aggregates")

    finished = worker.run_once()

    assert finished is not None
    assert finished.state == JobState.FAILED
    assert finished.failed_reason is not None
    assert finished.failed_reason.startswith("Timed out waiting for library snapshot backfill")
    assert clock.sleeps == [5.0, 5.0]
    holder = lock.status()
    assert holder is not None and holder.job_id == "other-job"


def test_handler_without_heavy_lock_ignores_holder(tmp_path: Path) -> None:
    settings = setup_env(tmp_path)
    lock = HeavyOpsLockService(settings, db_session_module.get_session_factory())
    lock.acquire("backfill_library_snapshots", "other-job", "library snapshot backfill")

    def quick(ctx: Any) -> JobResult:
        return JobResult(success=True, job_type=ctx.job_type, message="done")

    handlers = {"rebuild_aggregates": MaintenanceHandler("rebuild_aggregates", "rollup", quick, requires_heavy_lock=False)}
    clock = FakeClock()
    worker = make_worker(settings, handlers, clock=clock)
    worker.queue.enqueue("rebuild_aggregates")

    finished = worker.run_once()

    assert finished is not None and finished.state == JobState.COMPLETED
    assert clock.sleeps == []
    holder = lock.status()
    assert holder is not None and holder.job_id == "other-job"


def test_start_requeues_jobs_orphaned_by_previous_process(tmp_path: Path) -> None:
    settings = setup_env(tmp_path)
    previous = MaintenanceQueueService(settings, db_session_module.get_session_factory())
    job = previous.enqueue("fix_imported_progress")
    assert previous.claim_next("dead-worker") is not None
    _expire_lock(job.id)

    worker = make_worker(settings)
    assert worker.start() == [job.id]
    finished = worker.run_once()

    assert finished is not None and finished.id == job.id
    assert finished.state == JobState.COMPLETED
    assert finished.attempts == 2
    assert finished.worker_id == "worker-test"


def test_restarting_worker_requeues_its_own_active_job(tmp_path: Path) -> None:
    settings = setup_env(tmp_path)
    worker = make_worker(settings)
    job = worker.queue.enqueue("fix_imported_progress")
    assert worker.queue.claim_next("worker-test") is not None

    restarted = make_worker(settings)
    assert restarted.start() == [job.id]
    assert restarted.queue.get_job(job.id).state == JobState.WAITING


def test_second_worker_leaves_job_with_live_lock_alone(tmp_path: Path) -> None:
    settings = setup_env(tmp_path)
    worker_a = make_worker(settings, worker_id="worker-a")
    job = worker_a.queue.enqueue("normalize_codecs")
    claimed = worker_a.queue.claim_next("worker-a")
    assert claimed is not None
    assert worker_a.heavy_lock.acquire("normalize_codecs", claimed.id, "codec name normalization") is None

    worker_b = make_worker(settings, worker_id="worker-b")
    assert worker_b.start() == []
    assert worker_b.run_once() is None

    current = worker_b.queue.get_job(job.id)
    assert current.state == JobState.ACTIVE
    assert current.worker_id == "worker-a"
    assert current.lock_token == claimed.lock_token
    assert current.attempts == 1
    holder = worker_b.heavy_lock.status()
    assert holder is not None and holder.job_id == claimed.id


def test_losing_heavy_lock_mid_job_fails_fast(tmp_path: Path) -> None:
    settings = setup_env(tmp_path)
    reached_after_batch: list[bool] = []

    def lose_lock(ctx: Any) -> JobResult:
        ctx.heavy_lock.force_release()
        ctx.after_batch(processed=10, updated=10, skipped=0, errored=0, message="Normalized 10 sessions")
        reached_after_batch.append(True)
        return JobResult(success=True, job_type=ctx.job_type, message="should not get here")

    handlers = {"normalize_codecs": MaintenanceHandler("normalize_codecs", "codec name normalization", lose_lock)}
    channel = RecordingChannel()
    worker = make_worker(settings, handlers, channel=channel)
    job = worker.queue.enqueue("normalize_codecs")

    finished = worker.run_once()

    assert finished is not None and finished.id == job.id
    assert finished.state == JobState.FAILED
    assert finished.failed_reason == f"Lost heavy-ops lock for job {job.id} - aborting to allow clean retry"
    assert finished.result is not None and finished.result["success"] is False
    assert reached_after_batch == []
    assert worker.heavy_lock.status() is None
    assert worker.register.current() is None
    assert channel.statuses()[-1] == "error"


def test_stalled_job_progress_is_cleared_and_job_reclaimed(tmp_path: Path) -> None:
    settings = setup_env(tmp_path)
    worker = make_worker(settings)
    worker.start()
    job = worker.queue.enqueue("fix_imported_progress")
    claimed = worker.queue.claim_next("hung-worker")
    assert claimed is not None
    tracker = ProgressTracker(
        worker.register,
        ProgressPublisher(RecordingChannel(), event=PROGRESS_EVENT),
        job_id=claimed.id,
        job_type=claimed.job_type,
    )
    tracker.start("Hung")
    _expire_lock(claimed.id)

    finished = worker.run_once()

    assert finished is not None and finished.id == job.id
    assert finished.state == JobState.COMPLETED
    assert finished.stalled_count == 1
    assert worker.register.current() is None


def test_job_stalled_past_limit_is_failed_by_monitor_check(tmp_path: Path) -> None:
    os.environ["STREAMLEDGER_MAX_STALLED_COUNT"] = "0"
    settings = setup_env(tmp_path)
    worker = make_worker(settings)
    worker.start()
    worker.queue.enqueue("normalize_codecs")
    claimed = worker.queue.claim_next("hung-worker")
    assert claimed is not None
    _expire_lock(claimed.id)

    stalled = StalledJobMonitor(worker, interval_seconds=30).check()

    assert [job.id for job in stalled] == [claimed.id]
    assert stalled[0].state == JobState.FAILED
    assert stalled[0].failed_reason == "job stalled more than allowable limit"
    assert worker.run_once() is None
