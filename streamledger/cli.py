from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from datetime import date, datetime
from enum import Enum
from typing import Any

from streamledger.core.config import get_settings
from streamledger.core.logging import configure_logging, log_event
from streamledger.db.init_db import initialize_database
from streamledger.db.models import MaintenanceJobType
from streamledger.db.session import get_session_factory
from streamledger.handlers import DEFAULT_HANDLERS
from streamledger.jobs.service import (
    JobConflictError,
    JobNotFoundError,
    MaintenanceQueueService,
    snapshot_to_dict,
    status_to_dict,
)
from streamledger.locks.heavy_ops import HeavyOpsLockService
from streamledger.locks.types import holder_to_dict
from streamledger.progress.channel import InMemoryProgressChannel
from streamledger.worker.runner import MaintenanceWorker


def _setup_logging() -> logging.Logger:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_file)
    return logging.getLogger("streamledger")


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {value.__class__.__name__} is not JSON serializable")


def _emit(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True, default=_json_default))
    sys.stdout.write("\n")
    sys.stdout.flush()


def _queue_service() -> MaintenanceQueueService:
    initialize_database()
    return MaintenanceQueueService(get_settings(), get_session_factory())


def _lock_service() -> HeavyOpsLockService:
    initialize_database()
    return HeavyOpsLockService(get_settings(), get_session_factory())


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    initialize_database()
    log_event(logger, logging.INFO, "db_migrated", url=get_settings().effective_database_url)
    return 0


def _cmd_jobs_enqueue(args: argparse.Namespace, logger: logging.Logger) -> int:
    queue = _queue_service()
    options: dict[str, Any] = {}
    if args.full_refresh:
        options["full_refresh"] = True
    try:
        snapshot = queue.enqueue(
            args.job_type,
            initiator_id=args.initiator,
            options=options,
            delay_seconds=args.delay_seconds,
        )
    except JobConflictError as exc:
        log_event(logger, logging.ERROR, "job_conflict", job_type=args.job_type, error=str(exc))
        _emit({"error": str(exc)})
        return 1
    log_event(logger, logging.INFO, "job_enqueued", job_id=snapshot.id, job_type=snapshot.job_type)
    _emit(snapshot_to_dict(snapshot))
    return 0


def _cmd_jobs_status(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        status = _queue_service().get_status(args.job_id)
    except JobNotFoundError as exc:
        log_event(logger, logging.ERROR, "job_not_found", job_id=args.job_id)
        _emit({"error": str(exc)})
        return 1
    _emit(status_to_dict(status))
    return 0


def _cmd_jobs_active(args: argparse.Namespace, logger: logging.Logger) -> int:
    _emit([snapshot_to_dict(job) for job in _queue_service().list_active()])
    return 0


def _cmd_jobs_running(args: argparse.Namespace, logger: logging.Logger) -> int:
    running, state = _queue_service().is_job_type_running(args.job_type)
    _emit({"job_type": args.job_type, "running": running, "state": state})
    return 0


def _cmd_jobs_history(args: argparse.Namespace, logger: logging.Logger) -> int:
    _emit([snapshot_to_dict(job) for job in _queue_service().history(args.limit)])
    return 0


def _cmd_jobs_stats(args: argparse.Namespace, logger: logging.Logger) -> int:
    stats = _queue_service().stats()
    _emit(
        {
            "waiting": stats.waiting,
            "delayed": stats.delayed,
            "active": stats.active,
            "stalled": stats.stalled,
            "completed": stats.completed,
            "failed": stats.failed,
        }
    )
    return 0


def _cmd_jobs_clear_stuck(args: argparse.Namespace, logger: logging.Logger) -> int:
    outcome = _queue_service().clear_stuck()
    log_event(
        logger,
        logging.WARNING,
        "jobs_cleared",
        failed_active=outcome.failed_active,
        removed_waiting=outcome.removed_waiting,
        removed_delayed=outcome.removed_delayed,
    )
    _emit(
        {
            "failed_active": outcome.failed_active,
            "removed_waiting": outcome.removed_waiting,
            "removed_delayed": outcome.removed_delayed,
        }
    )
    return 0


def _cmd_jobs_obliterate(args: argparse.Namespace, logger: logging.Logger) -> int:
    if not args.yes:
        log_event(logger, logging.ERROR, "obliterate_refused", reason="pass --yes to wipe the queue")
        return 2
    removed = _queue_service().obliterate()
    _emit({"removed": removed})
    return 0


def _cmd_lock_status(args: argparse.Namespace, logger: logging.Logger) -> int:
    holder = _lock_service().status()
    _emit({"held": holder is not None, "holder": holder_to_dict(holder) if holder else None})
    return 0


def _cmd_lock_force_release(args: argparse.Namespace, logger: logging.Logger) -> int:
    holder = _lock_service().force_release()
    if holder is not None:
        log_event(logger, logging.WARNING, "heavy_ops_lock_forced", job_id=holder.job_id, job_type=holder.job_type)
    _emit({"released": holder is not None, "holder": holder_to_dict(holder) if holder else None})
    return 0


def _cmd_worker(args: argparse.Namespace, logger: logging.Logger) -> int:
    settings = get_settings()
    initialize_database()
    channel = InMemoryProgressChannel(capacity=settings.progress_channel_capacity)
    channel.subscribe(
        lambda event, payload: log_event(
            logger,
            logging.INFO,
            event,
            job_id=payload.get("job_id"),
            status=payload.get("status"),
            percent=payload.get("percent"),
            message=payload.get("message"),
        )
    )
    worker = MaintenanceWorker(
        settings,
        get_session_factory(),
        DEFAULT_HANDLERS,
        channel=channel,
        worker_id=args.worker_id,
    )
    try:
        if args.once:
            worker.start()
            job = worker.run_once()
            channel.flush()
            _emit(snapshot_to_dict(job) if job is not None else None)
            return 0 if job is None or job.failed_reason is None else 1

        stop = threading.Event()
        worker.start_background()
        try:
            while not stop.wait(1.0):
                pass
        except KeyboardInterrupt:
            log_event(logger, logging.INFO, "worker_interrupted", worker_id=worker.worker_id)
        return 0
    finally:
        worker.close()
        channel.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="streamledger", description="StreamLedger maintenance jobs")
    subparsers = parser.add_subparsers(dest="command", required=True)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)

    db_migrate = db_subparsers.add_parser("migrate", help="Create tables and apply migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    jobs_parser = subparsers.add_parser("jobs", help="Maintenance queue commands")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)

    jobs_enqueue = jobs_subparsers.add_parser("enqueue", help="Enqueue a maintenance job")
    jobs_enqueue.add_argument(
        "job_type",
        choices=[job_type.value for job_type in MaintenanceJobType],
        help="Maintenance job type",
    )
    jobs_enqueue.add_argument("--initiator", default=None, help="Who requested the job")
    jobs_enqueue.add_argument(
        "--full-refresh",
        action="store_true",
        help="Recompute the whole aggregate history instead of the recent window",
    )
    jobs_enqueue.add_argument("--delay-seconds", type=int, default=None, help="Hold the job before it is claimable")
    jobs_enqueue.set_defaults(func=_cmd_jobs_enqueue)

    jobs_status = jobs_subparsers.add_parser("status", help="Show one job")
    jobs_status.add_argument("job_id", help="Job id")
    jobs_status.set_defaults(func=_cmd_jobs_status)

    jobs_active = jobs_subparsers.add_parser("active", help="List admitted jobs")
    jobs_active.set_defaults(func=_cmd_jobs_active)

    jobs_running = jobs_subparsers.add_parser("running", help="Report whether a job type is admitted")
    jobs_running.add_argument("job_type", help="Maintenance job type")
    jobs_running.set_defaults(func=_cmd_jobs_running)

    jobs_history = jobs_subparsers.add_parser("history", help="List finished jobs")
    jobs_history.add_argument("--limit", type=int, default=10, help="Number of jobs to show")
    jobs_history.set_defaults(func=_cmd_jobs_history)

    jobs_stats = jobs_subparsers.add_parser("stats", help="Count jobs by state")
    jobs_stats.set_defaults(func=_cmd_jobs_stats)

    jobs_clear = jobs_subparsers.add_parser("clear-stuck", help="Fail running jobs and drop pending ones")
    jobs_clear.set_defaults(func=_cmd_jobs_clear_stuck)

    jobs_obliterate = jobs_subparsers.add_parser("obliterate", help="Delete every job, including history")
    jobs_obliterate.add_argument("--yes", action="store_true", help="Confirm the wipe")
    jobs_obliterate.set_defaults(func=_cmd_jobs_obliterate)

    lock_parser = subparsers.add_parser("lock", help="Heavy-ops lock commands")
    lock_subparsers = lock_parser.add_subparsers(dest="lock_command", required=True)

    lock_status = lock_subparsers.add_parser("status", help="Show the current holder")
    lock_status.set_defaults(func=_cmd_lock_status)

    lock_release = lock_subparsers.add_parser("force-release", help="Drop the lock regardless of holder")
    lock_release.set_defaults(func=_cmd_lock_force_release)

    worker_parser = subparsers.add_parser("worker", help="Run the maintenance worker")
    worker_parser.add_argument("--once", action="store_true", help="Process at most one job and exit")
    worker_parser.add_argument("--worker-id", default=None, help="Override the worker id")
    worker_parser.set_defaults(func=_cmd_worker)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
