from __future__ import annotations

import logging
import threading
from typing import Any, Mapping

from streamledger.core.config import Settings, get_settings
from streamledger.db.models import JobState, MaintenanceJobType
from streamledger.db.session import get_session_factory
from streamledger.handlers import DEFAULT_HANDLERS
from streamledger.handlers.registry import MaintenanceHandler
from streamledger.jobs.service import MaintenanceQueueService
from streamledger.jobs.types import ClearStuckResult, JobSnapshot, JobStatusView, QueueStats
from streamledger.locks.heavy_ops import HeavyOpsLockService
from streamledger.locks.types import HeavyOpsLockHolder
from streamledger.progress.channel import InMemoryProgressChannel, ProgressChannel
from streamledger.progress.register import ProgressRegister
from streamledger.progress.types import ProgressSnapshot
from streamledger.worker.runner import MaintenanceWorker

logger = logging.getLogger(__name__)

_state_lock = threading.Lock()
_settings: Settings | None = None
_queue: MaintenanceQueueService | None = None
_heavy_lock: HeavyOpsLockService | None = None
_register: ProgressRegister | None = None
_channel: ProgressChannel | None = None
_worker: MaintenanceWorker | None = None
_handlers: dict[str, MaintenanceHandler] = {}


class QueueNotInitializedError(RuntimeError):
    pass


def _require_queue() -> MaintenanceQueueService:
    if _queue is None:
        raise QueueNotInitializedError("Maintenance queue not initialized. Call init_maintenance_queue first.")
    return _queue


def init_maintenance_queue(
    *,
    settings: Settings | None = None,
    channel: ProgressChannel | None = None,
    handlers: Mapping[str, MaintenanceHandler] | None = None,
) -> MaintenanceQueueService:
    global _settings, _queue, _heavy_lock, _register, _channel, _handlers
    with _state_lock:
        if _queue is not None:
            return _queue
        _settings = settings or get_settings()
        session_factory = get_session_factory()
        _queue = MaintenanceQueueService(_settings, session_factory)
        _heavy_lock = HeavyOpsLockService(_settings, session_factory)
        _register = ProgressRegister()
        _channel = channel or InMemoryProgressChannel(capacity=_settings.progress_channel_capacity)
        _handlers = dict(handlers if handlers is not None else DEFAULT_HANDLERS)
        logger.info("Maintenance queue initialized with %d job types", len(_handlers))
        return _queue


def get_progress_channel() -> ProgressChannel:
    _require_queue()
    assert _channel is not None
    return _channel


def enqueue_maintenance_job(
    job_type: str,
    initiator_id: str | None = None,
    *,
    full_refresh: bool | None = None,
    delay_seconds: int | None = None,
) -> str:
    queue = _require_queue()
    normalized = MaintenanceJobType(str(getattr(job_type, "value", job_type)).strip()).value
    options: dict[str, Any] = {}
    if full_refresh is not None:
        options["full_refresh"] = full_refresh
    snapshot = queue.enqueue(
        normalized,
        initiator_id=initiator_id,
        options=options,
        delay_seconds=delay_seconds,
    )
    return snapshot.id


def get_job_status(job_id: str) -> JobStatusView:
    return _require_queue().get_status(job_id)


def get_job_progress() -> ProgressSnapshot | None:
    _require_queue()
    assert _register is not None
    return _register.current()


def get_queue_stats() -> QueueStats:
    return _require_queue().stats()


def get_job_history(limit: int = 10) -> list[JobSnapshot]:
    return _require_queue().history(limit)


def list_active_jobs() -> list[JobSnapshot]:
    return _require_queue().list_active()


def is_job_type_running(job_type: str) -> tuple[bool, JobState | None]:
    return _require_queue().is_job_type_running(job_type)


def clear_stuck_jobs() -> ClearStuckResult:
    outcome = _require_queue().clear_stuck()
    assert _register is not None
    cleared = _register.reset()
    if cleared is not None:
        logger.warning("Cleared in-memory progress of job %s", cleared.job_id)
    return outcome


def obliterate_queue() -> int:
    removed = _require_queue().obliterate()
    assert _register is not None
    _register.reset()
    return removed


def get_heavy_ops_status() -> HeavyOpsLockHolder | None:
    _require_queue()
    assert _heavy_lock is not None
    return _heavy_lock.status()


def start_maintenance_worker(*, worker_id: str | None = None) -> MaintenanceWorker:
    global _worker
    _require_queue()
    with _state_lock:
        if _worker is not None:
            return _worker
        assert _settings is not None
        _worker = MaintenanceWorker(
            _settings,
            get_session_factory(),
            _handlers,
            channel=_channel,
            register=_register,
            worker_id=worker_id,
        )
        _worker.start_background()
        return _worker


def shutdown_maintenance_queue(timeout: float = 10.0) -> None:
    global _settings, _queue, _heavy_lock, _register, _channel, _worker
    with _state_lock:
        if _worker is not None:
            _worker.close(timeout)
        if isinstance(_channel, InMemoryProgressChannel):
            _channel.close(timeout)
        _settings = None
        _queue = None
        _heavy_lock = None
        _register = None
        _channel = None
        _worker = None
        _handlers.clear()
    logger.info("Maintenance queue shut down")
