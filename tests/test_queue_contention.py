from __future__ import annotations

import os
import threading
from pathlib import Path

import pytest

import streamledger.db.session as db_session_module
from streamledger.core.config import get_settings
from streamledger.db.init_db import initialize_database
from streamledger.jobs.service import JobConflictError, MaintenanceQueueService


def setup_env(tmp_path: Path) -> MaintenanceQueueService:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["STREAMLEDGER_STATE_ROOT"] = state_root.as_posix()

    get_settings.cache_clear()
    db_session_module._engine = None
    db_session_module._session_factory = None
    initialize_database()
    return MaintenanceQueueService(get_settings(), db_session_module.get_session_factory())


def test_two_workers_claim_only_one_job(tmp_path: Path) -> None:
    service = setup_env(tmp_path)
    service.enqueue("normalize_codecs")
    barrier = threading.Barrier(2)
    results: list[str] = []
    lock = threading.Lock()

    def claim(worker_id: str) -> None:
        barrier.wait(timeout=2)
        job = service.claim_next(worker_id)
        with lock:
            results.append("none" if job is None else job.worker_id or "")

    threads = [threading.Thread(target=claim, args=(worker_id,)) for worker_id in ("worker-a", "worker-b")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    winners = [entry for entry in results if entry in {"worker-a", "worker-b"}]
    assert len(winners) == 1
    assert results.count("none") == 1
    assert service.stats().active == 1


def test_concurrent_enqueue_of_different_types_admits_one(tmp_path: Path) -> None:
    service = setup_env(tmp_path)
    job_types = ["normalize_codecs", "backfill_user_dates", "rebuild_aggregates", "fix_imported_progress"]
    barrier = threading.Barrier(len(job_types))
    created: list[str] = []
    conflicts: list[str] = []
    lock = threading.Lock()

    def enqueue(job_type: str) -> None:
        try:
            barrier.wait(timeout=2)
            snapshot = service.enqueue(job_type)
            with lock:
                created.append(snapshot.id)
        except JobConflictError:
            with lock:
                conflicts.append(job_type)

    threads = [threading.Thread(target=enqueue, args=(job_type,)) for job_type in job_types]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(created) == 1
    assert len(conflicts) == len(job_types) - 1
    assert [job.id for job in service.list_active()] == created


def test_separate_service_instances_share_the_admission_mutex(tmp_path: Path) -> None:
    service = setup_env(tmp_path)
    other = MaintenanceQueueService(get_settings(), db_session_module.get_session_factory())
    service.enqueue("normalize_codecs")

    with pytest.raises(JobConflictError, match="already in progress"):
        other.enqueue("normalize_codecs")
