from __future__ import annotations

import os
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import streamledger.db.session as db_session_module
from streamledger.core.config import get_settings
from streamledger.db.init_db import initialize_database
from streamledger.db.models import HeavyOpsLock
from streamledger.locks.heavy_ops import HEAVY_OPS_LOCK_KEY, HeavyOpsLockService
from streamledger.locks.types import holder_to_dict


def setup_env(tmp_path: Path) -> HeavyOpsLockService:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["STREAMLEDGER_STATE_ROOT"] = state_root.as_posix()
    os.environ["STREAMLEDGER_HEAVY_OPS_LOCK_TTL_SECONDS"] = "600"

    get_settings.cache_clear()
    db_session_module._engine = None
    db_session_module._session_factory = None
    initialize_database()
    return HeavyOpsLockService(get_settings(), db_session_module.get_session_factory())


def _expire_lock() -> None:
    with db_session_module.get_session_factory()() as session:
        row = session.get(HeavyOpsLock, HEAVY_OPS_LOCK_KEY)
        assert row is not None
        row.expires_at = datetime.now(tz=timezone.utc) - timedelta(seconds=1)
        session.commit()


def test_acquire_returns_none_for_free_lock_and_holder_when_taken(tmp_path: Path) -> None:
    service = setup_env(tmp_path)

    assert service.acquire("backfill_library_snapshots", "job-a", "Library snapshot backfill") is None
    holder = service.acquire("rebuild_aggregates", "job-b", "Aggregate rebuild")

    assert holder is not None
    assert holder.job_id == "job-a"
    assert holder.job_type == "backfill_library_snapshots"
    assert holder.description == "Library snapshot backfill"
    assert holder.expires_at > holder.started_at
    assert holder_to_dict(holder)["job_id"] == "job-a"


def test_same_job_can_reacquire_its_own_lock(tmp_path: Path) -> None:
    service = setup_env(tmp_path)
    assert service.acquire("normalize_codecs", "job-a", "Codec normalization") is None

    assert service.acquire("normalize_codecs", "job-a", "Codec normalization") is None
    status = service.status()
    assert status is not None and status.job_id == "job-a"


def test_release_is_idempotent_and_ignores_foreign_holders(tmp_path: Path) -> None:
    service = setup_env(tmp_path)
    assert service.acquire("normalize_codecs", "job-a", "Codec normalization") is None

    assert service.release("job-b") is False
    assert service.is_held() is True

    assert service.release("job-a") is True
    assert service.release("job-a") is True
    assert service.is_held() is False


def test_extend_refreshes_ttl_only_for_unexpired_holder(tmp_path: Path) -> None:
    service = setup_env(tmp_path)
    assert service.acquire("normalize_codecs", "job-a", "Codec normalization") is None
    before = service.status()
    assert before is not None

    assert service.extend("job-a") is True
    assert service.extend("job-b") is False

    _expire_lock()
    assert service.extend("job-a") is False
    assert service.status() is None


def test_expired_lock_is_forfeited_to_next_acquirer(tmp_path: Path) -> None:
    service = setup_env(tmp_path)
    assert service.acquire("backfill_library_snapshots", "job-a", "Library snapshot backfill") is None
    _expire_lock()

    assert service.acquire("rebuild_aggregates", "job-b", "Aggregate rebuild") is None
    holder = service.status()
    assert holder is not None
    assert holder.job_id == "job-b"
    assert service.release("job-a") is False


def test_concurrent_acquire_grants_exactly_one_holder(tmp_path: Path) -> None:
    service = setup_env(tmp_path)
    contenders = [f"job-{index}" for index in range(4)]
    barrier = threading.Barrier(len(contenders))
    granted: list[str] = []
    denied: list[str] = []
    lock = threading.Lock()

    def acquire(job_id: str) -> None:
        barrier.wait(timeout=2)
        holder = service.acquire("backfill_library_snapshots", job_id, "Library snapshot backfill")
        with lock:
            if holder is None:
                granted.append(job_id)
            else:
                denied.append(holder.job_id)

    threads = [threading.Thread(target=acquire, args=(job_id,)) for job_id in contenders]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(granted) == 1
    assert denied == [granted[0]] * (len(contenders) - 1)


def test_force_release_and_cleanup_expired(tmp_path: Path) -> None:
    service = setup_env(tmp_path)
    assert service.force_release() is None
    assert service.acquire("normalize_codecs", "job-a", "Codec normalization") is None

    forced = service.force_release()
    assert forced is not None and forced.job_id == "job-a"
    assert service.is_held() is False

    assert service.acquire("normalize_codecs", "job-b", "Codec normalization") is None
    _expire_lock()
    assert service.cleanup_expired() == 1
    assert service.cleanup_expired() == 0
