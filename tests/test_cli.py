from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

import pytest

import streamledger.db.session as db_session_module
from streamledger.cli import main
from streamledger.core.config import get_settings
from streamledger.jobs.service import CONFLICT_MESSAGE
from streamledger.locks.heavy_ops import HeavyOpsLockService


@pytest.fixture(autouse=True)
def cli_env(tmp_path: Path, restore_root_logging: logging.Logger) -> None:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["STREAMLEDGER_STATE_ROOT"] = state_root.as_posix()
    os.environ["STREAMLEDGER_LOG_LEVEL"] = "CRITICAL"
    os.environ["STREAMLEDGER_BATCH_DELAY_MS"] = "0"
    get_settings.cache_clear()
    db_session_module._engine = None
    db_session_module._session_factory = None


def _run(capsys, *argv: str) -> tuple[int, Any]:
    code = main(list(argv))
    out = capsys.readouterr().out
    return code, json.loads(out) if out.strip() else None


def test_enqueue_then_conflict(capsys) -> None:
    code, job = _run(capsys, "jobs", "enqueue", "normalize_codecs", "--initiator", "ops")
    assert code == 0
    assert job["type"] == "normalize_codecs"
    assert job["state"] == "waiting"
    assert job["initiator_id"] == "ops"
    assert job["id"].startswith("maintenance-normalize_codecs-")

    code, payload = _run(capsys, "jobs", "enqueue", "rebuild_aggregates")
    assert code == 1
    assert payload == {"error": CONFLICT_MESSAGE}

    code, status = _run(capsys, "jobs", "status", job["id"])
    assert code == 0
    assert status["job_id"] == job["id"]
    assert status["state"] == "waiting"

    code, active = _run(capsys, "jobs", "active")
    assert code == 0
    assert [item["id"] for item in active] == [job["id"]]


def test_jobs_running_reports_admitted_state(capsys) -> None:
    code, payload = _run(capsys, "jobs", "running", "normalize_codecs")
    assert code == 0
    assert payload == {"job_type": "normalize_codecs", "running": False, "state": None}

    _run(capsys, "jobs", "enqueue", "normalize_codecs", "--delay-seconds", "300")
    code, payload = _run(capsys, "jobs", "running", "normalize_codecs")
    assert code == 0
    assert payload == {"job_type": "normalize_codecs", "running": True, "state": "delayed"}


def test_enqueue_full_refresh_option(capsys) -> None:
    code, job = _run(capsys, "jobs", "enqueue", "rebuild_aggregates", "--full-refresh")

    assert code == 0
    assert job["payload"] == {"full_refresh": True}


def test_enqueue_rejects_unknown_type(capsys) -> None:
    with pytest.raises(SystemExit) as exc_info:
        main(["jobs", "enqueue", "normalize_players"])

    assert exc_info.value.code == 2


def test_status_of_unknown_job(capsys) -> None:
    code, payload = _run(capsys, "jobs", "status", "missing-1")

    assert code == 1
    assert payload == {"error": "Job not found: missing-1"}


def test_obliterate_requires_confirmation(capsys) -> None:
    _run(capsys, "jobs", "enqueue", "backfill_user_dates")

    code, payload = _run(capsys, "jobs", "obliterate")
    assert code == 2
    assert payload is None

    code, payload = _run(capsys, "jobs", "obliterate", "--yes")
    assert code == 0
    assert payload == {"removed": 1}

    code, stats = _run(capsys, "jobs", "stats")
    assert code == 0
    assert stats == {"waiting": 0, "delayed": 0, "active": 0, "stalled": 0, "completed": 0, "failed": 0}


def test_lock_status_and_force_release(capsys) -> None:
    code, payload = _run(capsys, "lock", "status")
    assert code == 0
    assert payload == {"held": False, "holder": None}

    lock = HeavyOpsLockService(get_settings(), db_session_module.get_session_factory())
    lock.acquire("backfill_library_snapshots", "job-9", "library snapshot backfill")

    code, payload = _run(capsys, "lock", "status")
    assert payload["held"] is True
    assert payload["holder"]["job_id"] == "job-9"

    code, payload = _run(capsys, "lock", "force-release")
    assert code == 0
    assert payload["released"] is True
    assert lock.status() is None


def test_worker_once_runs_queued_job(capsys) -> None:
    _, job = _run(capsys, "jobs", "enqueue", "fix_imported_progress")

    code, finished = _run(capsys, "worker", "--once", "--worker-id", "cli-worker")

    assert code == 0
    assert finished["id"] == job["id"]
    assert finished["state"] == "completed"
    assert finished["worker_id"] == "cli-worker"
    assert finished["result"]["success"] is True

    code, history = _run(capsys, "jobs", "history", "--limit", "5")
    assert [item["id"] for item in history] == [job["id"]]


def test_worker_once_with_empty_queue(capsys) -> None:
    code, payload = _run(capsys, "worker", "--once")

    assert code == 0
    assert payload is None
