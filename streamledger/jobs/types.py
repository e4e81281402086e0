from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from streamledger.db.models import JobState


@dataclass(slots=True)
class JobSnapshot:
    id: str
    job_type: str
    state: JobState
    initiator_id: str | None
    payload: dict[str, Any]
    attempts: int
    stalled_count: int
    progress: int
    result: dict[str, Any] | None
    failed_reason: str | None
    worker_id: str | None
    lock_token: str | None
    lock_expires_at: datetime | None
    run_after: datetime | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    finished_at: datetime | None


@dataclass(slots=True)
class JobStatusView:
    job_id: str
    job_type: str
    state: JobState
    progress: int
    result: dict[str, Any] | None
    failed_reason: str | None
    created_at: datetime
    started_at: datetime | None
    finished_at: datetime | None


@dataclass(slots=True)
class QueueStats:
    waiting: int
    delayed: int
    active: int
    stalled: int
    completed: int
    failed: int


@dataclass(slots=True)
class ClearStuckResult:
    failed_active: int
    removed_waiting: int
    removed_delayed: int
