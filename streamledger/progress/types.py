from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

PROGRESS_EVENT = "maintenance:progress"


class ProgressStatus(str, Enum):
    WAITING = "waiting"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"


TERMINAL_PROGRESS_STATUSES = frozenset({ProgressStatus.COMPLETE, ProgressStatus.ERROR})


@dataclass(frozen=True, slots=True)
class WaitingFor:
    job_type: str
    job_id: str
    description: str
    started_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_type": self.job_type,
            "job_id": self.job_id,
            "description": self.description,
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }


@dataclass(frozen=True, slots=True)
class ProgressSnapshot:
    job_id: str
    job_type: str
    status: ProgressStatus
    total: int
    processed: int
    updated: int
    skipped: int
    errored: int
    message: str
    started_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    waiting_for: WaitingFor | None = None

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 100 if self.status == ProgressStatus.COMPLETE else 0
        return max(0, min(100, round(self.processed * 100 / self.total)))

    def evolve(self, **changes: Any) -> "ProgressSnapshot":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "job_type": self.job_type,
            "status": self.status.value,
            "total": self.total,
            "processed": self.processed,
            "updated": self.updated,
            "skipped": self.skipped,
            "errored": self.errored,
            "message": self.message,
            "percent": self.percent,
            "started_at": self.started_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "waiting_for": self.waiting_for.to_dict() if self.waiting_for else None,
        }


@dataclass(slots=True)
class JobResult:
    success: bool
    job_type: str
    processed: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    duration_ms: int = 0
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "type": self.job_type,
            "processed": self.processed,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
            "duration_ms": self.duration_ms,
            "message": self.message,
            "details": dict(self.details),
        }
