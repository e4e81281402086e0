from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from streamledger.etl.batch import BatchCounters
from streamledger.progress.types import JobResult

if TYPE_CHECKING:
    from streamledger.worker.context import JobContext


@dataclass(frozen=True, slots=True)
class MaintenanceHandler:
    job_type: str
    description: str
    run: Callable[["JobContext"], JobResult]
    requires_heavy_lock: bool = True


def result_from_counters(
    job_type: str,
    counters: BatchCounters,
    message: str,
    **details: Any,
) -> JobResult:
    if counters.aborted is not None:
        message = counters.aborted
    elif not counters.succeeded:
        message = f"{message} ({counters.errors} of {counters.processed} rows failed)"
    return JobResult(
        success=counters.succeeded,
        job_type=job_type,
        processed=counters.processed,
        updated=counters.updated,
        skipped=counters.skipped,
        errors=counters.errors,
        message=message,
        details=details,
    )
