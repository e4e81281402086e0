from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Any

from sqlalchemy import ColumnElement, and_, func, or_, select

from streamledger.core.config import Settings
from streamledger.db.models import MaintenanceJobType, PlaybackSession
from streamledger.etl.batch import run_row_transform
from streamledger.handlers.registry import MaintenanceHandler, result_from_counters
from streamledger.progress.types import JobResult

if TYPE_CHECKING:
    from streamledger.worker.context import JobContext

logger = logging.getLogger(__name__)

DESCRIPTION = "imported session progress repair"


def needs_progress_repair() -> ColumnElement[bool]:
    """Imported sessions carry a duration but no progress or total duration."""
    return and_(
        PlaybackSession.external_session_id.is_not(None),
        PlaybackSession.duration_ms.is_not(None),
        or_(PlaybackSession.progress_ms.is_(None), PlaybackSession.total_duration_ms.is_(None)),
    )


def estimate_progress(
    settings: Settings,
    *,
    duration_ms: int | None,
    watched: bool,
    media_type: str | None,
    progress_ms: int | None = None,
    total_duration_ms: int | None = None,
) -> dict[str, int] | None:
    if duration_ms is None or duration_ms <= 0:
        return None
    if watched:
        # Round half up.
        estimated_total = int(math.floor(duration_ms / settings.watched_completion_ratio + 0.5))
    else:
        estimated_total = max(settings.median_duration_ms(media_type), duration_ms)
    if progress_ms == duration_ms and total_duration_ms == estimated_total:
        return None
    return {"progress_ms": duration_ms, "total_duration_ms": estimated_total}


def run(ctx: JobContext) -> JobResult:
    settings = ctx.settings
    with ctx.session_factory() as session:
        total = int(session.scalar(select(func.count()).select_from(PlaybackSession).where(needs_progress_repair())) or 0)
    ctx.tracker.set_total(total, f"Found {total} imported sessions to repair")
    logger.info("Job %s: %d imported sessions need progress repair", ctx.job_id, total)
    if total == 0:
        return JobResult(
            success=True,
            job_type=ctx.job_type,
            message="No imported sessions need progress repair",
        )

    def transform(row: Any) -> dict[str, int] | None:
        return estimate_progress(
            settings,
            duration_ms=row.duration_ms,
            watched=bool(row.watched),
            media_type=row.media_type,
            progress_ms=row.progress_ms,
            total_duration_ms=row.total_duration_ms,
        )

    counters = run_row_transform(
        ctx.session_factory,
        ctx,
        phase="Imported progress repair",
        statement=select(
            PlaybackSession.id,
            PlaybackSession.duration_ms,
            PlaybackSession.watched,
            PlaybackSession.media_type,
            PlaybackSession.progress_ms,
            PlaybackSession.total_duration_ms,
        ).where(needs_progress_repair()),
        key_column=PlaybackSession.id,
        transform=transform,
        batch_size=settings.row_batch_size,
        total=total,
        noun="sessions",
    )
    return result_from_counters(
        ctx.job_type,
        counters,
        f"Repaired progress on {counters.updated} of {counters.processed} imported sessions",
    )


HANDLER = MaintenanceHandler(
    job_type=MaintenanceJobType.FIX_IMPORTED_PROGRESS.value,
    description=DESCRIPTION,
    run=run,
)
