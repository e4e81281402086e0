from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import ColumnElement, func, or_, select, update
from sqlalchemy.orm import InstrumentedAttribute

from streamledger.db.models import MaintenanceJobType, PlaybackSession
from streamledger.etl.bulk import bulk_update_in_chunks, limited_keys
from streamledger.handlers.registry import MaintenanceHandler, result_from_counters
from streamledger.progress.types import JobResult

if TYPE_CHECKING:
    from streamledger.worker.context import JobContext

logger = logging.getLogger(__name__)

DESCRIPTION = "codec name normalization"

CODEC_COLUMNS: tuple[InstrumentedAttribute[Any], ...] = (
    PlaybackSession.source_video_codec,
    PlaybackSession.source_audio_codec,
    PlaybackSession.stream_video_codec,
    PlaybackSession.stream_audio_codec,
)


def has_codec() -> ColumnElement[bool]:
    return or_(*(column.is_not(None) for column in CODEC_COLUMNS))


def has_lowercase_codec() -> ColumnElement[bool]:
    return or_(*(column != func.upper(column) for column in CODEC_COLUMNS))


def run(ctx: JobContext) -> JobResult:
    with ctx.session_factory() as session:
        total = int(session.scalar(select(func.count()).select_from(PlaybackSession).where(has_codec())) or 0)
    ctx.tracker.set_total(total, f"Found {total} sessions with codec data")
    if total == 0:
        return JobResult(success=True, job_type=ctx.job_type, message="No sessions carry codec data")

    counters = bulk_update_in_chunks(
        ctx.session_factory,
        ctx,
        phase="Codec normalization",
        build_statement=lambda limit: update(PlaybackSession)
        .where(PlaybackSession.id.in_(limited_keys(PlaybackSession.id, has_lowercase_codec(), limit=limit)))
        .values({column: func.upper(column) for column in CODEC_COLUMNS})
        .execution_options(synchronize_session=False),
        batch_size=ctx.settings.bulk_update_batch_size,
        noun="sessions",
    )
    counters.total = total
    counters.processed = total
    counters.skipped = max(0, total - counters.updated)
    remaining = counters.skipped
    if remaining:
        ctx.after_batch(processed=remaining, updated=0, skipped=remaining, errored=0, message="Codec names already uppercase")
    logger.info("Job %s: uppercased codecs on %d of %d sessions", ctx.job_id, counters.updated, total)
    return result_from_counters(
        ctx.job_type,
        counters,
        f"Normalized codec names on {counters.updated} of {total} sessions",
    )


HANDLER = MaintenanceHandler(
    job_type=MaintenanceJobType.NORMALIZE_CODECS.value,
    description=DESCRIPTION,
    run=run,
)
