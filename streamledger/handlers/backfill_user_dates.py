from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import exists, func, or_, select, update

from streamledger.db.models import MaintenanceJobType, PlaybackSession, ServerUser
from streamledger.etl.batch import BatchCounters
from streamledger.etl.bulk import bulk_update_in_chunks, limited_keys
from streamledger.handlers.registry import MaintenanceHandler, result_from_counters
from streamledger.progress.types import JobResult

if TYPE_CHECKING:
    from streamledger.worker.context import JobContext

logger = logging.getLogger(__name__)

DESCRIPTION = "user activity date backfill"


def _first_session_at():
    return (
        select(func.min(PlaybackSession.started_at))
        .where(PlaybackSession.server_user_id == ServerUser.id)
        .scalar_subquery()
    )


def _last_session_at():
    return (
        select(func.max(PlaybackSession.started_at))
        .where(PlaybackSession.server_user_id == ServerUser.id)
        .scalar_subquery()
    )


def _has_sessions():
    return exists().where(PlaybackSession.server_user_id == ServerUser.id)


def backfill_joined_at(ctx: JobContext) -> BatchCounters:
    return bulk_update_in_chunks(
        ctx.session_factory,
        ctx,
        phase="joined_at backfill",
        build_statement=lambda limit: update(ServerUser)
        .where(
            ServerUser.id.in_(
                limited_keys(ServerUser.id, ServerUser.joined_at.is_(None), _has_sessions(), limit=limit)
            )
        )
        .values(joined_at=_first_session_at())
        .execution_options(synchronize_session=False),
        batch_size=ctx.settings.bulk_update_batch_size,
        noun="users",
    )


def backfill_last_activity_at(ctx: JobContext) -> BatchCounters:
    stale = or_(ServerUser.last_activity_at.is_(None), ServerUser.last_activity_at < _last_session_at())
    return bulk_update_in_chunks(
        ctx.session_factory,
        ctx,
        phase="last_activity_at backfill",
        build_statement=lambda limit: update(ServerUser)
        .where(ServerUser.id.in_(limited_keys(ServerUser.id, stale, _has_sessions(), limit=limit)))
        .values(last_activity_at=_last_session_at())
        .execution_options(synchronize_session=False),
        batch_size=ctx.settings.bulk_update_batch_size,
        noun="users",
    )


def run(ctx: JobContext) -> JobResult:
    with ctx.session_factory() as session:
        total = int(session.scalar(select(func.count()).select_from(ServerUser)) or 0)
    ctx.tracker.set_total(total, f"Backfilling activity dates for {total} users")
    if total == 0:
        return JobResult(success=True, job_type=ctx.job_type, message="No users to backfill")

    joined = backfill_joined_at(ctx)
    counters = BatchCounters(total=total)
    counters.absorb(joined)
    last_activity = BatchCounters()
    if joined.aborted is None:
        ctx.tracker.running("Backfilling last activity dates...")
        last_activity = backfill_last_activity_at(ctx)
        counters.absorb(last_activity)

    counters.total = total
    counters.processed = total
    counters.skipped = max(0, total - max(joined.updated, last_activity.updated))
    logger.info(
        "Job %s: joined_at set on %d users, last_activity_at on %d users",
        ctx.job_id,
        joined.updated,
        last_activity.updated,
    )
    return result_from_counters(
        ctx.job_type,
        counters,
        f"Backfilled joined_at on {joined.updated} and last_activity_at on {last_activity.updated} users",
        joined_at=joined.updated,
        last_activity_at=last_activity.updated,
    )


HANDLER = MaintenanceHandler(
    job_type=MaintenanceJobType.BACKFILL_USER_DATES.value,
    description=DESCRIPTION,
    run=run,
)
