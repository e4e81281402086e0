from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from streamledger.db.models import MaintenanceJobType
from streamledger.handlers.registry import MaintenanceHandler
from streamledger.progress.types import JobResult
from streamledger.reconstruction.service import SnapshotReconstructor

if TYPE_CHECKING:
    from streamledger.worker.context import JobContext

logger = logging.getLogger(__name__)

DESCRIPTION = "library snapshot backfill"


def run(ctx: JobContext) -> JobResult:
    reconstructor = SnapshotReconstructor(
        ctx.settings,
        ctx.session_factory,
        hooks=ctx,
        before_phase=ctx.checkpoint,
    )
    collections = reconstructor.discover_collections()
    ctx.tracker.set_total(len(collections), f"Rebuilding snapshot history for {len(collections)} libraries")
    report = reconstructor.run(collections)

    success = report.aborted is None and report.errors * 2 <= report.processed
    if report.aborted is not None:
        message = report.aborted
    else:
        message = (
            f"Rebuilt {report.processed} libraries: {report.created} snapshots created, "
            f"{report.existing} days already present, {report.cleaned_up} invalid snapshots removed"
        )
        if report.errors:
            message += f", {report.errors} libraries failed"
    logger.info("Job %s: %s", ctx.job_id, message)
    return JobResult(
        success=success,
        job_type=ctx.job_type,
        processed=report.processed,
        updated=report.created,
        skipped=report.existing,
        errors=report.errors,
        message=message,
        details={
            "collections": report.collections,
            "cleaned_up": report.cleaned_up,
            "aggregate_rows": report.aggregate_rows,
            "libraries": [
                {
                    "server_id": outcome.key.server_id,
                    "library_id": outcome.key.library_id,
                    "items": outcome.items_counted,
                    "ignored_items": outcome.items_ignored,
                    "created": outcome.created,
                    "first_day": outcome.first_day.isoformat() if outcome.first_day else None,
                }
                for outcome in report.outcomes
            ],
        },
    )


HANDLER = MaintenanceHandler(
    job_type=MaintenanceJobType.BACKFILL_LIBRARY_SNAPSHOTS.value,
    description=DESCRIPTION,
    run=run,
)
