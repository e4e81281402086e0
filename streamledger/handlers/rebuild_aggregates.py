from __future__ import annotations

from typing import TYPE_CHECKING

from streamledger.aggregates.service import LibraryStatsAggregator
from streamledger.db.models import MaintenanceJobType
from streamledger.handlers.registry import MaintenanceHandler
from streamledger.progress.types import JobResult

if TYPE_CHECKING:
    from streamledger.worker.context import JobContext

DESCRIPTION = "library stats rollup rebuild"


def run(ctx: JobContext) -> JobResult:
    aggregator = LibraryStatsAggregator(ctx.session_factory, require_size=ctx.settings.prune_zero_size_days)
    full_refresh = bool(ctx.option("full_refresh", False))
    if full_refresh:
        ctx.checkpoint("Refreshing library_stats_daily from the earliest snapshot...")
        rows = aggregator.refresh_all()
        scope = "full history"
    else:
        days = ctx.settings.aggregate_refresh_window_days
        ctx.checkpoint(f"Refreshing library_stats_daily for the last {days} days...")
        rows = aggregator.refresh_window(days)
        scope = f"last {days} days"
    ctx.tracker.set_total(rows)
    ctx.tracker.advance(processed=rows, updated=rows)
    return JobResult(
        success=True,
        job_type=ctx.job_type,
        processed=rows,
        updated=rows,
        message=f"Refreshed {rows} library_stats_daily rows ({scope})",
        details={"full_refresh": full_refresh},
    )


HANDLER = MaintenanceHandler(
    job_type=MaintenanceJobType.REBUILD_AGGREGATES.value,
    description=DESCRIPTION,
    run=run,
)
