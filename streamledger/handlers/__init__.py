from __future__ import annotations

from streamledger.handlers import (
    backfill_library_snapshots,
    backfill_user_dates,
    fix_imported_progress,
    normalize_codecs,
    normalize_countries,
    rebuild_aggregates,
)
from streamledger.handlers.registry import MaintenanceHandler

DEFAULT_HANDLERS: dict[str, MaintenanceHandler] = {
    module.HANDLER.job_type: module.HANDLER
    for module in (
        fix_imported_progress,
        normalize_codecs,
        normalize_countries,
        backfill_user_dates,
        backfill_library_snapshots,
        rebuild_aggregates,
    )
}

__all__ = ["DEFAULT_HANDLERS", "MaintenanceHandler"]
