from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from streamledger.aggregates.service import LibraryStatsAggregator
from streamledger.core.config import Settings
from streamledger.db.models import LibraryItem, LibrarySnapshot
from streamledger.etl.batch import BatchCounters, BatchHooks
from streamledger.etl.bulk import bulk_update_in_chunks, limited_keys
from streamledger.etl.errors import ResourceExhaustedError, is_resource_exhaustion
from streamledger.etl.pagination import iter_keyset_batches
from streamledger.jobs.service import LockLostError
from streamledger.reconstruction.algorithm import (
    CollectionKey,
    DailyDeltaAccumulator,
    ItemRecord,
    cumulative_series,
)
from streamledger.reconstruction.validation import invalid_snapshot_condition, valid_item_condition
from streamledger.reconstruction.writer import SnapshotWriter

logger = logging.getLogger(__name__)


def _utc_today() -> date:
    return datetime.now(tz=timezone.utc).date()


def _as_day(value: datetime | date) -> date:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    return value


@dataclass(slots=True)
class CollectionOutcome:
    key: CollectionKey
    items_counted: int
    items_ignored: int
    created: int
    existing: int
    first_day: date | None


@dataclass(slots=True)
class ReconstructionReport:
    collections: int = 0
    processed: int = 0
    created: int = 0
    existing: int = 0
    errors: int = 0
    cleaned_up: int = 0
    aggregate_rows: int = 0
    aborted: str | None = None
    outcomes: list[CollectionOutcome] = field(default_factory=list)


class SnapshotReconstructor:
    """Rebuilds the daily cumulative snapshot series of every collection from item creation dates."""

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        hooks: BatchHooks | None = None,
        before_phase: Callable[[str], None] | None = None,
        today: Callable[[], date] = _utc_today,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._hooks = hooks
        self._before_phase = before_phase
        self._today = today
        self._require_size = settings.prune_zero_size_days
        self._writer = SnapshotWriter(session_factory, batch_days=settings.snapshot_write_batch_days)
        self._aggregator = LibraryStatsAggregator(session_factory, require_size=self._require_size)

    def discover_collections(self) -> list[CollectionKey]:
        with self._session_factory() as session:
            rows = session.execute(
                select(LibraryItem.server_id, LibraryItem.library_id)
                .where(LibraryItem.created_at.is_not(None))
                .distinct()
                .order_by(LibraryItem.server_id, LibraryItem.library_id)
            ).all()
        return [CollectionKey(server_id=str(row[0]), library_id=str(row[1])) for row in rows]

    def accumulate(self, key: CollectionKey) -> DailyDeltaAccumulator:
        accumulator = DailyDeltaAccumulator(require_size=self._require_size)
        statement = select(
            LibraryItem.id,
            LibraryItem.created_at,
            LibraryItem.media_type,
            LibraryItem.video_resolution,
            LibraryItem.video_codec,
            LibraryItem.file_size,
        ).where(
            LibraryItem.server_id == key.server_id,
            LibraryItem.library_id == key.library_id,
            LibraryItem.created_at.is_not(None),
        )
        if self._require_size:
            statement = statement.where(valid_item_condition())
        for rows in iter_keyset_batches(
            self._session_factory,
            statement,
            LibraryItem.id,
            batch_size=self._settings.item_scan_batch_size,
        ):
            accumulator.add_many(
                ItemRecord(
                    created_day=_as_day(row.created_at),
                    media_type=row.media_type,
                    video_resolution=row.video_resolution,
                    video_codec=row.video_codec,
                    file_size=row.file_size,
                )
                for row in rows
            )
        return accumulator

    def reconstruct_collection(self, key: CollectionKey) -> CollectionOutcome:
        accumulator = self.accumulate(key)
        rows = cumulative_series(accumulator.deltas, end_day=self._today(), require_size=self._require_size)
        written = self._writer.write(key, rows)
        logger.info(
            "Reconstructed %s: %d items, %d snapshots created, %d days already present",
            key,
            accumulator.counted,
            written.created,
            written.existing,
        )
        return CollectionOutcome(
            key=key,
            items_counted=accumulator.counted,
            items_ignored=accumulator.ignored,
            created=written.created,
            existing=written.existing,
            first_day=accumulator.first_day,
        )

    def _enter_phase(self, message: str) -> None:
        if self._before_phase is not None:
            self._before_phase(message)

    def run(self, collections: list[CollectionKey] | None = None) -> ReconstructionReport:
        report = ReconstructionReport()
        if collections is None:
            collections = self.discover_collections()
        report.collections = len(collections)

        for key in collections:
            try:
                outcome = self.reconstruct_collection(key)
            except LockLostError:
                raise
            except Exception as exc:
                if is_resource_exhaustion(exc):
                    error = ResourceExhaustedError(f"Snapshot reconstruction of {key}", exc, committed=report.created)
                    report.aborted = str(error)
                    logger.error("%s", error)
                    break
                report.errors += 1
                report.processed += 1
                logger.exception("Snapshot reconstruction failed for %s", key)
                if self._hooks is not None:
                    self._hooks.after_batch(
                        processed=1,
                        updated=0,
                        skipped=0,
                        errored=1,
                        message=f"Failed to rebuild {key}; continuing",
                    )
                continue
            report.outcomes.append(outcome)
            report.processed += 1
            report.created += outcome.created
            report.existing += outcome.existing
            if self._hooks is not None:
                self._hooks.after_batch(
                    processed=1,
                    updated=outcome.created,
                    skipped=0,
                    errored=0,
                    message=(
                        f"Processed {report.processed} of {report.collections} libraries "
                        f"({report.created} snapshots created)..."
                    ),
                )

        if report.aborted is None:
            self._enter_phase("Cleaning up invalid snapshots...")
            cleanup = self.delete_invalid_snapshots()
            report.cleaned_up = cleanup.updated
            report.aborted = cleanup.aborted
        if report.aborted is None:
            self._enter_phase("Refreshing library_stats_daily...")
            report.aggregate_rows = self.refresh_aggregate()
        return report

    def delete_invalid_snapshots(self) -> BatchCounters:
        counters = bulk_update_in_chunks(
            self._session_factory,
            None,
            phase="Invalid snapshot cleanup",
            build_statement=lambda limit: delete(LibrarySnapshot).where(
                LibrarySnapshot.id.in_(
                    limited_keys(
                        LibrarySnapshot.id,
                        invalid_snapshot_condition(require_size=self._require_size),
                        limit=limit,
                    )
                )
            )
            .execution_options(synchronize_session=False),
            batch_size=self._settings.bulk_update_batch_size,
            noun="snapshots",
        )
        if counters.updated:
            logger.info("Deleted %d invalid snapshots", counters.updated)
        return counters

    def refresh_aggregate(self) -> int:
        earliest = self._aggregator.earliest_snapshot_day()
        if earliest is None:
            return 0
        return self._aggregator.refresh(earliest, self._today() + timedelta(days=1))
