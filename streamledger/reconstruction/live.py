from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from streamledger.core.config import Settings
from streamledger.db.models import LibraryItem, LibrarySnapshot
from streamledger.etl.pagination import iter_keyset_batches
from streamledger.locks.heavy_ops import HeavyOpsLockService
from streamledger.reconstruction.algorithm import (
    METRIC_FIELDS,
    CollectionKey,
    ItemRecord,
    MetricVector,
    item_contribution,
)
from streamledger.reconstruction.writer import end_of_day

logger = logging.getLogger(__name__)


class LiveSnapshotOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    KEPT_EXISTING = "kept_existing"
    DEFERRED_HEAVY_OP = "deferred_heavy_op"
    SKIPPED_INCOMPLETE = "skipped_incomplete"
    SKIPPED_INVALID = "skipped_invalid"


@dataclass(slots=True)
class CollectionTotals:
    metrics: MetricVector
    show_items: int = 0
    episode_items: int = 0
    artist_items: int = 0
    track_items: int = 0

    @property
    def incomplete_reason(self) -> str | None:
        if self.show_items > 0 and self.episode_items == 0:
            return "shows without episodes"
        if self.artist_items > 0 and self.track_items == 0:
            return "artists without tracks"
        return None


def _utc_today() -> date:
    return datetime.now(tz=timezone.utc).date()


class LiveSnapshotRecorder:
    """Writes today's snapshot for a collection after a live library sync.

    Live writes defer to any running heavy operation and only ever raise a
    stored same-day snapshot, never lower it.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        heavy_lock: HeavyOpsLockService,
        *,
        today: Callable[[], date] = _utc_today,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._heavy_lock = heavy_lock
        self._today = today
        self._require_size = settings.prune_zero_size_days

    def current_totals(self, key: CollectionKey) -> CollectionTotals:
        totals = CollectionTotals(metrics=MetricVector())
        statement = select(
            LibraryItem.id,
            LibraryItem.media_type,
            LibraryItem.video_resolution,
            LibraryItem.video_codec,
            LibraryItem.file_size,
        ).where(LibraryItem.server_id == key.server_id, LibraryItem.library_id == key.library_id)
        today = self._today()
        for rows in iter_keyset_batches(
            self._session_factory,
            statement,
            LibraryItem.id,
            batch_size=self._settings.item_scan_batch_size,
        ):
            for row in rows:
                media_type = (row.media_type or "").lower()
                if media_type == "show":
                    totals.show_items += 1
                elif media_type == "episode":
                    totals.episode_items += 1
                elif media_type == "artist":
                    totals.artist_items += 1
                elif media_type == "track":
                    totals.track_items += 1
                contribution = item_contribution(
                    ItemRecord(
                        created_day=today,
                        media_type=row.media_type,
                        video_resolution=row.video_resolution,
                        video_codec=row.video_codec,
                        file_size=row.file_size,
                    ),
                    require_size=self._require_size,
                )
                if contribution is not None:
                    totals.metrics.add(contribution)
        return totals

    def record(self, key: CollectionKey) -> LiveSnapshotOutcome:
        holder = self._heavy_lock.status()
        if holder is not None:
            logger.info("Deferring snapshot for %s while %s (%s) runs", key, holder.description, holder.job_id)
            return LiveSnapshotOutcome.DEFERRED_HEAVY_OP

        totals = self.current_totals(key)
        reason = totals.incomplete_reason
        if reason is not None:
            logger.warning("Skipping snapshot for %s: sync looks incomplete (%s)", key, reason)
            return LiveSnapshotOutcome.SKIPPED_INCOMPLETE

        if not totals.metrics.is_valid(require_size=self._require_size):
            logger.info("Skipping snapshot for %s: no sized items", key)
            return LiveSnapshotOutcome.SKIPPED_INVALID

        try:
            return self._upsert_today(key, totals.metrics)
        except IntegrityError:
            logger.info("Snapshot for %s raced a concurrent insert; re-applying as update", key)
            return self._upsert_today(key, totals.metrics)

    def _upsert_today(self, key: CollectionKey, metrics: MetricVector) -> LiveSnapshotOutcome:
        day = self._today()
        with self._session_factory() as session:
            existing = session.scalar(
                select(LibrarySnapshot).where(
                    LibrarySnapshot.server_id == key.server_id,
                    LibrarySnapshot.library_id == key.library_id,
                    LibrarySnapshot.snapshot_day == day,
                )
            )
            if existing is not None:
                if metrics.item_count < existing.item_count:
                    logger.info(
                        "Keeping stored snapshot for %s on %s (%d items > %d)",
                        key,
                        day,
                        existing.item_count,
                        metrics.item_count,
                    )
                    return LiveSnapshotOutcome.KEPT_EXISTING
                for name in METRIC_FIELDS:
                    setattr(existing, name, getattr(metrics, name))
                existing.snapshot_time = self._snapshot_time(day)
                existing.enrichment_complete = metrics.item_count
                session.commit()
                return LiveSnapshotOutcome.UPDATED

            session.add(
                LibrarySnapshot(
                    server_id=key.server_id,
                    library_id=key.library_id,
                    snapshot_day=day,
                    snapshot_time=self._snapshot_time(day),
                    enrichment_pending=0,
                    enrichment_complete=metrics.item_count,
                    **metrics.to_dict(),
                )
            )
            session.commit()
            return LiveSnapshotOutcome.CREATED

    def _snapshot_time(self, day: date) -> datetime:
        now = datetime.now(tz=timezone.utc)
        if now.date() == day:
            return now
        return end_of_day(day)

