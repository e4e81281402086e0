from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import DateTime, delete, func, insert, literal, select
from sqlalchemy.orm import Session, sessionmaker

from streamledger.db.models import LibrarySnapshot, LibraryStatsDaily
from streamledger.reconstruction.validation import valid_snapshot_condition

logger = logging.getLogger(__name__)

AGGREGATED_COLUMNS = (
    "item_count",
    "total_size",
    "movie_count",
    "episode_count",
    "show_count",
    "count_4k",
    "count_1080p",
    "count_720p",
    "count_sd",
)


class LibraryStatsAggregator:
    """Explicit recomputation of the ``library_stats_daily`` rollup.

    The rollup keeps the highest value each metric reached per collection and
    day. Nothing refreshes it implicitly; writers of ``library_snapshots`` must
    call ``refresh`` for the range they touched.
    """

    def __init__(self, session_factory: sessionmaker[Session], *, require_size: bool = True):
        self._session_factory = session_factory
        self._require_size = require_size

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def refresh(self, start_day: date, end_day: date) -> int:
        """Recompute rows for days in ``[start_day, end_day)``. Returns the number of rows written."""
        if end_day <= start_day:
            return 0
        now = self._now()
        source = (
            select(
                LibrarySnapshot.snapshot_day,
                LibrarySnapshot.server_id,
                LibrarySnapshot.library_id,
                *(func.max(getattr(LibrarySnapshot, name)) for name in AGGREGATED_COLUMNS),
                literal(now, DateTime(timezone=True)),
            )
            .where(
                LibrarySnapshot.snapshot_day >= start_day,
                LibrarySnapshot.snapshot_day < end_day,
                valid_snapshot_condition(require_size=self._require_size),
            )
            .group_by(LibrarySnapshot.snapshot_day, LibrarySnapshot.server_id, LibrarySnapshot.library_id)
        )
        target_columns = ["day", "server_id", "library_id", *AGGREGATED_COLUMNS, "refreshed_at"]
        with self._session_factory() as session:
            session.execute(
                delete(LibraryStatsDaily).where(
                    LibraryStatsDaily.day >= start_day,
                    LibraryStatsDaily.day < end_day,
                )
            )
            result = session.execute(insert(LibraryStatsDaily).from_select(target_columns, source))
            session.commit()
        written = int(result.rowcount or 0)
        logger.info("Refreshed library_stats_daily for %s..%s (%d rows)", start_day, end_day, written)
        return written

    def refresh_window(self, days: int, *, today: date | None = None) -> int:
        current = today or self._now().date()
        return self.refresh(current - timedelta(days=days), current + timedelta(days=1))

    def refresh_all(self, *, today: date | None = None) -> int:
        current = today or self._now().date()
        earliest = self.earliest_snapshot_day()
        if earliest is None:
            with self._session_factory() as session:
                session.execute(delete(LibraryStatsDaily))
                session.commit()
            return 0
        return self.refresh(earliest, current + timedelta(days=1))

    def earliest_snapshot_day(self) -> date | None:
        with self._session_factory() as session:
            return session.scalar(select(func.min(LibrarySnapshot.snapshot_day)))
