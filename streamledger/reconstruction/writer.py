from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from itertools import islice
from typing import Iterable, Iterator

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from streamledger.db.models import LibrarySnapshot
from streamledger.reconstruction.algorithm import CollectionKey, CumulativeRow

logger = logging.getLogger(__name__)

END_OF_DAY = time(23, 59, 59)


def end_of_day(day: date) -> datetime:
    return datetime.combine(day, END_OF_DAY, tzinfo=timezone.utc)


@dataclass(slots=True)
class WriteOutcome:
    created: int = 0
    existing: int = 0
    batches: int = 0


def _chunks(rows: Iterable[CumulativeRow], size: int) -> Iterator[list[CumulativeRow]]:
    iterator = iter(rows)
    while True:
        chunk = list(islice(iterator, size))
        if not chunk:
            return
        yield chunk


class SnapshotWriter:
    """Inserts reconstructed rows in date-bounded batches, never touching existing days."""

    def __init__(self, session_factory: sessionmaker[Session], *, batch_days: int):
        if batch_days <= 0:
            raise ValueError("batch_days must be > 0")
        self._session_factory = session_factory
        self._batch_days = batch_days

    def write(self, key: CollectionKey, rows: Iterable[CumulativeRow]) -> WriteOutcome:
        outcome = WriteOutcome()
        for chunk in _chunks(rows, self._batch_days):
            created, existing = self._write_chunk(key, chunk)
            outcome.created += created
            outcome.existing += existing
            outcome.batches += 1
        return outcome

    def _existing_days(self, session: Session, key: CollectionKey, first: date, last: date) -> set[date]:
        return set(
            session.scalars(
                select(LibrarySnapshot.snapshot_day).where(
                    LibrarySnapshot.server_id == key.server_id,
                    LibrarySnapshot.library_id == key.library_id,
                    LibrarySnapshot.snapshot_day >= first,
                    LibrarySnapshot.snapshot_day <= last,
                )
            ).all()
        )

    def _write_chunk(self, key: CollectionKey, chunk: list[CumulativeRow]) -> tuple[int, int]:
        try:
            return self._insert_missing(key, chunk)
        except IntegrityError:
            # A live sync inserted one of these days between the read and the insert.
            logger.info("Snapshot batch for %s raced a concurrent insert; retrying", key)
            return self._insert_missing(key, chunk)

    def _insert_missing(self, key: CollectionKey, chunk: list[CumulativeRow]) -> tuple[int, int]:
        with self._session_factory() as session:
            existing = self._existing_days(session, key, chunk[0].day, chunk[-1].day)
            missing = [row for row in chunk if row.day not in existing]
            session.add_all(self._to_model(key, row) for row in missing)
            session.commit()
            return len(missing), len(chunk) - len(missing)

    def _to_model(self, key: CollectionKey, row: CumulativeRow) -> LibrarySnapshot:
        metrics = row.metrics
        return LibrarySnapshot(
            server_id=key.server_id,
            library_id=key.library_id,
            snapshot_day=row.day,
            snapshot_time=end_of_day(row.day),
            enrichment_pending=0,
            enrichment_complete=metrics.item_count,
            **metrics.to_dict(),
        )
