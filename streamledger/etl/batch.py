from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from sqlalchemy import Row, Select, update
from sqlalchemy.orm import InstrumentedAttribute, Session, sessionmaker

from streamledger.etl.errors import ResourceExhaustedError, is_resource_exhaustion
from streamledger.etl.pagination import iter_keyset_batches

logger = logging.getLogger(__name__)

RowTransform = Callable[[Row[Any]], "dict[str, Any] | None"]


@dataclass(slots=True)
class BatchCounters:
    total: int = 0
    processed: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    batches: int = 0
    aborted: str | None = None

    @property
    def succeeded(self) -> bool:
        if self.aborted is not None:
            return False
        return self.errors * 2 <= self.processed

    def absorb(self, other: "BatchCounters") -> None:
        self.total += other.total
        self.processed += other.processed
        self.updated += other.updated
        self.skipped += other.skipped
        self.errors += other.errors
        self.batches += other.batches
        if other.aborted is not None and self.aborted is None:
            self.aborted = other.aborted


class BatchHooks(Protocol):
    def after_batch(
        self,
        *,
        processed: int,
        updated: int,
        skipped: int,
        errored: int,
        message: str,
    ) -> None: ...


def run_row_transform(
    session_factory: sessionmaker[Session],
    hooks: BatchHooks,
    *,
    phase: str,
    statement: Select[Any],
    key_column: InstrumentedAttribute[Any],
    transform: RowTransform,
    batch_size: int,
    total: int = 0,
    noun: str = "rows",
) -> BatchCounters:
    """Page through ``statement`` and apply per-row updates one at a time.

    ``transform`` returns the column values to write, or ``None`` when the row
    is already in the target state (counted as skipped). A row whose transform
    or update raises is counted as an error and the batch continues; running
    out of store resources aborts the phase and keeps every committed row.
    """
    counters = BatchCounters(total=total)
    target = key_column.class_
    try:
        for rows in iter_keyset_batches(session_factory, statement, key_column, batch_size=batch_size):
            batch_updated = batch_skipped = batch_errors = 0
            with session_factory() as session:
                for row in rows:
                    row_id = row._mapping[key_column]
                    try:
                        values = transform(row)
                    except Exception:
                        batch_errors += 1
                        logger.exception("%s: transform failed for %s id=%s", phase, noun, row_id)
                        continue
                    if not values:
                        batch_skipped += 1
                        continue
                    try:
                        session.execute(update(target).where(key_column == row_id).values(**values))
                        session.commit()
                    except Exception as exc:
                        session.rollback()
                        if is_resource_exhaustion(exc):
                            counters.updated += batch_updated
                            counters.skipped += batch_skipped
                            counters.errors += batch_errors
                            counters.processed += batch_updated + batch_skipped + batch_errors
                            raise ResourceExhaustedError(phase, exc, committed=counters.updated) from exc
                        batch_errors += 1
                        logger.warning("%s: update failed for %s id=%s: %s", phase, noun, row_id, exc)
                        continue
                    batch_updated += 1

            counters.processed += len(rows)
            counters.updated += batch_updated
            counters.skipped += batch_skipped
            counters.errors += batch_errors
            counters.batches += 1
            counters.total = max(counters.total, counters.processed)
            hooks.after_batch(
                processed=len(rows),
                updated=batch_updated,
                skipped=batch_skipped,
                errored=batch_errors,
                message=f"Processed {counters.processed} of {counters.total} {noun}...",
            )
    except ResourceExhaustedError as exc:
        counters.aborted = str(exc)
        logger.error("%s", exc)
    return counters
