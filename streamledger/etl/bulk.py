from __future__ import annotations

import logging
from typing import Any, Callable

from sqlalchemy import ColumnElement, Executable, Select, select
from sqlalchemy.orm import InstrumentedAttribute, Session, sessionmaker

from streamledger.etl.batch import BatchCounters, BatchHooks
from streamledger.etl.errors import ResourceExhaustedError, is_resource_exhaustion

logger = logging.getLogger(__name__)


def limited_keys(
    key_column: InstrumentedAttribute[Any],
    *criteria: ColumnElement[bool],
    limit: int,
) -> Select[Any]:
    """``SELECT key FROM table WHERE criteria LIMIT n`` for use inside ``key IN (...)``.

    Never correlated, so the subquery keeps its own FROM when the enclosing
    UPDATE or DELETE targets the same table.
    """
    return select(key_column).where(*criteria).limit(limit).correlate(None)


def bulk_update_in_chunks(
    session_factory: sessionmaker[Session],
    hooks: BatchHooks | None,
    *,
    phase: str,
    build_statement: Callable[[int], Executable],
    batch_size: int,
    noun: str = "rows",
    max_batches: int | None = None,
) -> BatchCounters:
    """Run a row-limited UPDATE/DELETE repeatedly until it affects no rows.

    ``build_statement(limit)`` must only match rows not yet in the target
    state, otherwise the loop never converges; ``max_batches`` bounds it.
    """
    counters = BatchCounters()
    while max_batches is None or counters.batches < max_batches:
        with session_factory() as session:
            try:
                result = session.execute(build_statement(batch_size))
                session.commit()
            except Exception as exc:
                session.rollback()
                if not is_resource_exhaustion(exc):
                    raise
                error = ResourceExhaustedError(phase, exc, committed=counters.updated)
                counters.aborted = str(error)
                logger.error("%s", error)
                break
        affected = int(getattr(result, "rowcount", 0) or 0)
        if affected <= 0:
            break
        counters.processed += affected
        counters.updated += affected
        counters.batches += 1
        counters.total = max(counters.total, counters.processed)
        logger.debug("%s: batch %d affected %d %s", phase, counters.batches, affected, noun)
        if hooks is not None:
            hooks.after_batch(
                processed=affected,
                updated=affected,
                skipped=0,
                errored=0,
                message=f"{phase}: {counters.updated} {noun} so far...",
            )
    return counters
