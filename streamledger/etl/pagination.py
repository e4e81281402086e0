from __future__ import annotations

from typing import Any, Iterator, Sequence

from sqlalchemy import Row, Select
from sqlalchemy.orm import InstrumentedAttribute, Session, sessionmaker


def iter_keyset_batches(
    session_factory: sessionmaker[Session],
    statement: Select[Any],
    key_column: InstrumentedAttribute[Any],
    *,
    batch_size: int,
    start_after: Any = None,
) -> Iterator[Sequence[Row[Any]]]:
    """Yield batches of ``statement`` rows ordered by ``key_column``.

    Each batch is read in its own short session with ``key > last seen key``,
    so the cost of a page does not grow with how far the scan has advanced and
    rows mutated by earlier batches are not revisited. ``statement`` must
    select ``key_column``.
    """
    if batch_size <= 0:
        raise ValueError("batch_size must be > 0")

    last_key = start_after
    while True:
        page = statement.order_by(None).order_by(key_column.asc()).limit(batch_size)
        if last_key is not None:
            page = page.where(key_column > last_key)
        with session_factory() as session:
            rows = session.execute(page).all()
        if not rows:
            return
        yield rows
        if len(rows) < batch_size:
            return
        last_key = rows[-1]._mapping[key_column]
