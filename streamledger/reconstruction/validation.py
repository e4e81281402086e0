from __future__ import annotations

from sqlalchemy import ColumnElement, and_, not_, or_

from streamledger.db.models import LibraryItem, LibrarySnapshot

SNAPSHOT_COUNT_COLUMNS = (
    LibrarySnapshot.item_count,
    LibrarySnapshot.movie_count,
    LibrarySnapshot.episode_count,
    LibrarySnapshot.season_count,
    LibrarySnapshot.show_count,
    LibrarySnapshot.music_count,
    LibrarySnapshot.other_media_count,
)


def valid_item_condition() -> ColumnElement[bool]:
    return and_(LibraryItem.file_size.is_not(None), LibraryItem.file_size > 0)


def invalid_snapshot_condition(*, require_size: bool = True) -> ColumnElement[bool]:
    """Snapshots with no items in any category, or (with ``require_size``) no bytes."""
    empty = and_(*(column == 0 for column in SNAPSHOT_COUNT_COLUMNS))
    if not require_size:
        return empty
    return or_(empty, LibrarySnapshot.total_size <= 0)


def valid_snapshot_condition(*, require_size: bool = True) -> ColumnElement[bool]:
    return not_(invalid_snapshot_condition(require_size=require_size))
