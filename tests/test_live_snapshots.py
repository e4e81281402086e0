from __future__ import annotations

import os
from datetime import date, datetime, time, timezone
from pathlib import Path

from sqlalchemy import select

import streamledger.db.session as db_session_module
from streamledger.core.config import get_settings
from streamledger.db.init_db import initialize_database
from streamledger.db.models import LibraryItem, LibrarySnapshot
from streamledger.locks.heavy_ops import HeavyOpsLockService
from streamledger.reconstruction.algorithm import CollectionKey
from streamledger.reconstruction.live import LiveSnapshotOutcome, LiveSnapshotRecorder

TODAY = date(2024, 3, 10)
KEY = CollectionKey(server_id="srv-1", library_id="tv")


def setup_env(tmp_path: Path) -> LiveSnapshotRecorder:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["STREAMLEDGER_STATE_ROOT"] = state_root.as_posix()

    get_settings.cache_clear()
    db_session_module._engine = None
    db_session_module._session_factory = None
    initialize_database()
    settings = get_settings()
    session_factory = db_session_module.get_session_factory()
    return LiveSnapshotRecorder(
        settings,
        session_factory,
        HeavyOpsLockService(settings, session_factory),
        today=lambda: TODAY,
    )


def _add_item(rating_key: str, media_type: str, size: int | None = 1_000) -> None:
    with db_session_module.get_session_factory()() as session:
        session.add(
            LibraryItem(
                server_id=KEY.server_id,
                library_id=KEY.library_id,
                rating_key=rating_key,
                title=rating_key,
                media_type=media_type,
                video_resolution="4k",
                video_codec="hevc",
                file_size=size,
                created_at=datetime.combine(TODAY, time(8, 0), tzinfo=timezone.utc),
            )
        )
        session.commit()


def _today_rows() -> list[LibrarySnapshot]:
    with db_session_module.get_session_factory()() as session:
        return list(session.scalars(select(LibrarySnapshot).where(LibrarySnapshot.snapshot_day == TODAY)).all())


def test_record_inserts_today_snapshot(tmp_path: Path) -> None:
    recorder = setup_env(tmp_path)
    _add_item("show-1", "show", size=None)
    _add_item("ep-1", "episode")
    _add_item("ep-2", "episode")

    assert recorder.record(KEY) == LiveSnapshotOutcome.CREATED

    rows = _today_rows()
    assert len(rows) == 1
    assert (rows[0].item_count, rows[0].episode_count, rows[0].count_4k) == (2, 2, 2)
    assert rows[0].total_size == 2_000


def test_record_defers_while_heavy_operation_runs(tmp_path: Path) -> None:
    recorder = setup_env(tmp_path)
    _add_item("movie-1", "movie")
    settings = get_settings()
    lock = HeavyOpsLockService(settings, db_session_module.get_session_factory())
    assert lock.acquire("backfill_library_snapshots", "job-a", "library snapshot backfill") is None

    assert recorder.record(KEY) == LiveSnapshotOutcome.DEFERRED_HEAVY_OP
    assert _today_rows() == []

    lock.release("job-a")
    assert recorder.record(KEY) == LiveSnapshotOutcome.CREATED


def test_incomplete_sync_is_skipped(tmp_path: Path) -> None:
    recorder = setup_env(tmp_path)
    _add_item("show-1", "show")

    assert recorder.record(KEY) == LiveSnapshotOutcome.SKIPPED_INCOMPLETE
    assert _today_rows() == []


def test_unsized_collection_is_skipped_as_invalid(tmp_path: Path) -> None:
    recorder = setup_env(tmp_path)
    _add_item("movie-1", "movie", size=0)

    assert recorder.record(KEY) == LiveSnapshotOutcome.SKIPPED_INVALID


def test_same_day_update_never_lowers_item_count(tmp_path: Path) -> None:
    recorder = setup_env(tmp_path)
    _add_item("movie-1", "movie")
    _add_item("movie-2", "movie")
    assert recorder.record(KEY) == LiveSnapshotOutcome.CREATED

    _add_item("movie-3", "movie")
    assert recorder.record(KEY) == LiveSnapshotOutcome.UPDATED
    assert _today_rows()[0].item_count == 3

    with db_session_module.get_session_factory()() as session:
        row = session.scalar(select(LibraryItem).where(LibraryItem.rating_key == "movie-3"))
        assert row is not None
        session.delete(row)
        session.commit()

    assert recorder.record(KEY) == LiveSnapshotOutcome.KEPT_EXISTING
    rows = _today_rows()
    assert len(rows) == 1
    assert rows[0].item_count == 3
