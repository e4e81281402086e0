from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class MaintenanceJobType(str, Enum):
    FIX_IMPORTED_PROGRESS = "fix_imported_progress"
    NORMALIZE_CODECS = "normalize_codecs"
    NORMALIZE_COUNTRIES = "normalize_countries"
    BACKFILL_USER_DATES = "backfill_user_dates"
    BACKFILL_LIBRARY_SNAPSHOTS = "backfill_library_snapshots"
    REBUILD_AGGREGATES = "rebuild_aggregates"


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    STALLED = "stalled"
    COMPLETED = "completed"
    FAILED = "failed"


ADMITTED_JOB_STATES: tuple[JobState, ...] = (
    JobState.WAITING,
    JobState.DELAYED,
    JobState.ACTIVE,
    JobState.STALLED,
)
TERMINAL_JOB_STATES: tuple[JobState, ...] = (JobState.COMPLETED, JobState.FAILED)


class MaintenanceJob(Base):
    __tablename__ = "maintenance_jobs"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    job_type: Mapped[str] = mapped_column(String(64), nullable=False)
    state: Mapped[JobState] = mapped_column(
        SAEnum(JobState, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=JobState.WAITING,
    )
    initiator_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON(none_as_null=True), nullable=False, default=dict)

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stalled_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    failed_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    worker_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    lock_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lock_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    run_after: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_maintenance_jobs_state_created", "state", "created_at"),
        Index("ix_maintenance_jobs_active_lock", "state", "lock_expires_at"),
        Index("ix_maintenance_jobs_finished_at", "finished_at"),
    )


class HeavyOpsLock(Base):
    __tablename__ = "heavy_ops_locks"

    lock_key: Mapped[str] = mapped_column(String(100), primary_key=True)
    job_type: Mapped[str] = mapped_column(String(64), nullable=False)
    job_id: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    heartbeat_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_heavy_ops_locks_expires_at", "expires_at"),)


class ServerUser(Base):
    __tablename__ = "server_users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    server_id: Mapped[str] = mapped_column(String(64), nullable=False)
    username: Mapped[str] = mapped_column(String(255), nullable=False)
    joined_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (UniqueConstraint("server_id", "username", name="uq_server_users_server_username"),)


class PlaybackSession(Base):
    __tablename__ = "sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    server_user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("server_users.id", ondelete="CASCADE"), nullable=False
    )
    media_type: Mapped[str] = mapped_column(String(32), nullable=False)
    external_session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    progress_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    total_duration_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    watched: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    source_video_codec: Mapped[str | None] = mapped_column(String(64), nullable=True)
    source_audio_codec: Mapped[str | None] = mapped_column(String(64), nullable=True)
    stream_video_codec: Mapped[str | None] = mapped_column(String(64), nullable=True)
    stream_audio_codec: Mapped[str | None] = mapped_column(String(64), nullable=True)

    geo_city: Mapped[str | None] = mapped_column(String(255), nullable=True)
    geo_country: Mapped[str | None] = mapped_column(String(100), nullable=True)

    __table_args__ = (
        Index("ix_sessions_server_user_started", "server_user_id", "started_at"),
        Index("ix_sessions_external_session_id", "external_session_id"),
    )


class LibraryItem(Base):
    __tablename__ = "library_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    server_id: Mapped[str] = mapped_column(String(64), nullable=False)
    library_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rating_key: Mapped[str] = mapped_column(String(128), nullable=False)
    title: Mapped[str] = mapped_column(String(1024), nullable=False, default="")
    media_type: Mapped[str] = mapped_column(String(32), nullable=False)
    video_resolution: Mapped[str | None] = mapped_column(String(32), nullable=True)
    video_codec: Mapped[str | None] = mapped_column(String(32), nullable=True)
    file_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("server_id", "library_id", "rating_key", name="uq_library_items_rating_key"),
        Index("ix_library_items_collection_id", "server_id", "library_id", "id"),
    )


class LibrarySnapshot(Base):
    __tablename__ = "library_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    server_id: Mapped[str] = mapped_column(String(64), nullable=False)
    library_id: Mapped[str] = mapped_column(String(64), nullable=False)
    snapshot_day: Mapped[date] = mapped_column(Date, nullable=False)
    snapshot_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    item_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    movie_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    episode_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    season_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    show_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    music_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    other_media_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    count_4k: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    count_1080p: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    count_720p: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    count_sd: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    count_unknown_resolution: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    hevc_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    h264_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    av1_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    other_codec_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    enrichment_pending: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    enrichment_complete: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("server_id", "library_id", "snapshot_day", name="uq_library_snapshots_collection_day"),
        Index("ix_library_snapshots_day", "snapshot_day"),
    )


class LibraryStatsDaily(Base):
    __tablename__ = "library_stats_daily"

    day: Mapped[date] = mapped_column(Date, primary_key=True)
    server_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    library_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    item_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    movie_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    episode_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    show_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    count_4k: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    count_1080p: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    count_720p: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    count_sd: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    refreshed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SchemaMigration(Base):
    __tablename__ = "schema_migrations"

    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
