from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, NonNegativeInt, PositiveFloat, PositiveInt, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}

MINUTE_MS = 60 * 1000


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="STREAMLEDGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "StreamLedger"
    environment: str = "production"
    log_level: str = "INFO"
    log_file: Path | None = None

    state_root: Path = Field(default=Path("/state"))
    database_url: str | None = None
    database_timeout_seconds: PositiveInt = 30

    job_lock_duration_seconds: PositiveInt = 3600
    job_lock_extend_seconds: PositiveInt = 1800
    stalled_check_interval_seconds: PositiveInt = 30
    max_stalled_count: NonNegativeInt = 2
    worker_poll_seconds: PositiveFloat = 1.0
    keep_completed_jobs: NonNegativeInt = 50
    keep_failed_jobs: NonNegativeInt = 25
    job_retention_days: PositiveInt = 7

    heavy_ops_lock_ttl_seconds: PositiveInt = 4 * 3600
    heavy_ops_wait_interval_seconds: PositiveFloat = 5.0
    heavy_ops_max_wait_seconds: PositiveFloat = 4 * 3600.0
    heavy_ops_wait_backoff_factor: float = 1.0
    heavy_ops_wait_max_interval_seconds: PositiveFloat = 60.0

    row_batch_size: PositiveInt = 500
    bulk_update_batch_size: PositiveInt = 1000
    batch_delay_ms: NonNegativeInt = 50
    item_scan_batch_size: PositiveInt = 5000
    snapshot_write_batch_days: PositiveInt = 90

    progress_publish_every_rows: PositiveInt = 500
    progress_publish_min_interval_seconds: float = 2.0
    progress_channel_capacity: PositiveInt = 1000

    watched_completion_ratio: float = 0.85
    median_episode_duration_ms: PositiveInt = 42 * MINUTE_MS
    median_movie_duration_ms: PositiveInt = 109 * MINUTE_MS
    median_track_duration_ms: PositiveInt = 4 * MINUTE_MS
    default_media_duration_ms: PositiveInt = 60 * MINUTE_MS

    aggregate_refresh_window_days: PositiveInt = 7
    prune_zero_size_days: bool = True

    @field_validator("state_root", "log_file", mode="before")
    @classmethod
    def _normalize_path(cls, value: str | Path | None) -> Path | None:
        if value is None or value == "":
            return None
        raw = str(value)
        if "~" in raw:
            raise ValueError("Home expansion syntax is not allowed in paths")
        if "$" in raw:
            raise ValueError("Environment variable syntax is not allowed in paths")
        path = Path(raw)
        if not path.is_absolute():
            raise ValueError("Path settings must be absolute")
        return path

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "Settings":
        self.state_root = self.state_root.resolve(strict=False)
        self.state_root.mkdir(parents=True, exist_ok=True)

        normalized_level = self.log_level.upper().strip()
        if normalized_level not in SUPPORTED_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(SUPPORTED_LOG_LEVELS)}")
        self.log_level = normalized_level

        if self.job_lock_extend_seconds > self.job_lock_duration_seconds:
            raise ValueError("job_lock_extend_seconds must be less than or equal to job_lock_duration_seconds")

        if self.heavy_ops_max_wait_seconds < self.heavy_ops_wait_interval_seconds:
            raise ValueError("heavy_ops_max_wait_seconds must be greater than or equal to heavy_ops_wait_interval_seconds")
        if self.heavy_ops_wait_backoff_factor < 1.0:
            raise ValueError("heavy_ops_wait_backoff_factor must be >= 1.0")
        if self.heavy_ops_wait_max_interval_seconds < self.heavy_ops_wait_interval_seconds:
            raise ValueError("heavy_ops_wait_max_interval_seconds must be >= heavy_ops_wait_interval_seconds")

        if not 0.0 < self.watched_completion_ratio <= 1.0:
            raise ValueError("watched_completion_ratio must be in (0.0, 1.0]")

        if self.progress_publish_min_interval_seconds < 0:
            raise ValueError("progress_publish_min_interval_seconds must be >= 0")

        return self

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        db_path = self.state_root / "streamledger.sqlite3"
        return f"sqlite:///{db_path.as_posix()}"

    def median_duration_ms(self, media_type: str | None) -> int:
        token = (media_type or "").strip().lower()
        if token == "episode":
            return self.median_episode_duration_ms
        if token == "movie":
            return self.median_movie_duration_ms
        if token == "track":
            return self.median_track_duration_ms
        return self.default_media_duration_ms


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
