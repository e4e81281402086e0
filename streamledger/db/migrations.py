from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy import Connection, Engine, inspect, text


@dataclass(frozen=True)
class MigrationStep:
    version: int
    name: str
    apply: Callable[[Connection], None]


def _ensure_schema_migrations_table(conn: Connection) -> None:
    conn.execute(
        text(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                applied_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
    )


def _column_exists(conn: Connection, table_name: str, column_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    dialect_name = conn.engine.dialect.name
    if dialect_name == "sqlite":
        rows = conn.execute(text(f"PRAGMA table_info('{table_name}')")).mappings().all()
        return any(str(row["name"]) == column_name for row in rows)

    inspector = inspect(conn)
    return any(col["name"] == column_name for col in inspector.get_columns(table_name))


def _index_exists(conn: Connection, table_name: str, index_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    if conn.engine.dialect.name == "sqlite":
        rows = conn.execute(text(f"PRAGMA index_list('{table_name}')")).mappings().all()
        return any(str(row["name"]) == index_name for row in rows)

    inspector = inspect(conn)
    indexes = inspector.get_indexes(table_name)
    return any(index.get("name") == index_name for index in indexes)


def _table_exists(conn: Connection, table_name: str) -> bool:
    inspector = inspect(conn)
    return inspector.has_table(table_name)


def _migration_0001_baseline(_conn: Connection) -> None:
    return


def _resolve_duplicate_admitted_maintenance_jobs(conn: Connection) -> None:
    rows = conn.execute(
        text(
            """
            SELECT id
            FROM maintenance_jobs
            WHERE lower(state) IN ('waiting', 'delayed', 'active', 'stalled')
            ORDER BY
              CASE lower(state) WHEN 'active' THEN 0 WHEN 'stalled' THEN 1 ELSE 2 END ASC,
              created_at ASC,
              id ASC
            """
        )
    ).all()
    if len(rows) <= 1:
        return

    stale_ids = [str(row[0]) for row in rows[1:]]
    for job_id in stale_ids:
        conn.execute(
            text(
                """
                UPDATE maintenance_jobs
                SET state = 'failed',
                    failed_reason = 'Superseded while enforcing single maintenance job admission',
                    lock_token = NULL,
                    lock_expires_at = NULL,
                    finished_at = CURRENT_TIMESTAMP,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = :job_id
                """
            ),
            {"job_id": job_id},
        )


def _drop_single_admission_index(conn: Connection) -> None:
    conn.execute(text("DROP INDEX IF EXISTS ix_maintenance_jobs_single_admission"))


def _rebuild_single_admission_index(conn: Connection) -> None:
    _drop_single_admission_index(conn)
    conn.execute(
        text(
            "CREATE UNIQUE INDEX ix_maintenance_jobs_single_admission "
            "ON maintenance_jobs((1)) WHERE state IN ('waiting', 'delayed', 'active', 'stalled')"
        )
    )


def _migration_0002_maintenance_job_admission_mutex(conn: Connection) -> None:
    if not _table_exists(conn, "maintenance_jobs"):
        return

    _drop_single_admission_index(conn)
    _resolve_duplicate_admitted_maintenance_jobs(conn)
    _rebuild_single_admission_index(conn)


def _migration_0003_library_snapshot_day_key(conn: Connection) -> None:
    if not _table_exists(conn, "library_snapshots"):
        return

    if not _column_exists(conn, "library_snapshots", "snapshot_day"):
        conn.execute(text("ALTER TABLE library_snapshots ADD COLUMN snapshot_day DATE"))
        conn.execute(text("UPDATE library_snapshots SET snapshot_day = DATE(snapshot_time) WHERE snapshot_day IS NULL"))

    # Keep the highest-fidelity row per collection/day before the unique key is enforced.
    conn.execute(
        text(
            """
            DELETE FROM library_snapshots
            WHERE id IN (
                SELECT s.id
                FROM library_snapshots s
                JOIN library_snapshots keeper
                  ON keeper.server_id = s.server_id
                 AND keeper.library_id = s.library_id
                 AND keeper.snapshot_day = s.snapshot_day
                 AND (
                    keeper.item_count > s.item_count
                    OR (keeper.item_count = s.item_count AND keeper.id > s.id)
                 )
            )
            """
        )
    )

    if not _index_exists(conn, "library_snapshots", "uq_library_snapshots_collection_day"):
        conn.execute(
            text(
                "CREATE UNIQUE INDEX IF NOT EXISTS uq_library_snapshots_collection_day "
                "ON library_snapshots (server_id, library_id, snapshot_day)"
            )
        )


def _migration_0004_imported_session_scan_index(conn: Connection) -> None:
    if not _table_exists(conn, "sessions"):
        return

    conn.execute(
        text(
            "CREATE INDEX IF NOT EXISTS ix_sessions_imported_progress "
            "ON sessions (id) WHERE external_session_id IS NOT NULL AND duration_ms IS NOT NULL "
            "AND (progress_ms IS NULL OR total_duration_ms IS NULL)"
        )
    )



def _migration_0005_session_geo_columns(conn: Connection) -> None:
    if not _table_exists(conn, "sessions"):
        return

    if not _column_exists(conn, "sessions", "geo_city"):
        conn.execute(text("ALTER TABLE sessions ADD COLUMN geo_city VARCHAR(255)"))
    if not _column_exists(conn, "sessions", "geo_country"):
        conn.execute(text("ALTER TABLE sessions ADD COLUMN geo_country VARCHAR(100)"))

MIGRATIONS: tuple[MigrationStep, ...] = (
    MigrationStep(version=1, name="baseline", apply=_migration_0001_baseline),
    MigrationStep(
        version=2,
        name="maintenance_job_admission_mutex",
        apply=_migration_0002_maintenance_job_admission_mutex,
    ),
    MigrationStep(
        version=3,
        name="library_snapshot_day_key",
        apply=_migration_0003_library_snapshot_day_key,
    ),
    MigrationStep(
        version=4,
        name="imported_session_scan_index",
        apply=_migration_0004_imported_session_scan_index,
    ),
    MigrationStep(
        version=5,
        name="session_geo_columns",
        apply=_migration_0005_session_geo_columns,
    ),
)


def apply_migrations(engine: Engine) -> list[int]:
    applied: list[int] = []
    with engine.begin() as conn:
        _ensure_schema_migrations_table(conn)

        existing_versions = {
            int(row[0])
            for row in conn.execute(text("SELECT version FROM schema_migrations ORDER BY version ASC")).all()
        }

        for step in MIGRATIONS:
            if step.version in existing_versions:
                continue

            step.apply(conn)
            conn.execute(
                text("INSERT INTO schema_migrations(version, name) VALUES (:version, :name)"),
                {"version": step.version, "name": step.name},
            )
            applied.append(step.version)
    return applied
