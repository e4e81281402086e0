from __future__ import annotations

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from streamledger.core.config import Settings, get_settings

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _install_sqlite_pragmas(engine: Engine, busy_timeout_ms: int) -> None:
    """Every pooled connection waits out writer contention instead of failing with SQLITE_BUSY.

    The queue claim, the heavy-ops lock row and the batch writers all contend for
    the single SQLite writer slot across worker processes.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _connection_record) -> None:  # type: ignore[no-untyped-def]
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)};")
        cursor.execute("PRAGMA temp_store=MEMORY;")
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.close()


def build_engine(settings: Settings) -> Engine:
    url = settings.effective_database_url
    connect_args: dict[str, object] = {}
    if _is_sqlite(url):
        # Worker threads (stalled monitor, progress channel) share pooled connections.
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = settings.database_timeout_seconds

    engine = create_engine(url, pool_pre_ping=True, future=True, connect_args=connect_args)
    if _is_sqlite(url):
        _install_sqlite_pragmas(engine, settings.database_timeout_seconds * 1000)
    return engine


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings())
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(
            bind=get_engine(),
            autoflush=False,
            expire_on_commit=False,
            class_=Session,
        )
    return _session_factory


def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None
