from __future__ import annotations

import logging

from sqlalchemy import text

from streamledger.db.migrations import apply_migrations
from streamledger.db.models import Base
from streamledger.db.session import get_engine

logger = logging.getLogger(__name__)


def initialize_database() -> list[int]:
    """Create the job, lock and statistics tables, then bring the schema up to date.

    Returns the migration versions applied by this call; an up-to-date database yields ``[]``.
    """
    engine = get_engine()
    Base.metadata.create_all(bind=engine)
    applied = apply_migrations(engine)
    if applied:
        logger.info("Applied schema migrations %s to %s", applied, engine.url.render_as_string(hide_password=True))

    if engine.url.drivername.startswith("sqlite"):
        with engine.connect() as conn:
            conn.execute(text("PRAGMA optimize;"))
            conn.commit()
    return applied
