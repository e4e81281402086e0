from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import pycountry
from sqlalchemy import ColumnElement, and_, func, or_, select

from streamledger.db.models import MaintenanceJobType, PlaybackSession
from streamledger.etl.batch import run_row_transform
from streamledger.handlers.registry import MaintenanceHandler, result_from_counters
from streamledger.progress.types import JobResult

if TYPE_CHECKING:
    from streamledger.worker.context import JobContext

logger = logging.getLogger(__name__)

DESCRIPTION = "country name normalization"
LOCAL_NETWORK = "Local Network"


def needs_country_normalization() -> ColumnElement[bool]:
    """Full country names, or the legacy ``geo_city = 'Local'`` marker."""
    return or_(
        and_(PlaybackSession.geo_country.is_not(None), func.length(PlaybackSession.geo_country) > 2),
        func.lower(PlaybackSession.geo_city) == "local",
    )


def country_code(name: str) -> str | None:
    """Resolve a country name (or alpha-3 code) to its ISO 3166-1 alpha-2 code."""
    try:
        return pycountry.countries.lookup(name.strip()).alpha_2
    except LookupError:
        return None


def normalize_location(geo_city: str | None, geo_country: str | None) -> dict[str, str | None] | None:
    if geo_city is not None and geo_city.lower() == "local":
        return {"geo_city": None, "geo_country": LOCAL_NETWORK}
    if not geo_country or len(geo_country) <= 2:
        return None
    if geo_country.lower() in ("local", "local network"):
        if geo_country == LOCAL_NETWORK:
            return None
        return {"geo_country": LOCAL_NETWORK}
    code = country_code(geo_country)
    if code is None:
        return None
    return {"geo_country": code}


def run(ctx: JobContext) -> JobResult:
    settings = ctx.settings
    with ctx.session_factory() as session:
        total = int(
            session.scalar(select(func.count()).select_from(PlaybackSession).where(needs_country_normalization()))
            or 0
        )
    ctx.tracker.set_total(total, f"Found {total} sessions with country names")
    logger.info("Job %s: %d sessions need country normalization", ctx.job_id, total)
    if total == 0:
        return JobResult(
            success=True,
            job_type=ctx.job_type,
            message="No sessions need country normalization",
        )

    def transform(row: Any) -> dict[str, str | None] | None:
        return normalize_location(row.geo_city, row.geo_country)

    counters = run_row_transform(
        ctx.session_factory,
        ctx,
        phase="Country normalization",
        statement=select(
            PlaybackSession.id,
            PlaybackSession.geo_city,
            PlaybackSession.geo_country,
        ).where(needs_country_normalization()),
        key_column=PlaybackSession.id,
        transform=transform,
        batch_size=settings.row_batch_size,
        total=total,
        noun="sessions",
    )
    return result_from_counters(
        ctx.job_type,
        counters,
        f"Converted {counters.updated} country names to ISO codes",
    )


HANDLER = MaintenanceHandler(
    job_type=MaintenanceJobType.NORMALIZE_COUNTRIES.value,
    description=DESCRIPTION,
    run=run,
)
