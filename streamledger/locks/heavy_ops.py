from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from streamledger.core.config import Settings
from streamledger.db.models import HeavyOpsLock
from streamledger.locks.types import HeavyOpsLockHolder

logger = logging.getLogger(__name__)

HEAVY_OPS_LOCK_KEY = "streamledger:heavy-ops:lock"
_MAX_ACQUIRE_ATTEMPTS = 3


class HeavyOpsLockError(RuntimeError):
    pass


class HeavyOpsLockService:
    """System-wide mutual exclusion between resource-intensive operations.

    A single row keyed by ``HEAVY_OPS_LOCK_KEY`` is the lock. Acquisition is a
    compare-and-set through the primary key; an expired row is deleted before
    the insert so a crashed holder forfeits the lock once its TTL passes.
    """

    def __init__(self, settings: Settings, session_factory: sessionmaker[Session], *, lock_key: str = HEAVY_OPS_LOCK_KEY):
        self._settings = settings
        self._session_factory = session_factory
        self._lock_key = lock_key

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _ttl(self) -> timedelta:
        return timedelta(seconds=self._settings.heavy_ops_lock_ttl_seconds)

    def _coerce_utc(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def _to_holder(self, row: HeavyOpsLock) -> HeavyOpsLockHolder:
        return HeavyOpsLockHolder(
            job_type=row.job_type,
            job_id=row.job_id,
            description=row.description,
            started_at=self._coerce_utc(row.started_at),
            expires_at=self._coerce_utc(row.expires_at),
        )

    def acquire(self, job_type: str, job_id: str, description: str) -> HeavyOpsLockHolder | None:
        """Return ``None`` when the caller now holds the lock, else the current holder."""
        normalized_job_id = job_id.strip()
        if not normalized_job_id:
            raise ValueError("job_id cannot be blank")

        for _ in range(_MAX_ACQUIRE_ATTEMPTS):
            with self._session_factory() as session:
                now = self._now()
                session.execute(
                    delete(HeavyOpsLock).where(
                        HeavyOpsLock.lock_key == self._lock_key,
                        HeavyOpsLock.expires_at <= now,
                    )
                )
                session.add(
                    HeavyOpsLock(
                        lock_key=self._lock_key,
                        job_type=job_type,
                        job_id=normalized_job_id,
                        description=description,
                        started_at=now,
                        heartbeat_at=now,
                        expires_at=now + self._ttl(),
                    )
                )
                try:
                    session.commit()
                    logger.info("Heavy-ops lock acquired by %s (%s)", normalized_job_id, job_type)
                    return None
                except IntegrityError:
                    session.rollback()

                existing = session.get(HeavyOpsLock, self._lock_key)
                if existing is None:
                    # Released between the insert and the read; try again.
                    continue
                if existing.job_id == normalized_job_id:
                    existing.heartbeat_at = now
                    existing.expires_at = now + self._ttl()
                    session.commit()
                    logger.info("Heavy-ops lock re-acquired by %s", normalized_job_id)
                    return None
                if self._coerce_utc(existing.expires_at) <= now:
                    continue
                return self._to_holder(existing)

        raise HeavyOpsLockError(f"Could not settle heavy-ops lock ownership for job {normalized_job_id}")

    def release(self, job_id: str) -> bool:
        """Release the lock if ``job_id`` holds it. Returns False only when another job holds it."""
        with self._session_factory() as session:
            result = session.execute(
                delete(HeavyOpsLock).where(
                    HeavyOpsLock.lock_key == self._lock_key,
                    HeavyOpsLock.job_id == job_id,
                )
            )
            session.commit()
            if int(result.rowcount or 0) > 0:
                logger.info("Heavy-ops lock released by %s", job_id)
                return True
            holder = session.get(HeavyOpsLock, self._lock_key)
            if holder is None:
                return True
            logger.warning("Heavy-ops lock release by %s ignored; held by %s", job_id, holder.job_id)
            return False

    def extend(self, job_id: str) -> bool:
        with self._session_factory() as session:
            now = self._now()
            result = session.execute(
                update(HeavyOpsLock)
                .where(
                    HeavyOpsLock.lock_key == self._lock_key,
                    HeavyOpsLock.job_id == job_id,
                    HeavyOpsLock.expires_at > now,
                )
                .values(heartbeat_at=now, expires_at=now + self._ttl())
            )
            session.commit()
            extended = int(result.rowcount or 0) == 1
            if not extended:
                logger.warning("Heavy-ops lock extension failed for %s", job_id)
            return extended

    def status(self) -> HeavyOpsLockHolder | None:
        with self._session_factory() as session:
            row = session.scalar(
                select(HeavyOpsLock).where(
                    HeavyOpsLock.lock_key == self._lock_key,
                    HeavyOpsLock.expires_at > self._now(),
                )
            )
            if row is None:
                return None
            return self._to_holder(row)

    def is_held(self) -> bool:
        return self.status() is not None

    def force_release(self) -> HeavyOpsLockHolder | None:
        with self._session_factory() as session:
            row = session.get(HeavyOpsLock, self._lock_key)
            if row is None:
                return None
            holder = self._to_holder(row)
            session.delete(row)
            session.commit()
        logger.warning("Heavy-ops lock force-released (was held by %s)", holder.job_id)
        return holder

    def cleanup_expired(self) -> int:
        with self._session_factory() as session:
            result = session.execute(delete(HeavyOpsLock).where(HeavyOpsLock.expires_at <= self._now()))
            session.commit()
            return int(result.rowcount or 0)
