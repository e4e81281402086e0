from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from streamledger.locks.policy import HeavyOpsLockTimeoutError, LockWaitPolicy, acquire_with_wait
from streamledger.locks.types import HeavyOpsLockHolder


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedLock:
    """Reports the lock as held for the first ``busy_calls`` acquisitions."""

    def __init__(self, busy_calls: int) -> None:
        self.busy_calls = busy_calls
        self.calls = 0
        started = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.holder = HeavyOpsLockHolder(
            job_type="backfill_library_snapshots",
            job_id="maintenance-backfill_library_snapshots-1",
            description="library snapshot backfill",
            started_at=started,
            expires_at=started + timedelta(hours=4),
        )

    def acquire(self, job_type: str, job_id: str, description: str) -> HeavyOpsLockHolder | None:
        self.calls += 1
        if self.calls <= self.busy_calls:
            return self.holder
        return None


def test_acquires_immediately_without_waiting() -> None:
    clock = FakeClock()
    lock = ScriptedLock(busy_calls=0)
    waits: list[float] = []

    elapsed = acquire_with_wait(
        lock,  # type: ignore[arg-type]
        job_type="rebuild_aggregates",
        job_id="job-b",
        description="rollup",
        policy=LockWaitPolicy(interval_seconds=5, max_wait_seconds=60),
        on_wait=lambda holder, waited: waits.append(waited),
        sleep=clock.sleep,
        clock=clock,
    )

    assert elapsed == 0
    assert waits == []
    assert clock.sleeps == []


def test_waits_at_fixed_interval_and_reports_holder() -> None:
    clock = FakeClock()
    lock = ScriptedLock(busy_calls=3)
    seen: list[tuple[str, float]] = []

    elapsed = acquire_with_wait(
        lock,  # type: ignore[arg-type]
        job_type="rebuild_aggregates",
        job_id="job-b",
        description="rollup",
        policy=LockWaitPolicy(interval_seconds=5, max_wait_seconds=3600),
        on_wait=lambda holder, waited: seen.append((holder.job_id, waited)),
        sleep=clock.sleep,
        clock=clock,
    )

    assert clock.sleeps == [5, 5, 5]
    assert elapsed == 15
    assert seen == [(lock.holder.job_id, 0), (lock.holder.job_id, 5), (lock.holder.job_id, 10)]


def test_times_out_with_explicit_error_instead_of_hanging() -> None:
    clock = FakeClock()
    lock = ScriptedLock(busy_calls=10_000)

    with pytest.raises(HeavyOpsLockTimeoutError) as excinfo:
        acquire_with_wait(
            lock,  # type: ignore[arg-type]
            job_type="rebuild_aggregates",
            job_id="job-b",
            description="rollup",
            policy=LockWaitPolicy(interval_seconds=5, max_wait_seconds=3 * 3600),
            sleep=clock.sleep,
            clock=clock,
        )

    assert excinfo.value.holder.job_id == lock.holder.job_id
    assert excinfo.value.waited_seconds == 3 * 3600
    assert "Timed out waiting for library snapshot backfill" in str(excinfo.value)
    assert "after 180 minutes" in str(excinfo.value)
    assert sum(clock.sleeps) == 3 * 3600


def test_on_wait_errors_abort_the_wait() -> None:
    clock = FakeClock()
    lock = ScriptedLock(busy_calls=5)

    def lost_lock(holder: HeavyOpsLockHolder, waited: float) -> None:
        raise RuntimeError("queue lock lost")

    with pytest.raises(RuntimeError, match="queue lock lost"):
        acquire_with_wait(
            lock,  # type: ignore[arg-type]
            job_type="rebuild_aggregates",
            job_id="job-b",
            description="rollup",
            policy=LockWaitPolicy(interval_seconds=5, max_wait_seconds=60),
            on_wait=lost_lock,
            sleep=clock.sleep,
            clock=clock,
        )
    assert lock.calls == 1
    assert clock.sleeps == []


def test_backoff_grows_until_capped() -> None:
    policy = LockWaitPolicy(interval_seconds=5, max_wait_seconds=3600, backoff_factor=2.0, max_interval_seconds=30)

    assert [policy.delay_for(attempt) for attempt in range(1, 6)] == [5, 10, 20, 30, 30]


def test_last_sleep_is_trimmed_to_the_wait_ceiling() -> None:
    clock = FakeClock()
    lock = ScriptedLock(busy_calls=100)

    with pytest.raises(HeavyOpsLockTimeoutError):
        acquire_with_wait(
            lock,  # type: ignore[arg-type]
            job_type="rebuild_aggregates",
            job_id="job-b",
            description="rollup",
            policy=LockWaitPolicy(interval_seconds=7, max_wait_seconds=20),
            sleep=clock.sleep,
            clock=clock,
        )

    assert clock.sleeps == [7, 7, 6]
