from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Any, Callable, Protocol

from streamledger.progress.types import ProgressSnapshot, ProgressStatus

logger = logging.getLogger(__name__)

Subscriber = Callable[[str, dict[str, Any]], None]

_STOP = object()


class ProgressChannel(Protocol):
    def publish(self, event: str, payload: dict[str, Any]) -> None: ...


class NullProgressChannel:
    def publish(self, event: str, payload: dict[str, Any]) -> None:
        return


class InMemoryProgressChannel:
    """Fan-out channel delivering events to subscribers on a dispatcher thread.

    ``publish`` never blocks: when the buffer is full the event is dropped and
    counted in ``dropped``.
    """

    def __init__(self, capacity: int = 1000, *, name: str = "progress-dispatcher") -> None:
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=capacity)
        self._subscribers: list[Subscriber] = []
        self._subscribers_lock = threading.Lock()
        self._pending = 0
        self._pending_cond = threading.Condition()
        self.dropped = 0
        self._thread = threading.Thread(target=self._dispatch_loop, name=name, daemon=True)
        self._closed = False
        self._thread.start()

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        with self._subscribers_lock:
            self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            self.unsubscribe(subscriber)

        return _unsubscribe

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._subscribers_lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        if self._closed:
            return
        with self._pending_cond:
            self._pending += 1
        try:
            self._queue.put_nowait((event, payload))
        except queue.Full:
            with self._pending_cond:
                self._pending -= 1
                self._pending_cond.notify_all()
            self.dropped += 1
            logger.warning("Progress channel full; dropped %s event", event)

    def flush(self, timeout: float | None = 5.0) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._pending_cond:
            while self._pending > 0:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._pending_cond.wait(remaining)
        return True

    def close(self, timeout: float = 5.0) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put(_STOP)
        self._thread.join(timeout=timeout)

    def _dispatch_loop(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            event, payload = item
            with self._subscribers_lock:
                subscribers = list(self._subscribers)
            for subscriber in subscribers:
                try:
                    subscriber(event, payload)
                except Exception:
                    logger.exception("Progress subscriber failed for %s", event)
            with self._pending_cond:
                self._pending -= 1
                self._pending_cond.notify_all()


class ProgressPublisher:
    """Best-effort, throttled publication of progress snapshots.

    Running updates go out at most every ``every_rows`` processed rows or every
    ``min_interval_seconds``, whichever comes first. Status changes always go out.
    Channel failures are logged and never raised.
    """

    def __init__(
        self,
        channel: ProgressChannel,
        *,
        event: str,
        every_rows: int = 500,
        min_interval_seconds: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._channel = channel
        self._event = event
        self._every_rows = max(1, every_rows)
        self._min_interval_seconds = max(0.0, min_interval_seconds)
        self._clock = clock
        self._last_status: ProgressStatus | None = None
        self._last_processed = 0
        self._last_published_at: float | None = None
        self.published = 0
        self.failures = 0

    def maybe_publish(self, snapshot: ProgressSnapshot, *, force: bool = False) -> bool:
        now = self._clock()
        if not force and not self._is_due(snapshot, now):
            return False
        self._last_status = snapshot.status
        self._last_processed = snapshot.processed
        self._last_published_at = now
        try:
            self._channel.publish(self._event, snapshot.to_dict())
        except Exception:
            self.failures += 1
            logger.warning("Failed to publish progress for job %s", snapshot.job_id, exc_info=True)
            return False
        self.published += 1
        return True

    def _is_due(self, snapshot: ProgressSnapshot, now: float) -> bool:
        if self._last_published_at is None or snapshot.status != self._last_status:
            return True
        if snapshot.processed - self._last_processed >= self._every_rows:
            return True
        return now - self._last_published_at >= self._min_interval_seconds
