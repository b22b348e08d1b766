from __future__ import annotations

import threading
import time
from collections.abc import Callable

from targetconfig.src.metrics import METRICS


class ExponentialBackoff:
    """Per-key failure counter producing exponentially growing retry delays.

    The first failure waits ``base_seconds``; each further failure doubles
    the wait, capped at ``max_seconds``.  ``forget()`` resets the counter
    once a cycle succeeds so the next failure starts over at the base delay.
    """

    def __init__(self, base_seconds: float = 0.005, max_seconds: float = 1000.0) -> None:
        if base_seconds <= 0:
            raise ValueError("base_seconds must be > 0")
        if max_seconds < base_seconds:
            raise ValueError("max_seconds must be >= base_seconds")
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self._failures = 0

    def when(self) -> float:
        exponent = self._failures
        self._failures += 1
        # Bound the exponent so huge failure counts cannot overflow the float.
        if exponent > 62:
            return self.max_seconds
        return min(self.max_seconds, self.base_seconds * (2**exponent))

    def forget(self) -> None:
        self._failures = 0

    @property
    def num_requeues(self) -> int:
        return self._failures


class SingleKeyQueue:
    """Conflating work queue for a single logical reconcile key.

    Any number of ``add()`` calls before the key is picked up collapse into
    one pending run.  An ``add()`` that arrives while a cycle is in flight
    marks the key dirty, and ``done()`` re-queues it, so a change observed
    during processing always causes one more cycle rather than being lost.

    Delayed adds keep only the earliest due time.  ``get()`` is the only
    blocking call and returns ``False`` once ``shut_down()`` has been called.
    """

    def __init__(
        self,
        rate_limiter: ExponentialBackoff | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rate_limiter = rate_limiter or ExponentialBackoff()
        self._clock = clock
        self._cond = threading.Condition()
        self._queued = False
        self._dirty = False
        self._processing = False
        self._due_at: float | None = None
        self._shutting_down = False

    def add(self) -> None:
        with self._cond:
            self._add_locked()

    def _add_locked(self) -> None:
        if self._shutting_down or self._dirty:
            return
        self._dirty = True
        if not self._processing:
            self._queued = True
            METRICS.queue_depth.set(1)
            self._cond.notify_all()

    def add_after(self, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add()
            return
        with self._cond:
            if self._shutting_down:
                return
            due_at = self._clock() + delay_seconds
            if self._due_at is None or due_at < self._due_at:
                self._due_at = due_at
            self._cond.notify_all()

    def add_rate_limited(self) -> float:
        """Re-queue the key after the next backoff delay and return that delay."""
        delay = self.rate_limiter.when()
        METRICS.queue_retries_total.inc()
        self.add_after(delay)
        return delay

    def forget(self) -> None:
        self.rate_limiter.forget()

    def num_requeues(self) -> int:
        return self.rate_limiter.num_requeues

    def _promote_due_locked(self) -> float | None:
        """Move an elapsed delayed add into the queue; return seconds until the next one."""
        if self._due_at is None:
            return None
        remaining = self._due_at - self._clock()
        if remaining > 0:
            return remaining
        self._due_at = None
        self._add_locked()
        return None

    def get(self, timeout: float | None = None) -> bool:
        """Block until the key is ready to process.

        Returns ``True`` when the caller now owns a cycle and must call
        ``done()`` afterwards, ``False`` on shutdown or when ``timeout``
        elapses first.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return False
                wait_for = self._promote_due_locked()
                if self._queued:
                    self._queued = False
                    self._dirty = False
                    self._processing = True
                    METRICS.queue_depth.set(0)
                    return True
                if deadline is not None:
                    left = deadline - self._clock()
                    if left <= 0:
                        return False
                    wait_for = left if wait_for is None else min(wait_for, left)
                self._cond.wait(timeout=wait_for)

    def done(self) -> None:
        with self._cond:
            self._processing = False
            if self._dirty:
                self._queued = True
                METRICS.queue_depth.set(1)
                self._cond.notify_all()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def pending(self) -> bool:
        """Return True when a run is queued or dirty (ignores delayed adds not yet due)."""
        with self._cond:
            return self._queued or self._dirty
