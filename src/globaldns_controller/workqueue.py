"""Keyed work queue and worker pool that drive reconcile passes.

A key is never handed to two workers at once: re-adds that arrive while it is
being processed are held back until the worker calls ``done``.
"""

from __future__ import annotations

import heapq
import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Set, Tuple

from .errors import SyncError

logger = logging.getLogger(__name__)

# =============================================================================
# Work Queue
# =============================================================================


class WorkQueue:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: List[str] = []
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._delayed: List[Tuple[float, str]] = []
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def add(self, key: str) -> None:
        with self._cond:
            if self._shutting_down or key in self._dirty:
                return
            self._dirty.add(key)
            if key in self._processing:
                return
            self._queue.append(key)
            self._cond.notify()

    def add_after(self, key: str, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            heapq.heappush(self._delayed, (self._clock() + delay, key))
            self._cond.notify()

    def _promote_due(self) -> Optional[float]:
        """Move due delayed keys onto the queue; return seconds until the next one."""
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, key = heapq.heappop(self._delayed)
            if key in self._dirty:
                continue
            self._dirty.add(key)
            if key not in self._processing:
                self._queue.append(key)
        if self._delayed:
            return max(0.0, self._delayed[0][0] - now)
        return None

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """Block until a key is ready. Returns None on shutdown or timeout."""
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                wait = self._promote_due()
                if self._queue:
                    key = self._queue.pop(0)
                    self._processing.add(key)
                    self._dirty.discard(key)
                    return key
                if self._shutting_down:
                    return None
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down


class RateLimiter:
    """Per-key exponential backoff: ``min(max_delay, base_delay * 2**failures)``."""

    def __init__(self, base_delay: float = 1.0, max_delay: float = 300.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: Dict[str, int] = {}
        self._lock = threading.Lock()

    def when(self, key: str) -> float:
        with self._lock:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        return min(self.max_delay, self.base_delay * (2 ** failures))

    def failures(self, key: str) -> int:
        with self._lock:
            return self._failures.get(key, 0)

    def forget(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)


# =============================================================================
# Dispatcher
# =============================================================================


class Dispatcher:
    """Bounded pool of worker threads feeding keys to ``handler``.

    Retryable ``SyncError``s and unexpected exceptions requeue the key with
    backoff. Non-retryable ``SyncError``s are logged and dropped until the next
    resync adds the key again.
    """

    def __init__(
        self,
        queue: WorkQueue,
        handler: Callable[[str], object],
        workers: int = 4,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.queue = queue
        self.handler = handler
        self.workers = max(1, workers)
        self.rate_limiter = rate_limiter or RateLimiter()
        self._threads: List[threading.Thread] = []

    def process_next(self, timeout: Optional[float] = None) -> bool:
        """Handle one key. Returns False when the queue yielded nothing."""
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False
        try:
            self.handler(key)
        except SyncError as e:
            if e.retryable:
                self._requeue(key, e)
            else:
                self.rate_limiter.forget(key)
                logger.error(f"Error syncing {key}, not retrying until it changes: {e}")
        except Exception as e:
            logger.error(f"Unexpected error syncing {key}: {e}", exc_info=True)
            self._requeue(key, e)
        else:
            self.rate_limiter.forget(key)
        finally:
            self.queue.done(key)
        return True

    def _requeue(self, key: str, error: Exception) -> None:
        delay = self.rate_limiter.when(key)
        logger.warning(f"Error syncing {key}, retrying in {delay:.1f}s: {error}")
        self.queue.add_after(key, delay)

    def _worker(self) -> None:
        # Keys already queued at shutdown are still drained.
        while True:
            if not self.process_next(timeout=1.0) and self.queue.shutting_down:
                return

    def start(self) -> None:
        for i in range(self.workers):
            thread = threading.Thread(target=self._worker, name=f"globaldns-worker-{i}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info(f"Started {self.workers} worker(s)")

    def stop(self, timeout: float = 10.0) -> None:
        self.queue.shutdown()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
