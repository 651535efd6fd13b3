"""
Retry Scheduler with Keyed De-duplication

Computes capped exponential backoff delays and arms one-shot deferred
callbacks keyed by operation identity. At most one callback is pending per
key: scheduling again for the same key cancels the older one first.

Backoff table (seconds): 2, 4, 8, 16, 32 - clamped at the last entry.
Rate-limit hints from the server are always honored as a floor.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from core.exceptions import RateLimitError

logger = logging.getLogger(__name__)

RETRY_DELAYS_SECONDS = (2, 4, 8, 16, 32)
MAX_RETRY_ATTEMPTS = 5


@dataclass
class RetryTask:
    """Bookkeeping for one pending deferred callback."""
    key: str
    attempt: int
    deadline: float  # epoch seconds
    timer: object = field(repr=False, default=None)
    pending: bool = True


class RetryScheduler:
    """
    Keyed one-shot retry timers.

    Usage:
        scheduler = RetryScheduler()
        if scheduler.can_retry(attempt):
            scheduler.schedule("sim-readiness", ping, scheduler.next_delay_ms(attempt), attempt=attempt)
    """

    def __init__(
        self,
        delays_seconds=RETRY_DELAYS_SECONDS,
        max_attempts: int = MAX_RETRY_ATTEMPTS,
        timer_factory: Callable[..., object] = threading.Timer,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            delays_seconds: Ascending backoff table
            max_attempts: Attempts allowed before callers must give up
            timer_factory: ``threading.Timer``-compatible factory (interval, function)
            clock: Wall clock returning epoch seconds
        """
        delays = [float(d) for d in delays_seconds]
        if not delays:
            raise ValueError("Backoff table must not be empty")
        if any(b < a for a, b in zip(delays, delays[1:])):
            raise ValueError(f"Backoff table must be ascending: {delays}")

        self._delays = delays
        self._max_attempts = int(max_attempts)
        self._timer_factory = timer_factory
        self._clock = clock
        self._tasks: Dict[str, RetryTask] = {}
        self._lock = threading.RLock()

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def next_delay_ms(self, attempt: int) -> int:
        """Backoff for ``attempt`` (0-based), clamped at the table's last value."""
        index = min(max(int(attempt), 0), len(self._delays) - 1)
        return int(self._delays[index] * 1000)

    def rate_limit_delay_ms(self, attempt: int, retry_after_seconds: float) -> int:
        """Larger of the standard backoff and the server-mandated wait."""
        server_wait_ms = max(0.0, float(retry_after_seconds)) * 1000.0
        return int(max(self.next_delay_ms(attempt), server_wait_ms))

    def delay_for_error_ms(self, error: BaseException, attempt: int) -> int:
        if isinstance(error, RateLimitError):
            return self.rate_limit_delay_ms(attempt, error.retry_after)
        return self.next_delay_ms(attempt)

    def can_retry(self, attempt: int) -> bool:
        return attempt < self._max_attempts

    def schedule(self, key: str, callback: Callable[[], None], delay_ms: float, attempt: int = 0) -> RetryTask:
        """
        Arm a one-shot callback for ``key`` after ``delay_ms``.

        Any pending task for the same key is cancelled first.
        """
        delay_s = max(0.0, float(delay_ms)) / 1000.0

        with self._lock:
            self._cancel_locked(key)

            task = RetryTask(key=key, attempt=attempt, deadline=self._clock() + delay_s)
            task.timer = self._timer_factory(delay_s, lambda: self._fire(task, callback))
            if hasattr(task.timer, "daemon"):
                task.timer.daemon = True
            self._tasks[key] = task
            task.timer.start()

        logger.info(f"Scheduling retry for {key} in {int(delay_s * 1000)}ms (attempt {attempt})")
        return task

    def cancel(self, key: str) -> bool:
        """Cancel the pending task for ``key``. Returns True if one was pending."""
        with self._lock:
            return self._cancel_locked(key)

    def cancel_all(self) -> int:
        with self._lock:
            keys = list(self._tasks)
            for key in keys:
                self._cancel_locked(key)
        if keys:
            logger.debug(f"Cancelled {len(keys)} pending retries")
        return len(keys)

    def is_pending(self, key: str) -> bool:
        with self._lock:
            return key in self._tasks

    def get_task(self, key: str) -> Optional[RetryTask]:
        with self._lock:
            return self._tasks.get(key)

    def pending_keys(self) -> List[str]:
        with self._lock:
            return sorted(self._tasks)

    def _cancel_locked(self, key: str) -> bool:
        task = self._tasks.pop(key, None)
        if task is None:
            return False
        task.pending = False
        task.timer.cancel()
        return True

    def _fire(self, task: RetryTask, callback: Callable[[], None]) -> None:
        with self._lock:
            # A replaced or cancelled task may still be woken by its timer thread
            if self._tasks.get(task.key) is not task:
                return
            del self._tasks[task.key]
            task.pending = False

        try:
            callback()
        except Exception as exc:
            logger.error(f"Retry callback for {task.key} failed: {exc}", exc_info=True)
