"""
Network health tracking for the exchange proxy and upstream APIs.

Records call outcomes and derives a tri-state connectivity badge from the
time since the last successful call and the kind of the last error.
"""

import logging
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, List, Optional

from core.exceptions import ErrorKind, RateLimitError, classify_error

logger = logging.getLogger(__name__)


class Badge(str, Enum):
    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"


@dataclass
class NetworkStatus:
    last_successful_call: float = 0.0  # epoch seconds, 0 = never
    last_error: Optional[str] = None
    is_proxy_reachable: bool = True
    rate_limit_active: bool = False
    rate_limit_retry_after: float = 0.0  # absolute epoch seconds
    last_api_call: Optional[str] = None
    total_successful_calls: int = 0
    total_error_calls: int = 0


StatusListener = Callable[[NetworkStatus], None]


class NetworkHealthTracker:
    """
    Process-wide record of recent call outcomes.

    Every mutation notifies subscribers with a copy of the status while the
    tracker lock is still held, so no listener observes a half-applied update.
    """

    def __init__(
        self,
        yellow_after_seconds: float = 30.0,
        red_after_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        if red_after_seconds < yellow_after_seconds:
            raise ValueError("red_after_seconds must be >= yellow_after_seconds")
        self._yellow_after = float(yellow_after_seconds)
        self._red_after = float(red_after_seconds)
        self._clock = clock
        self._status = NetworkStatus()
        self._listeners: List[StatusListener] = []
        self._lock = threading.RLock()

    def get_status(self) -> NetworkStatus:
        with self._lock:
            self._expire_rate_limit_locked()
            return replace(self._status)

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def record_success(self, endpoint: Optional[str] = None) -> None:
        with self._lock:
            status = self._status
            status.last_successful_call = self._clock()
            status.last_error = None
            status.rate_limit_active = False
            status.rate_limit_retry_after = 0.0
            status.is_proxy_reachable = True
            status.total_successful_calls += 1
            if endpoint:
                status.last_api_call = endpoint
            self._notify_locked()

    def record_error(self, error: BaseException, endpoint: Optional[str] = None) -> Optional[ErrorKind]:
        """Record a failed call. Returns the classified kind (None if unexpected)."""
        kind = classify_error(error)
        with self._lock:
            status = self._status
            status.last_error = str(error) or type(error).__name__
            status.total_error_calls += 1
            if endpoint:
                status.last_api_call = endpoint

            if kind == ErrorKind.RATE_LIMIT:
                retry_after = error.retry_after if isinstance(error, RateLimitError) else RateLimitError.DEFAULT_RETRY_AFTER
                status.rate_limit_active = True
                status.rate_limit_retry_after = self._clock() + max(0.0, float(retry_after))
                logger.warning(f"Rate limited on {endpoint or 'unknown'}; retry after {retry_after:.0f}s")
            elif kind == ErrorKind.PROXY:
                status.is_proxy_reachable = False
                logger.warning(f"Proxy unreachable ({endpoint or 'unknown'}): {status.last_error}")
            else:
                logger.debug(f"Recorded {kind or 'unexpected'} error on {endpoint or 'unknown'}: {status.last_error}")

            self._notify_locked()
        return kind

    def record_proxy_status(self, reachable: bool) -> None:
        with self._lock:
            self._status.is_proxy_reachable = bool(reachable)
            self._notify_locked()

    def set_initial_proxy_status(self, reachable: bool) -> None:
        with self._lock:
            self._status.is_proxy_reachable = bool(reachable)
            if reachable:
                self._status.last_successful_call = self._clock()
            self._notify_locked()

    def rate_limit_remaining_seconds(self) -> float:
        with self._lock:
            self._expire_rate_limit_locked()
            if not self._status.rate_limit_active:
                return 0.0
            return max(0.0, self._status.rate_limit_retry_after - self._clock())

    def derive_badge(self) -> Badge:
        """
        RED: proxy unreachable, an error is recorded, or no success for > red_after.
        YELLOW: no success for > yellow_after.
        GREEN: otherwise.
        """
        with self._lock:
            status = self._status
            if not status.is_proxy_reachable or status.last_error:
                return Badge.RED

            elapsed = self._clock() - status.last_successful_call
            if elapsed > self._red_after:
                return Badge.RED
            if elapsed > self._yellow_after:
                return Badge.YELLOW
            return Badge.GREEN

    def to_dict(self) -> dict:
        status = self.get_status()
        return {
            "badge": self.derive_badge().value,
            "last_successful_call": status.last_successful_call,
            "last_error": status.last_error,
            "is_proxy_reachable": status.is_proxy_reachable,
            "rate_limit_active": status.rate_limit_active,
            "rate_limit_remaining_seconds": round(self.rate_limit_remaining_seconds(), 1),
            "last_api_call": status.last_api_call,
            "total_successful_calls": status.total_successful_calls,
            "total_error_calls": status.total_error_calls,
        }

    def _expire_rate_limit_locked(self) -> None:
        # Lazily clear a rate limit whose retry-after has passed
        status = self._status
        if status.rate_limit_active and status.rate_limit_retry_after <= self._clock():
            status.rate_limit_active = False
            status.rate_limit_retry_after = 0.0

    def _notify_locked(self) -> None:
        self._expire_rate_limit_locked()
        snapshot = replace(self._status)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as exc:
                logger.warning(f"Network status listener failed: {exc}")
