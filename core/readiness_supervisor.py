"""
Readiness supervisor: drives the readiness state machine from the outside.

- FETCHING  -> run a portfolio fetch (deferred, never inside the transition)
- UNSTABLE  -> ping the exchange on a backoff schedule until it answers
- READY / SIM_RUNNING -> periodic ``tick`` checks snapshot age and refreshes
  the portfolio early when it nears the freshness ceiling

Fetch and ping outcomes are recorded on the NetworkHealthTracker.
"""

import logging
import threading
from typing import Callable, Optional

from core.exceptions import classify_error
from core.models import PortfolioSnapshot
from core.readiness import ActionType, ReadinessAction, ReadinessState, ReadinessStateMachine, ReadinessStatus
from infra.network_health import NetworkHealthTracker
from infra.retry_scheduler import RetryScheduler

logger = logging.getLogger(__name__)

FETCH_KEY = "sim-readiness-fetch"
RETRY_KEY = "sim-readiness"

_FAILURE_ACTIONS = (ActionType.API_DOWN, ActionType.FETCH_FAIL)


class ReadinessSupervisor:
    def __init__(
        self,
        machine: ReadinessStateMachine,
        fetch_portfolio: Callable[[], PortfolioSnapshot],
        ping: Callable[[], bool],
        scheduler: RetryScheduler,
        network: NetworkHealthTracker,
        refresh_margin_ms: float = 10_000,
    ):
        self.machine = machine
        self._fetch_portfolio = fetch_portfolio
        self._ping = ping
        self._scheduler = scheduler
        self._network = network
        self.refresh_margin_ms = float(refresh_margin_ms)
        self._fetch_in_progress = False
        self._fetch_lock = threading.Lock()
        self._unsubscribe: Optional[Callable[[], None]] = None

    def start(self) -> None:
        """Subscribe to transitions and kick off the first fetch."""
        if self._unsubscribe is None:
            self._unsubscribe = self.machine.subscribe(self._on_transition)
        if self.machine.state == ReadinessState.IDLE:
            self.machine.initialize()

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._scheduler.cancel(FETCH_KEY)
        self._scheduler.cancel(RETRY_KEY)

    @property
    def fetch_in_progress(self) -> bool:
        return self._fetch_in_progress

    def fetch(self) -> bool:
        """
        Fetch a fresh portfolio snapshot and feed the outcome to the machine.

        Returns:
            True on success, False if skipped or failed
        """
        with self._fetch_lock:
            if self._fetch_in_progress:
                logger.debug("Portfolio fetch already in progress, skipping")
                return False
            self._fetch_in_progress = True

        try:
            snapshot = self._fetch_portfolio()
        except Exception as exc:
            if classify_error(exc) is None:
                raise
            self._network.record_error(exc, endpoint="portfolio")
            logger.warning(f"Portfolio fetch failed: {exc}")
            if self.machine.state == ReadinessState.FETCHING:
                self.machine.dispatch(ReadinessAction.fetch_fail(str(exc)))
            else:
                self.machine.dispatch(ReadinessAction.api_down(f"Portfolio refresh failed: {exc}"))
            return False
        finally:
            with self._fetch_lock:
                self._fetch_in_progress = False

        self._network.record_success(endpoint="portfolio")
        logger.info(
            f"Portfolio fetched: total_value={snapshot.total_value:.2f} positions={len(snapshot.positions)}"
        )
        self.machine.dispatch(ReadinessAction.fetch_success(snapshot))
        return True

    def tick(self) -> None:
        """Periodic observation: age check plus early refresh near the ceiling."""
        if self.machine.check_age():
            return
        if self.machine.state not in (ReadinessState.READY, ReadinessState.SIM_RUNNING):
            return
        danger_zone_ms = self.machine.snapshot_ttl_ms - self.refresh_margin_ms
        if self.machine.snapshot_age_ms() >= danger_zone_ms and not self._fetch_in_progress:
            logger.info("Snapshot nearing freshness ceiling, refreshing early")
            self._scheduler.schedule(FETCH_KEY, self.fetch, 0)

    def force_refresh(self) -> None:
        if self.machine.state in (ReadinessState.READY, ReadinessState.SIM_RUNNING):
            self._scheduler.schedule(FETCH_KEY, self.fetch, 0)

    def _on_transition(self, status: ReadinessStatus, previous: ReadinessState, action: ReadinessAction) -> None:
        if previous == ReadinessState.UNSTABLE and status.state != ReadinessState.UNSTABLE:
            self._scheduler.cancel(RETRY_KEY)

        if status.state == ReadinessState.FETCHING and previous != ReadinessState.FETCHING:
            self._scheduler.schedule(FETCH_KEY, self.fetch, 0)
        elif status.state == ReadinessState.UNSTABLE:
            # Each further failure while unstable advances the backoff
            if previous != ReadinessState.UNSTABLE or action.type in _FAILURE_ACTIONS:
                self._schedule_ping(status.retry_count)

    def _schedule_ping(self, retry_count: int) -> None:
        attempt = max(retry_count - 1, 0)
        if not self._scheduler.can_retry(attempt):
            logger.error(
                f"Readiness retries exhausted after {retry_count} attempts; operator attention required"
            )
            return

        status = self._network.get_status()
        delay_ms = self._scheduler.next_delay_ms(attempt)
        if status.rate_limit_active:
            delay_ms = self._scheduler.rate_limit_delay_ms(attempt, self._network.rate_limit_remaining_seconds())
        self._scheduler.schedule(RETRY_KEY, self._retry_ping, delay_ms, attempt=attempt)

    def _retry_ping(self) -> None:
        # Fired callbacks act on current state, not on state captured at scheduling
        if self.machine.state != ReadinessState.UNSTABLE:
            return
        try:
            reachable = bool(self._ping())
        except Exception as exc:
            if classify_error(exc) is None:
                raise
            self._network.record_error(exc, endpoint="ping")
            self.machine.dispatch(ReadinessAction.api_down(f"Retry ping failed: {exc}"))
            return

        # The probe records call outcomes itself; only reachability is mirrored here
        self._network.record_proxy_status(reachable)
        if reachable:
            self.machine.dispatch(ReadinessAction.api_up())
        else:
            self.machine.dispatch(ReadinessAction.api_down("Exchange ping returned unreachable"))
