"""
Simulation readiness state machine.

Owns the authoritative portfolio snapshot and decides whether the system is
fit to start or continue a simulation.

States:
    IDLE -> FETCHING -> READY -> SIM_RUNNING
    UNSTABLE is reachable from any state (API down, fetch failure, stale data)

Staleness is observed by callers (``check_age``), never by an internal timer.
UNSTABLE is a liveness signal: the last good snapshot is kept.
"""

import logging
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, List, Optional

from core.exceptions import ReadinessError
from core.models import PortfolioSnapshot

logger = logging.getLogger(__name__)

DEFAULT_SNAPSHOT_TTL_MS = 60_000


class ReadinessState(str, Enum):
    IDLE = "IDLE"
    FETCHING = "FETCHING"
    READY = "READY"
    SIM_RUNNING = "SIM_RUNNING"
    UNSTABLE = "UNSTABLE"


class ActionType(str, Enum):
    INIT = "INIT"
    FETCH_SUCCESS = "FETCH_SUCCESS"
    FETCH_FAIL = "FETCH_FAIL"
    API_DOWN = "API_DOWN"
    AGE_EXCEEDED = "AGE_EXCEEDED"
    API_UP = "API_UP"
    START_SIMULATION = "START_SIMULATION"
    STOP_SIMULATION = "STOP_SIMULATION"


@dataclass(frozen=True)
class ReadinessAction:
    type: ActionType
    snapshot: Optional[PortfolioSnapshot] = None
    reason: Optional[str] = None

    @classmethod
    def init(cls) -> "ReadinessAction":
        return cls(ActionType.INIT)

    @classmethod
    def fetch_success(cls, snapshot: PortfolioSnapshot) -> "ReadinessAction":
        return cls(ActionType.FETCH_SUCCESS, snapshot=snapshot)

    @classmethod
    def fetch_fail(cls, reason: str) -> "ReadinessAction":
        return cls(ActionType.FETCH_FAIL, reason=reason)

    @classmethod
    def api_down(cls, reason: str) -> "ReadinessAction":
        return cls(ActionType.API_DOWN, reason=reason)

    @classmethod
    def age_exceeded(cls) -> "ReadinessAction":
        return cls(ActionType.AGE_EXCEEDED)

    @classmethod
    def api_up(cls) -> "ReadinessAction":
        return cls(ActionType.API_UP)

    @classmethod
    def start_simulation(cls) -> "ReadinessAction":
        return cls(ActionType.START_SIMULATION)

    @classmethod
    def stop_simulation(cls) -> "ReadinessAction":
        return cls(ActionType.STOP_SIMULATION)


@dataclass
class ReadinessStatus:
    state: ReadinessState = ReadinessState.IDLE
    reason: Optional[str] = None
    snapshot_age_ms: float = 0.0
    last_api_ping: float = 0.0
    retry_count: int = 0
    portfolio: Optional[PortfolioSnapshot] = None

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "reason": self.reason,
            "snapshot_age_ms": round(self.snapshot_age_ms),
            "last_api_ping": self.last_api_ping,
            "retry_count": self.retry_count,
            "has_snapshot": self.portfolio is not None,
            "total_value": self.portfolio.total_value if self.portfolio else None,
        }


TransitionListener = Callable[[ReadinessStatus, ReadinessState, ReadinessAction], None]

_REFRESHABLE = (ReadinessState.FETCHING, ReadinessState.READY, ReadinessState.SIM_RUNNING, ReadinessState.UNSTABLE)


class ReadinessStateMachine:
    """
    Single gate consulted before starting or continuing a simulation.

    ``dispatch`` is the only transition function; it returns False when the
    action is not valid from the current state (state is left unchanged).
    """

    def __init__(self, snapshot_ttl_ms: float = DEFAULT_SNAPSHOT_TTL_MS, clock: Callable[[], float] = time.time):
        self.snapshot_ttl_ms = float(snapshot_ttl_ms)
        self._clock = clock
        self._status = ReadinessStatus()
        self._listeners: List[TransitionListener] = []
        self._lock = threading.RLock()

    @property
    def state(self) -> ReadinessState:
        with self._lock:
            return self._status.state

    def status(self) -> ReadinessStatus:
        """Copy of the current status with the snapshot age derived now."""
        with self._lock:
            return self._status_copy_locked()

    def subscribe(self, listener: TransitionListener) -> Callable[[], None]:
        """``listener(status, previous_state, action)`` after every accepted transition."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def snapshot_age_ms(self) -> float:
        with self._lock:
            portfolio = self._status.portfolio
            return portfolio.age_ms(self._clock()) if portfolio else 0.0

    def is_stale(self) -> bool:
        with self._lock:
            if self._status.portfolio is None:
                return True
            return self.snapshot_age_ms() > self.snapshot_ttl_ms

    def can_simulate(self) -> bool:
        with self._lock:
            return self._status.state in (ReadinessState.READY, ReadinessState.SIM_RUNNING) and not self.is_stale()

    def require_ready(self) -> PortfolioSnapshot:
        """
        Snapshot to simulate against.

        Raises:
            ReadinessError: If the state is not READY/SIM_RUNNING or the snapshot is stale
        """
        with self._lock:
            if not self.can_simulate():
                raise ReadinessError(self._status.state.value, self._status.reason)
            return self._status.portfolio

    def dispatch(self, action: ReadinessAction) -> bool:
        with self._lock:
            previous = self._status.state
            new_status = self._reduce(self._status, action)
            if new_status is None:
                logger.debug(f"Readiness: {action.type.value} ignored in state {previous.value}")
                return False

            self._status = new_status
            if previous != new_status.state:
                logger.info(
                    f"Readiness transition {previous.value} -> {new_status.state.value} ({action.type.value})"
                    + (f": {new_status.reason}" if new_status.reason else "")
                )
            self._notify_locked(previous, action)
            return True

    def initialize(self) -> bool:
        return self.dispatch(ReadinessAction.init())

    def start_simulation(self) -> bool:
        accepted = self.dispatch(ReadinessAction.start_simulation())
        if not accepted:
            logger.warning(f"Simulation start rejected: readiness state is {self.state.value}")
        return accepted

    def stop_simulation(self) -> bool:
        return self.dispatch(ReadinessAction.stop_simulation())

    def check_age(self) -> bool:
        """Dispatch AGE_EXCEEDED if the held snapshot is stale. Returns True on transition."""
        with self._lock:
            if self._status.state not in (ReadinessState.READY, ReadinessState.SIM_RUNNING):
                return False
            if not self.is_stale():
                return False
            return self.dispatch(ReadinessAction.age_exceeded())

    def _reduce(self, status: ReadinessStatus, action: ReadinessAction) -> Optional[ReadinessStatus]:
        now = self._clock()
        state = status.state
        kind = action.type

        if kind == ActionType.INIT:
            if state != ReadinessState.IDLE:
                return None
            return replace(status, state=ReadinessState.FETCHING, reason="Initializing...", retry_count=0)

        if kind == ActionType.FETCH_SUCCESS:
            if state not in _REFRESHABLE or action.snapshot is None:
                return None
            # A background refresh must not interrupt a running simulation
            target = ReadinessState.SIM_RUNNING if state == ReadinessState.SIM_RUNNING else ReadinessState.READY
            return replace(
                status,
                state=target,
                reason=None,
                portfolio=action.snapshot,
                last_api_ping=now,
                retry_count=0,
            )

        if kind == ActionType.FETCH_FAIL:
            if state != ReadinessState.FETCHING:
                return None
            return replace(
                status,
                state=ReadinessState.UNSTABLE,
                reason=action.reason or "Portfolio fetch failed",
                retry_count=status.retry_count + 1,
            )

        if kind == ActionType.API_DOWN:
            return replace(
                status,
                state=ReadinessState.UNSTABLE,
                reason=action.reason or "API unreachable",
                retry_count=status.retry_count + 1,
            )

        if kind == ActionType.AGE_EXCEEDED:
            if state not in (ReadinessState.READY, ReadinessState.SIM_RUNNING):
                return None
            return replace(
                status,
                state=ReadinessState.UNSTABLE,
                reason=f"Portfolio data expired (>{self.snapshot_ttl_ms / 1000:.0f}s old)",
            )

        if kind == ActionType.API_UP:
            if state != ReadinessState.UNSTABLE:
                return None
            fresh = status.portfolio is not None and status.portfolio.age_ms(now) <= self.snapshot_ttl_ms
            if fresh:
                return replace(status, state=ReadinessState.READY, reason=None, last_api_ping=now)
            return replace(status, state=ReadinessState.FETCHING, reason="Reconnecting...", last_api_ping=now)

        if kind == ActionType.START_SIMULATION:
            if state != ReadinessState.READY:
                return None
            # READY only goes stale on check_age(); never start against an expired snapshot
            if status.portfolio is None or status.portfolio.age_ms(now) > self.snapshot_ttl_ms:
                return None
            return replace(status, state=ReadinessState.SIM_RUNNING)

        if kind == ActionType.STOP_SIMULATION:
            if state != ReadinessState.SIM_RUNNING:
                return None
            fresh = status.portfolio is not None and status.portfolio.age_ms(now) <= self.snapshot_ttl_ms
            if fresh:
                return replace(status, state=ReadinessState.READY)
            return replace(
                status,
                state=ReadinessState.UNSTABLE,
                reason=f"Portfolio data expired (>{self.snapshot_ttl_ms / 1000:.0f}s old)",
            )

        return None

    def _status_copy_locked(self) -> ReadinessStatus:
        portfolio = self._status.portfolio
        age = portfolio.age_ms(self._clock()) if portfolio else 0.0
        return replace(self._status, snapshot_age_ms=age)

    def _notify_locked(self, previous: ReadinessState, action: ReadinessAction) -> None:
        status = self._status_copy_locked()
        for listener in list(self._listeners):
            try:
                listener(status, previous, action)
            except Exception as exc:
                logger.warning(f"Readiness listener failed: {exc}")
