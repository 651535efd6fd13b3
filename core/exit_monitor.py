"""
Exit screening for open simulated positions.

PositionExitMonitor runs a guarded recurring tick (default every 5 minutes).
Each tick re-reads the persisted simulation state and, for every open
position, asks the signal pipeline whether the position should be exited.

Decisions are fail-safe toward inaction: no signal, a failed call or any
error yields HOLD. A SELL decision is only emitted when the signal direction
opposes the position direction. The monitor never mutates positions; it
hands decisions to ``on_decision`` for the simulation to apply.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from core.exceptions import ErrorKind, is_retryable
from core.models import ExitDecision, Position, SimulationState
from core.readiness import ReadinessState, ReadinessStateMachine
from infra.network_health import NetworkHealthTracker
from infra.retry_scheduler import RetryScheduler

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 5 * 60
RETRY_KEY_PREFIX = "exit-screening:"


@dataclass
class ExitAnalysis:
    decision: ExitDecision
    failed: bool = False
    error_kind: Optional[ErrorKind] = None

    @property
    def should_retry(self) -> bool:
        # Unclassified exceptions are retried like generic errors
        return self.failed and (self.error_kind is None or is_retryable(self.error_kind))


class ExitScreeningService:
    """Turns a detailed signal into a SELL/HOLD decision for one position."""

    def __init__(self, signal_service):
        self._signals = signal_service

    def analyze_position(self, position: Position) -> ExitDecision:
        return self.evaluate(position).decision

    def evaluate(self, position: Position) -> ExitAnalysis:
        logger.debug(
            f"Analyzing position {position.id} ({position.asset_pair}) for exit: "
            f"entry={position.entry_price} pnl={position.unrealized_pnl:.2f}"
        )
        try:
            signal = self._signals.generate_detailed_signal(position.asset_pair)
        except Exception as exc:
            logger.error(f"Exit screening failed for {position.id} ({position.asset_pair}): {exc}", exc_info=True)
            return ExitAnalysis(ExitDecision.HOLD, failed=True)

        error_kind = None
        last_error_kind = getattr(self._signals, "last_error_kind", None)
        if callable(last_error_kind):
            error_kind = last_error_kind(position.asset_pair)

        if signal is None:
            logger.info(f"No signal for {position.asset_pair}, holding position {position.id}")
            return ExitAnalysis(ExitDecision.HOLD, failed=error_kind is not None, error_kind=error_kind)

        should_exit = (
            (position.side == "BUY" and signal.signal_type == "SELL")
            or (position.side == "SELL" and signal.signal_type == "BUY")
        )
        decision = ExitDecision.SELL if should_exit else ExitDecision.HOLD

        logger.info(
            f"Exit analysis {position.id} {position.asset_pair}: position={position.side} "
            f"signal={signal.signal_type} confidence={signal.confidence_score:.2f} -> {decision.value}"
        )
        return ExitAnalysis(decision, failed=error_kind is not None, error_kind=error_kind)


class PositionExitMonitor:
    """
    Recurring exit screening with a single active run per instance.

    ``start`` replaces any active run; ``stop`` is idempotent and prevents any
    tick or retry that has not fired yet.
    """

    def __init__(
        self,
        state_loader: Callable[[], SimulationState],
        screening: ExitScreeningService,
        scheduler: RetryScheduler,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        readiness: Optional[ReadinessStateMachine] = None,
        network: Optional[NetworkHealthTracker] = None,
        on_decision: Optional[Callable[[Position, ExitDecision], None]] = None,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._load_state = state_loader
        self._screening = screening
        self._scheduler = scheduler
        self.interval_seconds = float(interval_seconds)
        self._readiness = readiness
        self._network = network
        self._on_decision = on_decision
        self._attempts: Dict[str, int] = {}
        self._current: Optional[Tuple[threading.Event, threading.Thread]] = None
        self._lock = threading.RLock()

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._current is not None

    def start(self) -> None:
        with self._lock:
            self.stop()
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._run_loop,
                args=(stop_event,),
                name="PositionExitMonitor",
                daemon=True,
            )
            self._current = (stop_event, thread)
            thread.start()
        logger.info(f"Exit screening started ({self.interval_seconds / 60:.0f} minute interval)")

    def stop(self) -> bool:
        """Returns True if a run was active."""
        with self._lock:
            if self._current is None:
                return False
            stop_event, _ = self._current
            stop_event.set()
            self._current = None
            for position_id in list(self._attempts):
                self._scheduler.cancel(RETRY_KEY_PREFIX + position_id)
            self._attempts.clear()
        logger.info("Exit screening stopped")
        return True

    def run_once(self) -> Dict[str, ExitDecision]:
        """Single screening pass. Returns decisions keyed by position id."""
        state = self._load_state()
        if not state.should_screen_exits:
            logger.debug(
                f"Exit screening tick skipped: active={state.is_active} paused={state.is_paused} "
                f"positions={len(state.open_positions)}"
            )
            return {}

        if not self._safe_to_call():
            return {}

        decisions: Dict[str, ExitDecision] = {}
        for position in state.open_positions:
            decisions[position.id] = self._screen(position)

        sells = sum(1 for d in decisions.values() if d == ExitDecision.SELL)
        logger.info(f"Exit screening completed: {len(decisions)} positions, {sells} exit(s)")
        return decisions

    def _run_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.interval_seconds):
            with self._lock:
                if stop_event.is_set():
                    break
            try:
                self.run_once()
            except Exception as exc:
                logger.error(f"Exit screening tick failed: {exc}", exc_info=True)

    def _safe_to_call(self) -> bool:
        if self._readiness is not None and self._readiness.state == ReadinessState.UNSTABLE:
            logger.info("Exit screening deferred: readiness is UNSTABLE")
            return False
        if self._network is not None:
            remaining = self._network.rate_limit_remaining_seconds()
            if remaining > 0:
                logger.info(f"Exit screening deferred: rate limited for another {remaining:.0f}s")
                return False
        return True

    def _screen(self, position: Position) -> ExitDecision:
        analysis = self._screening.evaluate(position)

        if analysis.should_retry:
            self._schedule_retry(position)
        else:
            with self._lock:
                self._attempts.pop(position.id, None)
            self._scheduler.cancel(RETRY_KEY_PREFIX + position.id)

        if self._on_decision is not None:
            try:
                self._on_decision(position, analysis.decision)
            except Exception as exc:
                logger.error(f"Exit decision handler failed for {position.id}: {exc}", exc_info=True)
        return analysis.decision

    def _schedule_retry(self, position: Position) -> None:
        with self._lock:
            if self._current is None:
                return
            attempt = self._attempts.get(position.id, 0)
            if not self._scheduler.can_retry(attempt):
                logger.error(
                    f"Exit screening for {position.id} ({position.asset_pair}) gave up after {attempt} retries; "
                    f"holding until next tick"
                )
                self._attempts.pop(position.id, None)
                return
            self._attempts[position.id] = attempt + 1

        delay_ms = self._scheduler.next_delay_ms(attempt)
        if self._network is not None:
            remaining = self._network.rate_limit_remaining_seconds()
            if remaining > 0:
                delay_ms = self._scheduler.rate_limit_delay_ms(attempt, remaining)

        position_id = position.id
        self._scheduler.schedule(
            RETRY_KEY_PREFIX + position_id,
            lambda: self._retry_position(position_id),
            delay_ms,
            attempt=attempt,
        )

    def _retry_position(self, position_id: str) -> None:
        if not self.is_running:
            return
        state = self._load_state()
        if not state.should_screen_exits:
            return
        position = next((p for p in state.open_positions if p.id == position_id), None)
        if position is None:
            with self._lock:
                self._attempts.pop(position_id, None)
            return
        if not self._safe_to_call():
            return
        self._screen(position)
