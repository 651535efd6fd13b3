"""
Resilience runtime - composition root.

Owns exactly one instance of each service:

    RetryScheduler, NetworkHealthTracker, CandidateErrorManager,
    ReadinessStateMachine (+ supervisor), GuardedSignalService,
    ScreeningGate, PositionExitMonitor, HealthServer, ResilienceMetrics

and wires them together from config/app.yaml. The exchange portfolio and
signal HTTP calls are thin ``requests`` adapters; hosts embedding the
runtime can inject their own callables instead.
"""

import logging
import signal
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import requests
from prometheus_client import CollectorRegistry
from requests import exceptions as requests_exceptions

from ai.candidate_errors import CandidateErrorManager
from ai.response_validator import ResponseValidator
from ai.signal_gateway import GuardedSignalService, ScreeningGate
from core.exceptions import AITimeoutError, ApiError, ProxyError
from core.exit_monitor import ExitScreeningService, PositionExitMonitor
from core.models import ExitDecision, PortfolioSnapshot, Position
from core.readiness import ReadinessState, ReadinessStateMachine
from core.readiness_supervisor import ReadinessSupervisor
from infra.healthcheck import HealthServer
from infra.metrics import ResilienceMetrics
from infra.network_health import Badge, NetworkHealthTracker
from infra.proxy_probe import ExchangeProbe, raise_for_status
from infra.retry_scheduler import RetryScheduler
from infra.state_store import SimulationStateStore
from tools.config_validator import AppSchema, LoggingConfig, load_config

logger = logging.getLogger(__name__)


def setup_logging(log_cfg: LoggingConfig) -> None:
    handlers = [logging.StreamHandler()]
    if log_cfg.file:
        log_path = Path(log_cfg.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.insert(0, logging.FileHandler(log_path))

    logging.basicConfig(
        level=getattr(logging, log_cfg.level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
    )


def http_portfolio_fetcher(
    session: requests.Session,
    url: str,
    timeout_seconds: float,
    clock: Callable[[], float] = time.time,
) -> Callable[[], PortfolioSnapshot]:
    """GET the portfolio endpoint; a payload without ``fetched_at`` is stamped now."""

    def fetch() -> PortfolioSnapshot:
        try:
            response = session.get(url, timeout=timeout_seconds)
        except requests_exceptions.ConnectionError as e:
            # Timeouts pass through; they classify as TIMEOUT on their own
            if isinstance(e, requests_exceptions.Timeout):
                raise
            raise ProxyError(f"Portfolio endpoint unreachable: {e}") from e
        raise_for_status(response)

        try:
            data = response.json()
        except ValueError as e:
            raise ApiError(response.status_code, f"Invalid portfolio payload: {e}") from e
        if not isinstance(data, dict):
            raise ApiError(response.status_code, "Invalid portfolio payload: expected an object")
        if not data.get("fetched_at") and not data.get("fetchedAt"):
            data = dict(data, fetched_at=clock())
        return PortfolioSnapshot.from_dict(data)

    return fetch


def http_signal_provider(session: requests.Session, url: str, timeout_seconds: float) -> Callable[[str], str]:
    """POST ``{"asset_pair": ...}`` to the signal service and return the raw model text."""

    def provide(asset_pair: str) -> str:
        try:
            response = session.post(url, json={"asset_pair": asset_pair}, timeout=timeout_seconds)
        except requests_exceptions.Timeout as e:
            raise AITimeoutError(timeout_seconds * 1000, request_type="detail", asset_pair=asset_pair) from e
        raise_for_status(response)
        return response.text

    return provide


class ResilienceRuntime:
    """
    Wires the resilience layer and runs its periodic work.

    ``start`` probes the proxy, starts the readiness supervisor, the readiness
    tick thread, the exit monitor and the optional HTTP surfaces. ``stop``
    tears them down in reverse order and is safe to call repeatedly.
    """

    def __init__(
        self,
        config: AppSchema,
        fetch_portfolio: Optional[Callable[[], PortfolioSnapshot]] = None,
        signal_provider: Optional[Callable[[str], str]] = None,
        session: Optional[requests.Session] = None,
        on_exit_decision: Optional[Callable[[Position, ExitDecision], None]] = None,
        registry: Optional[CollectorRegistry] = None,
        clock: Callable[[], float] = time.time,
        timer_factory: Callable[..., object] = threading.Timer,
    ):
        self.config = config
        self._session = session or requests.Session()
        self._on_exit_decision = on_exit_decision

        self.scheduler = RetryScheduler(
            delays_seconds=config.retry.delays_seconds,
            max_attempts=config.retry.max_attempts,
            timer_factory=timer_factory,
            clock=clock,
        )
        self.network = NetworkHealthTracker(
            yellow_after_seconds=config.network_health.yellow_after_seconds,
            red_after_seconds=config.network_health.red_after_seconds,
            clock=clock,
        )
        ce = config.candidate_errors
        self.errors = CandidateErrorManager(
            blacklist_threshold=ce.blacklist_threshold,
            blacklist_minutes=ce.blacklist_minutes,
            critical_success_rate=ce.critical_success_rate,
            degraded_success_rate=ce.degraded_success_rate,
            degraded_blacklist_count=ce.degraded_blacklist_count,
            clock=clock,
        )
        self.readiness = ReadinessStateMachine(snapshot_ttl_ms=config.readiness.snapshot_ttl_ms, clock=clock)
        self.probe = ExchangeProbe(
            url=config.probe.url,
            network=self.network,
            timeout_seconds=config.probe.timeout_seconds,
            session=self._session,
        )

        if fetch_portfolio is None:
            fetch_portfolio = http_portfolio_fetcher(
                self._session, config.endpoints.portfolio_url, config.endpoints.timeout_seconds, clock
            )
        if signal_provider is None:
            signal_provider = http_signal_provider(
                self._session, config.endpoints.signal_url, config.endpoints.timeout_seconds
            )

        self.supervisor = ReadinessSupervisor(
            machine=self.readiness,
            fetch_portfolio=fetch_portfolio,
            ping=self.probe.check,
            scheduler=self.scheduler,
            network=self.network,
            refresh_margin_ms=config.readiness.refresh_margin_ms,
        )
        self.signals = GuardedSignalService(
            provider=signal_provider,
            error_manager=self.errors,
            network=self.network,
            validator=ResponseValidator(),
        )
        self.screening_gate = ScreeningGate(
            self.errors,
            base_concurrency=config.screening.base_concurrency,
            pause_on_critical=config.screening.pause_on_critical,
        )
        self.state_store = SimulationStateStore(config.state.simulation_file)
        self.exit_monitor = PositionExitMonitor(
            state_loader=self.state_store.load,
            screening=ExitScreeningService(self.signals),
            scheduler=self.scheduler,
            interval_seconds=config.exit_monitor.interval_seconds,
            readiness=self.readiness,
            network=self.network,
            on_decision=self._handle_exit_decision,
        )

        self.metrics: Optional[ResilienceMetrics] = None
        if config.metrics.enabled or registry is not None:
            self.metrics = ResilienceMetrics(port=config.metrics.port, registry=registry)
            self.metrics.bind(self.network, self.errors, self.readiness)

        self.health_server: Optional[HealthServer] = None
        if config.health_server.enabled:
            self.health_server = HealthServer(
                config.health_server.port,
                self.health_payload,
                ai_health_provider=self.ai_health_payload,
                clear_blacklist=self.errors.clear_blacklist,
            )

        self._tick_stop: Optional[threading.Event] = None
        self._tick_thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._tick_thread is not None

    def start(self) -> None:
        with self._lock:
            if self._tick_thread is not None:
                return

            reachable = self.probe.check()
            self.network.set_initial_proxy_status(reachable)
            logger.info(f"Initial proxy probe: {'reachable' if reachable else 'unreachable'}")

            self.supervisor.start()

            self._tick_stop = threading.Event()
            self._tick_thread = threading.Thread(
                target=self._tick_loop,
                args=(self._tick_stop,),
                name="ReadinessTick",
                daemon=True,
            )
            self._tick_thread.start()

            if self.config.exit_monitor.enabled:
                self.exit_monitor.start()
            if self.health_server is not None:
                self.health_server.start()
            if self.metrics is not None and self.config.metrics.enabled:
                self.metrics.start()
        logger.info("Resilience runtime started")

    def stop(self) -> None:
        with self._lock:
            if self._tick_thread is None:
                return
            if self.health_server is not None:
                self.health_server.stop()
            self.exit_monitor.stop()
            self._tick_stop.set()
            self._tick_thread.join(timeout=3)
            self._tick_thread = None
            self._tick_stop = None
            self.supervisor.stop()
            cancelled = self.scheduler.cancel_all()
        logger.info(f"Resilience runtime stopped ({cancelled} pending retries cancelled)")

    def health_payload(self) -> Dict[str, Any]:
        """Payload for GET /health. ``ok`` is false on a red badge or an unstable readiness state."""
        network = self.network.to_dict()
        readiness = self.readiness.status()
        return {
            "ok": network["badge"] != Badge.RED.value and readiness.state != ReadinessState.UNSTABLE,
            "network": network,
            "readiness": readiness.to_dict(),
            "can_simulate": self.readiness.can_simulate(),
            "ai_health": self.ai_health_payload(),
            "exit_monitor_running": self.exit_monitor.is_running,
            "pending_retries": self.scheduler.pending_keys(),
            "poll_interval_seconds": self.config.health_server.poll_interval_seconds,
        }

    def ai_health_payload(self) -> Dict[str, Any]:
        payload = self.errors.get_health_status().to_dict()
        payload["blacklisted_symbols"] = self.errors.get_blacklisted_symbols()
        payload["max_concurrency"] = self.screening_gate.max_concurrency()
        return payload

    def _tick_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.config.readiness.tick_seconds):
            try:
                self.supervisor.tick()
            except Exception as exc:
                logger.error(f"Readiness tick failed: {exc}", exc_info=True)

    def _handle_exit_decision(self, position: Position, decision: ExitDecision) -> None:
        if decision == ExitDecision.SELL:
            logger.warning(f"Exit signal for {position.id} ({position.asset_pair} {position.side})")
        if self.metrics is not None:
            self.metrics.record_exit_decision(position, decision)
        if self._on_exit_decision is not None:
            self._on_exit_decision(position, decision)


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="Trading resilience & readiness runtime")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--once", action="store_true", help="Probe, fetch and screen exits once, then exit")

    args = parser.parse_args()

    config = load_config(args.config_dir)
    setup_logging(config.logging)

    runtime = ResilienceRuntime(config)

    if args.once:
        runtime.probe.check()
        runtime.readiness.initialize()
        runtime.supervisor.fetch()
        decisions = runtime.exit_monitor.run_once()
        logger.info(f"Single pass finished: readiness={runtime.readiness.state.value} decisions={len(decisions)}")
        return

    stop_event = threading.Event()

    def _handle_stop(*_):
        logger.info("Shutdown signal received")
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_stop)
    signal.signal(signal.SIGTERM, _handle_stop)

    runtime.start()
    try:
        stop_event.wait()
    finally:
        runtime.stop()


if __name__ == "__main__":
    main()
