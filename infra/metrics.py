"""Prometheus metrics for network health, AI health, readiness and exit screening."""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, start_http_server

from ai.candidate_errors import CandidateErrorManager, HealthStatus
from core.models import ExitDecision, Position
from core.readiness import ReadinessAction, ReadinessState, ReadinessStateMachine, ReadinessStatus
from infra.network_health import Badge, NetworkHealthTracker, NetworkStatus

logger = logging.getLogger(__name__)

_BADGE_VALUES = {Badge.GREEN: 0, Badge.YELLOW: 1, Badge.RED: 2}
_HEALTH_VALUES = {HealthStatus.HEALTHY: 0, HealthStatus.DEGRADED: 1, HealthStatus.CRITICAL: 2}


class ResilienceMetrics:
    """
    Gauges are refreshed from service subscriptions; pass a private
    ``CollectorRegistry`` in tests to avoid duplicate registration.
    """

    def __init__(self, port: int = 9100, registry: Optional[CollectorRegistry] = None):
        self.port = port
        self.registry = registry or REGISTRY
        self._started = False
        self._unsubscribers: List[Callable[[], None]] = []

        self.network_badge = Gauge(
            "resilience_network_badge",
            "Connectivity badge (0=green, 1=yellow, 2=red)",
            registry=self.registry,
        )
        self.proxy_reachable = Gauge(
            "resilience_proxy_reachable",
            "Exchange proxy reachability (1=reachable)",
            registry=self.registry,
        )
        self.rate_limit_active = Gauge(
            "resilience_rate_limit_active",
            "Rate limit currently in force (1=active)",
            registry=self.registry,
        )
        self.ai_success_rate = Gauge(
            "resilience_ai_success_rate",
            "Share of successful AI calls across all symbols (0-1)",
            registry=self.registry,
        )
        self.ai_health = Gauge(
            "resilience_ai_health_status",
            "AI health (0=healthy, 1=degraded, 2=critical)",
            registry=self.registry,
        )
        self.blacklisted_symbols = Gauge(
            "resilience_blacklisted_symbols",
            "Symbols currently blacklisted",
            registry=self.registry,
        )
        self.readiness_state = Gauge(
            "resilience_readiness_state",
            "Readiness state (1 for the current state)",
            labelnames=("state",),
            registry=self.registry,
        )
        self.readiness_transitions = Counter(
            "resilience_readiness_transitions_total",
            "Accepted readiness actions",
            labelnames=("action",),
            registry=self.registry,
        )
        self.exit_decisions = Counter(
            "resilience_exit_decisions_total",
            "Exit screening decisions",
            labelnames=("decision",),
            registry=self.registry,
        )

    def start(self) -> None:
        if self._started:
            return
        start_http_server(self.port, registry=self.registry)
        self._started = True
        logger.info(f"Prometheus metrics exporter listening on :{self.port}")

    def bind(
        self,
        network: NetworkHealthTracker,
        errors: CandidateErrorManager,
        readiness: ReadinessStateMachine,
    ) -> None:
        """Subscribe to service changes and take an initial reading."""
        self._network = network
        # Read at scrape time; drops to 0 once the retry-after deadline passes
        self.rate_limit_active.set_function(lambda: 1 if network.rate_limit_remaining_seconds() > 0 else 0)
        self._unsubscribers.append(network.subscribe(self.observe_network))
        self._unsubscribers.append(errors.subscribe(self.observe_ai_health))
        self._unsubscribers.append(readiness.subscribe(self.observe_readiness))
        self.observe_network(network.get_status())
        self.observe_ai_health(errors)
        self.set_readiness_state(readiness.state)

    def unbind(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    def observe_network(self, status: NetworkStatus) -> None:
        network = getattr(self, "_network", None)
        if network is not None:
            self.network_badge.set(_BADGE_VALUES[network.derive_badge()])
        self.proxy_reachable.set(1 if status.is_proxy_reachable else 0)
        self.rate_limit_active.set(1 if status.rate_limit_active else 0)

    def observe_ai_health(self, errors: CandidateErrorManager) -> None:
        health = errors.get_health_status()
        self.ai_success_rate.set(health.success_rate)
        self.ai_health.set(_HEALTH_VALUES[health.status])
        self.blacklisted_symbols.set(health.active_blacklists)

    def observe_readiness(self, status: ReadinessStatus, previous: ReadinessState, action: ReadinessAction) -> None:
        self.readiness_transitions.labels(action=action.type.value).inc()
        self.set_readiness_state(status.state)

    def set_readiness_state(self, current: ReadinessState) -> None:
        for state in ReadinessState:
            self.readiness_state.labels(state=state.value).set(1 if state == current else 0)

    def record_exit_decision(self, position: Position, decision: ExitDecision) -> None:
        self.exit_decisions.labels(decision=decision.value).inc()
