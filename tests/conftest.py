"""
Pytest configuration and fixtures for the resilience layer tests.

Every fixture here is deterministic: time comes from FakeClock and timers
from FakeTimerFactory, so nothing sleeps or races.
"""
import logging

import pytest
from prometheus_client import CollectorRegistry

from ai.candidate_errors import CandidateErrorManager
from core.readiness import ReadinessStateMachine
from infra.network_health import NetworkHealthTracker
from infra.retry_scheduler import RetryScheduler
from tests.helpers import FakeClock, FakeTimerFactory


@pytest.fixture
def clock():
    return FakeClock(start=1_700_000_000.0)


@pytest.fixture
def timers(clock):
    return FakeTimerFactory(clock)


@pytest.fixture
def scheduler(timers, clock):
    return RetryScheduler(timer_factory=timers, clock=clock)


@pytest.fixture
def network(clock):
    return NetworkHealthTracker(clock=clock)


@pytest.fixture
def error_manager(clock):
    # Zero jitter keeps per-symbol retry deadlines exact
    return CandidateErrorManager(clock=clock, jitter=lambda low, high: 0.0)


@pytest.fixture
def readiness(clock):
    return ReadinessStateMachine(clock=clock)


@pytest.fixture
def registry():
    return CollectorRegistry()


@pytest.fixture(autouse=True)
def verbose_logging():
    """Keep library loggers at DEBUG so caplog sees everything."""
    root = logging.getLogger()
    previous = root.level
    root.setLevel(logging.DEBUG)
    yield
    root.setLevel(previous)
