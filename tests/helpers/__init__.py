"""Test helpers for the resilience layer test suite"""

from tests.helpers.fakes import (
    FakeClock,
    FakeTimer,
    FakeTimerFactory,
    make_position,
    make_snapshot,
    signal_json,
)

__all__ = [
    "FakeClock",
    "FakeTimer",
    "FakeTimerFactory",
    "make_position",
    "make_snapshot",
    "signal_json",
]
