"""
Tests for the readiness state machine transition table.
"""
import pytest

from core.exceptions import ReadinessError
from core.readiness import ActionType, ReadinessAction, ReadinessState, ReadinessStateMachine
from tests.helpers import make_snapshot


def _ready(machine, clock):
    machine.initialize()
    machine.dispatch(ReadinessAction.fetch_success(make_snapshot(fetched_at=clock())))
    return machine


class TestInitAndFetch:
    def test_starts_idle(self, readiness):
        status = readiness.status()
        assert status.state == ReadinessState.IDLE
        assert status.portfolio is None
        assert status.snapshot_age_ms == 0

    def test_init_moves_to_fetching(self, readiness):
        assert readiness.initialize() is True
        status = readiness.status()
        assert status.state == ReadinessState.FETCHING
        assert status.reason == "Initializing..."
        assert status.retry_count == 0

    def test_init_only_from_idle(self, readiness):
        readiness.initialize()
        assert readiness.initialize() is False
        assert readiness.state == ReadinessState.FETCHING

    def test_fetch_success_stores_snapshot(self, readiness, clock):
        readiness.initialize()
        snapshot = make_snapshot(fetched_at=clock())

        assert readiness.dispatch(ReadinessAction.fetch_success(snapshot)) is True
        status = readiness.status()
        assert status.state == ReadinessState.READY
        assert status.portfolio is snapshot
        assert status.reason is None
        assert status.last_api_ping == clock()

    def test_fetch_fail_moves_to_unstable(self, readiness):
        readiness.initialize()
        readiness.dispatch(ReadinessAction.fetch_fail("timeout"))

        status = readiness.status()
        assert status.state == ReadinessState.UNSTABLE
        assert status.reason == "timeout"
        assert status.retry_count == 1

    def test_fetch_fail_ignored_outside_fetching(self, readiness, clock):
        _ready(readiness, clock)
        assert readiness.dispatch(ReadinessAction.fetch_fail("late")) is False
        assert readiness.state == ReadinessState.READY

    def test_fetch_success_resets_retry_count(self, readiness, clock):
        readiness.initialize()
        readiness.dispatch(ReadinessAction.fetch_fail("x"))
        readiness.dispatch(ReadinessAction.api_down("y"))
        assert readiness.status().retry_count == 2

        readiness.dispatch(ReadinessAction.fetch_success(make_snapshot(fetched_at=clock())))
        assert readiness.state == ReadinessState.READY
        assert readiness.status().retry_count == 0

    def test_fetch_success_rejected_from_idle(self, readiness, clock):
        assert readiness.dispatch(ReadinessAction.fetch_success(make_snapshot(fetched_at=clock()))) is False


class TestSimulationGate:
    def test_start_from_ready(self, readiness, clock):
        _ready(readiness, clock)
        assert readiness.start_simulation() is True
        assert readiness.state == ReadinessState.SIM_RUNNING

    def test_start_rejected_with_expired_snapshot(self, readiness, clock):
        _ready(readiness, clock)
        clock.advance(120)

        assert readiness.state == ReadinessState.READY
        assert readiness.start_simulation() is False
        assert readiness.state == ReadinessState.READY
        assert not readiness.can_simulate()

    def test_start_allowed_at_exactly_ttl(self, readiness, clock):
        _ready(readiness, clock)
        clock.advance(60)
        assert readiness.start_simulation() is True

    @pytest.mark.parametrize("setup", ["idle", "fetching", "unstable"])
    def test_start_rejected_elsewhere(self, readiness, setup, caplog):
        if setup in ("fetching", "unstable"):
            readiness.initialize()
        if setup == "unstable":
            readiness.dispatch(ReadinessAction.api_down("down"))
        before = readiness.state

        assert readiness.start_simulation() is False
        assert readiness.state == before
        assert "Simulation start rejected" in caplog.text

    def test_stop_returns_to_ready_when_fresh(self, readiness, clock):
        _ready(readiness, clock)
        readiness.start_simulation()
        clock.advance(10)

        assert readiness.stop_simulation() is True
        assert readiness.state == ReadinessState.READY

    def test_stop_with_stale_snapshot_goes_unstable(self, readiness, clock):
        _ready(readiness, clock)
        readiness.start_simulation()
        clock.advance(61)

        readiness.stop_simulation()
        assert readiness.state == ReadinessState.UNSTABLE

    def test_background_refresh_keeps_simulation_running(self, readiness, clock):
        _ready(readiness, clock)
        readiness.start_simulation()
        clock.advance(50)

        readiness.dispatch(ReadinessAction.fetch_success(make_snapshot(fetched_at=clock())))
        assert readiness.state == ReadinessState.SIM_RUNNING
        assert readiness.snapshot_age_ms() == 0

    def test_can_simulate(self, readiness, clock):
        assert not readiness.can_simulate()
        _ready(readiness, clock)
        assert readiness.can_simulate()
        clock.advance(61)
        assert not readiness.can_simulate()

    def test_require_ready_returns_snapshot(self, readiness, clock):
        _ready(readiness, clock)
        assert readiness.require_ready().total_value == 10_000.0

    def test_require_ready_raises_when_not_ready(self, readiness):
        readiness.initialize()
        with pytest.raises(ReadinessError) as exc_info:
            readiness.require_ready()
        assert exc_info.value.state == "FETCHING"


class TestStaleness:
    def test_age_tracks_clock(self, readiness, clock):
        _ready(readiness, clock)
        clock.advance(12.5)
        assert readiness.snapshot_age_ms() == pytest.approx(12_500)
        assert readiness.status().snapshot_age_ms == pytest.approx(12_500)

    def test_not_stale_at_exactly_ttl(self, readiness, clock):
        _ready(readiness, clock)
        clock.advance(60)
        assert not readiness.is_stale()

    def test_stale_past_ttl(self, readiness, clock):
        _ready(readiness, clock)
        clock.advance(61)
        assert readiness.is_stale()

    def test_no_snapshot_is_stale(self, readiness):
        assert readiness.is_stale()

    def test_check_age_moves_ready_to_unstable(self, readiness, clock):
        _ready(readiness, clock)
        clock.advance(61)

        assert readiness.check_age() is True
        status = readiness.status()
        assert status.state == ReadinessState.UNSTABLE
        assert status.portfolio is not None
        assert "expired" in status.reason

    def test_check_age_from_sim_running(self, readiness, clock):
        _ready(readiness, clock)
        readiness.start_simulation()
        clock.advance(61)

        assert readiness.check_age() is True
        assert readiness.state == ReadinessState.UNSTABLE

    def test_check_age_noop_when_fresh(self, readiness, clock):
        _ready(readiness, clock)
        clock.advance(30)
        assert readiness.check_age() is False
        assert readiness.state == ReadinessState.READY

    def test_age_exceeded_rejected_from_fetching(self, readiness):
        readiness.initialize()
        assert readiness.dispatch(ReadinessAction.age_exceeded()) is False

    def test_custom_ttl(self, clock):
        machine = ReadinessStateMachine(snapshot_ttl_ms=5_000, clock=clock)
        _ready(machine, clock)
        clock.advance(6)
        assert machine.is_stale()


class TestRecovery:
    def test_api_down_from_any_state(self, readiness, clock):
        _ready(readiness, clock)
        readiness.start_simulation()

        assert readiness.dispatch(ReadinessAction.api_down("proxy down")) is True
        status = readiness.status()
        assert status.state == ReadinessState.UNSTABLE
        assert status.portfolio is not None
        assert status.retry_count == 1

    def test_api_up_with_fresh_snapshot_goes_ready(self, readiness, clock):
        _ready(readiness, clock)
        readiness.dispatch(ReadinessAction.api_down("blip"))
        clock.advance(5)

        readiness.dispatch(ReadinessAction.api_up())
        status = readiness.status()
        assert status.state == ReadinessState.READY
        assert status.last_api_ping == clock()

    def test_api_up_with_stale_snapshot_refetches(self, readiness, clock):
        _ready(readiness, clock)
        clock.advance(61)
        readiness.check_age()

        readiness.dispatch(ReadinessAction.api_up())
        status = readiness.status()
        assert status.state == ReadinessState.FETCHING
        assert status.reason == "Reconnecting..."

    def test_api_up_without_snapshot_refetches(self, readiness):
        readiness.initialize()
        readiness.dispatch(ReadinessAction.fetch_fail("boom"))

        readiness.dispatch(ReadinessAction.api_up())
        assert readiness.state == ReadinessState.FETCHING

    def test_api_up_ignored_unless_unstable(self, readiness, clock):
        _ready(readiness, clock)
        assert readiness.dispatch(ReadinessAction.api_up()) is False


class TestSubscriptions:
    def test_listener_sees_each_transition(self, readiness, clock):
        seen = []
        readiness.subscribe(lambda status, previous, action: seen.append((previous, status.state, action.type)))

        _ready(readiness, clock)

        assert seen == [
            (ReadinessState.IDLE, ReadinessState.FETCHING, ActionType.INIT),
            (ReadinessState.FETCHING, ReadinessState.READY, ActionType.FETCH_SUCCESS),
        ]

    def test_rejected_action_not_notified(self, readiness):
        seen = []
        readiness.subscribe(lambda *args: seen.append(args))
        readiness.start_simulation()
        assert seen == []

    def test_status_to_dict(self, readiness, clock):
        _ready(readiness, clock)
        payload = readiness.status().to_dict()

        assert payload["state"] == "READY"
        assert payload["has_snapshot"] is True
        assert payload["total_value"] == 10_000.0
