"""
Deterministic stand-ins for wall-clock time and ``threading.Timer``.

FakeTimerFactory is passed as ``timer_factory``; timers never run on their
own, tests move time forward with ``advance`` and due timers fire inline in
deadline order.
"""

import json
from typing import Callable, List, Optional

from core.models import PortfolioPosition, PortfolioSnapshot, Position


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTimer:
    def __init__(self, factory: "FakeTimerFactory", interval: float, function: Callable[[], None]):
        self.interval = interval
        self.function = function
        self.deadline = factory.clock() + interval
        self.daemon = False
        self.started = False
        self.cancelled = False
        self.fired = False
        self._factory = factory

    def start(self) -> None:
        self.started = True
        self._factory.timers.append(self)

    def cancel(self) -> None:
        self.cancelled = True

    @property
    def active(self) -> bool:
        return self.started and not self.cancelled and not self.fired


class FakeTimerFactory:
    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.timers: List[FakeTimer] = []

    def __call__(self, interval: float, function: Callable[[], None]) -> FakeTimer:
        return FakeTimer(self, interval, function)

    def active(self) -> List[FakeTimer]:
        return [t for t in self.timers if t.active]

    def next_timer(self) -> Optional[FakeTimer]:
        active = self.active()
        return min(active, key=lambda t: t.deadline) if active else None

    def advance(self, seconds: float) -> int:
        """Move the clock forward, firing every timer that comes due. Returns fired count."""
        target = self.clock.now + seconds
        fired = 0
        while True:
            timer = self.next_timer()
            if timer is None or timer.deadline > target:
                break
            self.clock.now = max(self.clock.now, timer.deadline)
            timer.fired = True
            timer.function()
            fired += 1
        self.clock.now = target
        return fired

    def run_due(self) -> int:
        """Fire timers already due (zero-delay work) without moving the clock."""
        return self.advance(0)


def make_position(
    position_id: str = "pos-1",
    asset_pair: str = "BTC/USDT",
    side: str = "BUY",
    entry_price: float = 50_000.0,
) -> Position:
    return Position(
        id=position_id,
        asset_pair=asset_pair,
        side=side,
        entry_price=entry_price,
        quantity=0.01,
        take_profit=entry_price * 1.05,
        stop_loss=entry_price * 0.95,
        unrealized_pnl=0.0,
        open_timestamp=0.0,
    )


def make_snapshot(fetched_at: float, total_value: float = 10_000.0) -> PortfolioSnapshot:
    return PortfolioSnapshot(
        positions=(PortfolioPosition(currency="USDT", balance=total_value, available=total_value, usd_value=total_value),),
        total_value=total_value,
        cash_balance=total_value,
        fetched_at=fetched_at,
    )


def signal_json(asset_pair: str = "BTC/USDT", signal_type: str = "SELL", confidence: float = 0.8) -> str:
    return json.dumps({
        "asset_pair": asset_pair,
        "signal_type": signal_type,
        "entry_price_suggestion": "MARKET",
        "take_profit_price": 48_000.0,
        "stop_loss_price": 52_000.0,
        "confidence_score": confidence,
        "reasoning": "Momentum reversal",
        "suggested_position_size_percent": 0.1,
    })
