"""
Domain records shared by the readiness, health and exit-screening services.

Positions and simulation state are owned by the simulation subsystem; this
layer only reads them.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

SignalType = Literal["BUY", "SELL", "HOLD", "NO_TRADE"]


class ExitDecision(str, Enum):
    SELL = "SELL"
    HOLD = "HOLD"


@dataclass(frozen=True)
class Position:
    """Open simulated position (read-only view)."""
    id: str
    asset_pair: str
    side: Literal["BUY", "SELL"]
    entry_price: float
    quantity: float
    take_profit: float = 0.0
    stop_loss: float = 0.0
    unrealized_pnl: float = 0.0
    open_timestamp: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        # Accepts both the persisted camelCase blob and snake_case keys
        def pick(*keys, default=None):
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return default

        side = str(pick("side", "type", default="BUY")).upper()
        return cls(
            id=str(pick("id", default="")),
            asset_pair=str(pick("asset_pair", "assetPair", default="")),
            side="SELL" if side == "SELL" else "BUY",
            entry_price=float(pick("entry_price", "entryPrice", default=0.0)),
            quantity=float(pick("quantity", default=0.0)),
            take_profit=float(pick("take_profit", "takeProfit", default=0.0)),
            stop_loss=float(pick("stop_loss", "stopLoss", default=0.0)),
            unrealized_pnl=float(pick("unrealized_pnl", "unrealizedPnL", default=0.0)),
            open_timestamp=float(pick("open_timestamp", "openTimestamp", default=0.0)),
        )


@dataclass
class SimulationState:
    """Subset of the persisted simulation blob the exit monitor needs."""
    is_active: bool = False
    is_paused: bool = False
    open_positions: List[Position] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SimulationState":
        data = data or {}
        raw_positions = data.get("open_positions", data.get("openPositions")) or []
        return cls(
            is_active=bool(data.get("is_active", data.get("isActive", False))),
            is_paused=bool(data.get("is_paused", data.get("isPaused", False))),
            open_positions=[Position.from_dict(p) for p in raw_positions if isinstance(p, dict)],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isActive": self.is_active,
            "isPaused": self.is_paused,
            "openPositions": [
                {
                    "id": p.id,
                    "assetPair": p.asset_pair,
                    "type": p.side,
                    "entryPrice": p.entry_price,
                    "quantity": p.quantity,
                    "takeProfit": p.take_profit,
                    "stopLoss": p.stop_loss,
                    "unrealizedPnL": p.unrealized_pnl,
                    "openTimestamp": p.open_timestamp,
                }
                for p in self.open_positions
            ],
        }

    @property
    def should_screen_exits(self) -> bool:
        return self.is_active and not self.is_paused and len(self.open_positions) > 0


@dataclass
class Signal:
    """Detailed trade signal for one asset pair."""
    asset_pair: str
    signal_type: SignalType
    entry_price_suggestion: Union[str, float] = "MARKET"
    take_profit_price: float = 0.0
    stop_loss_price: float = 0.0
    confidence_score: float = 0.0
    reasoning: str = ""
    suggested_position_size_percent: float = 0.0
    used_fallback: bool = False


@dataclass(frozen=True)
class PortfolioPosition:
    currency: str
    balance: float
    available: float
    usd_value: float


@dataclass(frozen=True)
class PortfolioSnapshot:
    """Immutable portfolio snapshot; a refresh produces a new object."""
    positions: Tuple[PortfolioPosition, ...]
    total_value: float
    cash_balance: float
    fetched_at: float  # epoch seconds

    def age_ms(self, now: float) -> float:
        return max(0.0, (now - self.fetched_at) * 1000.0)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PortfolioSnapshot":
        positions = tuple(
            PortfolioPosition(
                currency=str(p.get("currency", "")),
                balance=float(p.get("balance", 0.0)),
                available=float(p.get("available", 0.0)),
                usd_value=float(p.get("usd_value", p.get("usdValue", 0.0))),
            )
            for p in data.get("positions", [])
        )
        return cls(
            positions=positions,
            total_value=float(data.get("total_value", data.get("totalValue", 0.0))),
            cash_balance=float(data.get("cash_balance", data.get("cashUSDT", 0.0))),
            fetched_at=_fetched_at_seconds(data),
        )


# Epoch seconds stay below this until the year 5138; anything larger is milliseconds
_EPOCH_MS_THRESHOLD = 1e11


def _fetched_at_seconds(data: Dict[str, Any]) -> float:
    """Snapshot time in epoch seconds. camelCase ``fetchedAt`` is epoch milliseconds."""
    if data.get("fetched_at") is not None:
        value = float(data["fetched_at"])
    elif data.get("fetchedAt") is not None:
        value = float(data["fetchedAt"]) / 1000.0
    else:
        return 0.0
    return value / 1000.0 if value > _EPOCH_MS_THRESHOLD else value
