"""Canonical trade records and lifecycle events.

The position manager, the trade store and the control loop all exchange
the types defined here, so column names and exit reasons are declared in
one place.  ``TRADE_COLUMNS`` mirrors the ``trades`` table and is reused by
:mod:`trade_storage` when building statements and mapping rows back into
:class:`Position` objects.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Union

SIDE_BUY = "BUY"
SIDE_SELL = "SELL"

EXIT_STOP_LOSS = "STOP_LOSS"
EXIT_TAKE_PROFIT = "TAKE_PROFIT"
EXIT_TIME = "TIME_EXIT"
EXIT_EMERGENCY_FLAT = "EMERGENCY_FLAT"
EXIT_DUST_ORPHANED = "DUST_ORPHANED"
EXIT_MANUAL = "MANUAL"

EXIT_REASONS = (
    EXIT_STOP_LOSS,
    EXIT_TAKE_PROFIT,
    EXIT_TIME,
    EXIT_EMERGENCY_FLAT,
    EXIT_DUST_ORPHANED,
    EXIT_MANUAL,
)

# Column order of the ``trades`` table.
TRADE_COLUMNS = [
    "id",
    "symbol",
    "side",
    "qty",
    "entry_price",
    "entry_fee",
    "exit_price",
    "exit_fee",
    "total_fees",
    "pnl",
    "pnl_pct",
    "pnl_net",
    "ai_confidence",
    "atr_pct",
    "stop_loss",
    "take_profit",
    "opened_at",
    "closed_at",
    "exit_reason",
    "candles_held",
    "balance_before",
    "balance_after",
    "net_balance_change",
]

DAILY_SUMMARY_COLUMNS = [
    "day",
    "trades",
    "wins",
    "losses",
    "net_pnl",
    "gross_profit",
    "gross_loss",
    "profit_factor",
    "win_rate",
    "max_drawdown",
    "avg_win",
    "avg_loss",
]


@dataclass
class Position:
    """The single live position held by the agent."""

    symbol: str
    qty: float
    entry_price: float
    stop_loss: float
    take_profit: float
    opened_at: datetime
    ai_confidence: float = 0.0
    atr_pct: float = 0.0
    entry_fee: float = 0.0
    id: Optional[int] = None
    side: str = SIDE_BUY
    fee_estimated: bool = False
    initial_stop_loss: Optional[float] = None

    def __post_init__(self) -> None:
        if self.initial_stop_loss is None:
            self.initial_stop_loss = self.stop_loss

    @property
    def initial_risk(self) -> float:
        """Distance between entry and the stop placed at open."""
        return self.entry_price - float(self.initial_stop_loss or 0.0)

    @property
    def slot_key(self) -> Union[int, str]:
        """Key in the position slot: the trade id once persisted, else the symbol."""
        return self.id if self.id is not None else self.symbol

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Position":
        """Rebuild a position from a ``trades`` row with ``closed_at`` unset."""

        return cls(
            id=row.get("id"),
            symbol=str(row["symbol"]),
            side=str(row.get("side") or SIDE_BUY),
            qty=float(row["qty"]),
            entry_price=float(row["entry_price"]),
            stop_loss=float(row.get("stop_loss") or 0.0),
            take_profit=float(row.get("take_profit") or 0.0),
            opened_at=row["opened_at"],
            ai_confidence=float(row.get("ai_confidence") or 0.0),
            atr_pct=float(row.get("atr_pct") or 0.0),
            entry_fee=float(row.get("entry_fee") or 0.0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ClosedTrade:
    """A position together with its exit accounting."""

    position: Position
    exit_price: float
    exit_fee: float
    total_fees: float
    pnl_gross: float
    pnl_net: float
    pnl_pct_net: float
    closed_at: datetime
    exit_reason: str
    candles_held: int

    @property
    def symbol(self) -> str:
        return self.position.symbol

    @property
    def is_win(self) -> bool:
        return self.pnl_net > 0


def compute_trade_pnl(
    qty: float,
    entry_price: float,
    exit_price: float,
    entry_fee: float,
    exit_fee: float,
) -> Dict[str, float]:
    """Fee-aware PnL for a long round trip.

    Net PnL below 0.001 quote units and net percentages below 0.01 are
    booked as zero so rounding noise does not register as wins or losses.
    """

    entry_cost = qty * entry_price
    gross = qty * exit_price - entry_cost
    total_fees = entry_fee + exit_fee
    net = gross - total_fees
    net_pct = net / entry_cost * 100.0 if entry_cost > 0 else 0.0
    if abs(net) < 0.001:
        net = 0.0
    if abs(net_pct) < 0.01:
        net_pct = 0.0
    return {
        "pnl_gross": gross,
        "pnl_net": net,
        "pnl_pct_net": net_pct,
        "total_fees": total_fees,
        "entry_cost": entry_cost,
    }


# ---------------------------------------------------------------------------
# Trade lifecycle events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BuyRequested:
    symbol: str
    cost: float
    confidence: float


@dataclass(frozen=True)
class BuyExecuted:
    position: Position


@dataclass(frozen=True)
class BuyRejected:
    symbol: str
    reason: str


@dataclass(frozen=True)
class StopTrailed:
    symbol: str
    old_stop: float
    new_stop: float
    r_multiple: float


@dataclass(frozen=True)
class ExitTriggered:
    symbol: str
    reason: str
    price: float


@dataclass(frozen=True)
class Closed:
    trade: ClosedTrade

    @property
    def pnl_net(self) -> float:
        return self.trade.pnl_net


TradeEvent = Union[BuyRequested, BuyExecuted, BuyRejected, StopTrailed, ExitTriggered, Closed]


__all__ = [
    "BuyExecuted",
    "BuyRejected",
    "BuyRequested",
    "Closed",
    "ClosedTrade",
    "DAILY_SUMMARY_COLUMNS",
    "EXIT_DUST_ORPHANED",
    "EXIT_EMERGENCY_FLAT",
    "EXIT_MANUAL",
    "EXIT_REASONS",
    "EXIT_STOP_LOSS",
    "EXIT_TAKE_PROFIT",
    "EXIT_TIME",
    "ExitTriggered",
    "Position",
    "SIDE_BUY",
    "SIDE_SELL",
    "StopTrailed",
    "TRADE_COLUMNS",
    "TradeEvent",
    "compute_trade_pnl",
]
