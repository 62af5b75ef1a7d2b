"""Mutable runtime state owned by the trading loop.

The control loop is the only writer of trading decisions.  The operator
channel runs on another thread and talks to the loop through the two
``threading.Event`` flags and through :meth:`TradingState.snapshot`, which
returns a deep copy taken under the lock.
"""

from __future__ import annotations

import threading
from collections import deque
from copy import deepcopy
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Deque, Dict, Optional, Set, Union

from trade_constants import DEFAULT_MAKER_FEE, DEFAULT_TAKER_FEE, RECENT_SIGNALS_MAX
from trade_schema import Position
from weight_optimizer import DEFAULT_RUNTIME_CONFIG, DEFAULT_WEIGHTS


@dataclass
class DailyStats:
    date: date
    trades_count: int = 0
    realized_pnl: float = 0.0


@dataclass
class FeeRates:
    taker: float = DEFAULT_TAKER_FEE
    maker: float = DEFAULT_MAKER_FEE

    @property
    def combined(self) -> float:
        """Round-trip cost of a market buy followed by a market sell."""
        return self.taker * 2


@dataclass
class TradingState:
    """Everything the loop mutates between ticks."""

    daily: DailyStats = field(default_factory=lambda: DailyStats(date=datetime.now().date()))
    weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    runtime_config: Dict[str, Any] = field(default_factory=lambda: deepcopy(DEFAULT_RUNTIME_CONFIG))
    confidence_threshold: Optional[float] = None
    atr_low_pct: Optional[float] = None
    positions: Dict[Union[int, str], Position] = field(default_factory=dict)
    fees: FeeRates = field(default_factory=FeeRates)
    last_fee_refresh: Optional[datetime] = None
    last_optimization: Optional[datetime] = None
    last_dust_clean: Optional[datetime] = None
    last_trade_time: Optional[datetime] = None
    last_trade_pnl: Optional[float] = None
    low_risk_checked_event: Optional[str] = None
    recent_signals: Deque[Dict[str, Any]] = field(default_factory=lambda: deque(maxlen=RECENT_SIGNALS_MAX))
    start_time: datetime = field(default_factory=datetime.now)
    emergency_flat: threading.Event = field(default_factory=threading.Event, repr=False)
    optimize_requested: threading.Event = field(default_factory=threading.Event, repr=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    # ------------------------------------------------------------------
    # Position slot
    # ------------------------------------------------------------------
    @property
    def has_position(self) -> bool:
        return bool(self.positions)

    @property
    def position(self) -> Optional[Position]:
        """The live position, if any.

        Only one is ever opened; more can exist after a restart that
        recovered several open rows, and they are drained by the exits.
        """
        with self._lock:
            return next(iter(self.positions.values()), None)

    def set_position(self, position: Position) -> None:
        with self._lock:
            self.positions[position.slot_key] = position

    def remove_position(self, key: Union[int, str]) -> None:
        """Drop the position stored under ``key`` (see :attr:`Position.slot_key`)."""
        with self._lock:
            self.positions.pop(key, None)

    def held_symbols(self) -> Set[str]:
        with self._lock:
            return {position.symbol for position in self.positions.values()}

    # ------------------------------------------------------------------
    # Daily statistics
    # ------------------------------------------------------------------
    def reset_daily(self, day: date, trades_count: int = 0, realized_pnl: float = 0.0) -> None:
        with self._lock:
            self.daily = DailyStats(date=day, trades_count=int(trades_count), realized_pnl=float(realized_pnl))

    def record_close(self, pnl_net: float, at: datetime) -> None:
        """Count a closed trade and remember it for the loss cooldown."""

        with self._lock:
            self.daily.trades_count += 1
            self.daily.realized_pnl += float(pnl_net)
            self.last_trade_time = at
            self.last_trade_pnl = float(pnl_net)

    def adjust_realized(self, delta: float) -> None:
        with self._lock:
            self.daily.realized_pnl += float(delta)

    # ------------------------------------------------------------------
    # Adaptive parameters
    # ------------------------------------------------------------------
    def set_weights(self, weights: Dict[str, float]) -> None:
        with self._lock:
            self.weights = dict(weights)

    def set_runtime_config(self, config: Dict[str, Any]) -> None:
        with self._lock:
            self.runtime_config = deepcopy(dict(config))

    def set_adaptive_thresholds(self, confidence_threshold: float, atr_low_pct: float) -> None:
        with self._lock:
            self.confidence_threshold = float(confidence_threshold)
            self.atr_low_pct = float(atr_low_pct)

    def set_fees(self, taker: float, maker: float, at: datetime) -> None:
        with self._lock:
            self.fees = FeeRates(taker=float(taker), maker=float(maker))
            self.last_fee_refresh = at

    def record_signal(self, summary: Dict[str, Any]) -> None:
        with self._lock:
            self.recent_signals.append(dict(summary))

    # ------------------------------------------------------------------
    # Operator flags
    # ------------------------------------------------------------------
    def request_emergency_flat(self) -> None:
        self.emergency_flat.set()

    def consume_emergency_flat(self) -> bool:
        """Return ``True`` once per request and clear the flag."""

        if not self.emergency_flat.is_set():
            return False
        self.emergency_flat.clear()
        return True

    def request_optimization(self) -> None:
        self.optimize_requested.set()

    def consume_optimization_request(self) -> bool:
        if not self.optimize_requested.is_set():
            return False
        self.optimize_requested.clear()
        return True

    # ------------------------------------------------------------------
    # Read-only view
    # ------------------------------------------------------------------
    def snapshot(self) -> Dict[str, Any]:
        """Return a deep copy of the reportable state."""

        with self._lock:
            return {
                "daily": asdict(self.daily),
                "weights": dict(self.weights),
                "runtime_config": deepcopy(self.runtime_config),
                "confidence_threshold": self.confidence_threshold,
                "atr_low_pct": self.atr_low_pct,
                "positions": {str(key): pos.to_dict() for key, pos in self.positions.items()},
                "fees": {"taker": self.fees.taker, "maker": self.fees.maker, "combined": self.fees.combined},
                "last_fee_refresh": self.last_fee_refresh,
                "last_optimization": self.last_optimization,
                "last_trade_time": self.last_trade_time,
                "last_trade_pnl": self.last_trade_pnl,
                "recent_signals": [dict(item) for item in self.recent_signals],
                "emergency_flat_pending": self.emergency_flat.is_set(),
                "optimization_pending": self.optimize_requested.is_set(),
                "start_time": self.start_time,
            }


__all__ = ["DailyStats", "FeeRates", "TradingState"]
