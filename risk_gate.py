"""Pre-trade risk checks."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from signal_engine import ACTION_BUY, ACTION_SELL, Signal


@dataclass(frozen=True)
class RiskLimits:
    max_daily_loss: float = 5.0
    max_daily_trades: int = 10
    cooldown_minutes: float = 5.0


@dataclass(frozen=True)
class RiskDecision:
    allowed: bool
    reason: str = "OK"

    def __bool__(self) -> bool:
        return self.allowed


def daily_limits_ok(limits: RiskLimits, realized_pnl: float, trades_count: int) -> RiskDecision:
    """Check the daily loss and trade-count caps only."""

    if realized_pnl <= -limits.max_daily_loss:
        return RiskDecision(False, f"daily loss limit reached: {realized_pnl:.2f}")
    if trades_count >= limits.max_daily_trades:
        return RiskDecision(False, f"daily trade limit reached: {trades_count}")
    return RiskDecision(True)


def evaluate_trade(
    signal: Optional[Signal],
    limits: RiskLimits,
    *,
    realized_pnl: float,
    trades_count: int,
    has_position: bool,
    confidence_threshold: float,
    last_trade_time: Optional[datetime] = None,
    last_trade_pnl: Optional[float] = None,
    now: Optional[datetime] = None,
) -> RiskDecision:
    """Approve or reject ``signal`` against the limits and current state.

    The confidence threshold is re-checked here because the adaptive tuner
    may have moved it after the signal was scored.
    """

    if signal is None or signal.action not in (ACTION_BUY, ACTION_SELL):
        return RiskDecision(False, "no actionable signal")

    daily = daily_limits_ok(limits, realized_pnl, trades_count)
    if not daily:
        return daily

    if (
        last_trade_time is not None
        and last_trade_pnl is not None
        and last_trade_pnl < 0
        and limits.cooldown_minutes > 0
    ):
        elapsed = ((now or datetime.now()) - last_trade_time).total_seconds() / 60.0
        if elapsed < limits.cooldown_minutes:
            return RiskDecision(
                False,
                f"cooldown after loss: {limits.cooldown_minutes - elapsed:.1f} min remaining",
            )

    if signal.action == ACTION_BUY and has_position:
        return RiskDecision(False, "position already open")
    if signal.action == ACTION_SELL and not has_position:
        return RiskDecision(False, "no position to sell")

    if signal.confidence < confidence_threshold:
        return RiskDecision(
            False, f"confidence {signal.confidence:.3f} below threshold {confidence_threshold:.3f}"
        )
    return RiskDecision(True)


__all__ = ["RiskDecision", "RiskLimits", "daily_limits_ok", "evaluate_trade"]
