"""Daily performance aggregates for closed trades."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date, datetime
from typing import Any, Dict, Iterable, Mapping, Sequence

import pandas as pd


@dataclass(frozen=True)
class DailyMetrics:
    day: date
    trades: int
    wins: int
    losses: int
    net_pnl: float
    gross_profit: float
    gross_loss: float
    profit_factor: float
    win_rate: float
    max_drawdown: float
    avg_win: float
    avg_loss: float

    def as_row(self) -> Dict[str, Any]:
        return asdict(self)


def normalise_day(value: date | datetime | str | None) -> date:
    if value is None:
        return datetime.now().date()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    parsed = pd.to_datetime(value, errors="coerce")
    if pd.isna(parsed):
        raise ValueError(f"Unable to parse trading day from {value!r}")
    return parsed.date()


def max_drawdown(pnls: Iterable[float]) -> float:
    """Largest peak-to-trough drop of the running PnL, starting from zero."""

    running = 0.0
    peak = 0.0
    worst = 0.0
    for pnl in pnls:
        running += float(pnl)
        peak = max(peak, running)
        worst = max(worst, peak - running)
    return worst


def compute_daily_metrics(day: date | datetime | str | None, pnls: Sequence[float]) -> DailyMetrics:
    """Aggregate the chronologically ordered net PnLs of one day's closed trades.

    Breakeven trades count as losses, matching the ``pnl <= 0`` split used
    by the summary table.
    """

    values = [float(p) for p in pnls]
    wins = [p for p in values if p > 0]
    losses = [p for p in values if p <= 0]
    gross_profit = float(sum(wins))
    gross_loss = float(sum(abs(p) for p in values if p < 0))
    trades = len(values)
    return DailyMetrics(
        day=normalise_day(day),
        trades=trades,
        wins=len(wins),
        losses=len(losses),
        net_pnl=float(sum(values)),
        gross_profit=gross_profit,
        gross_loss=gross_loss,
        profit_factor=gross_profit / gross_loss if gross_loss > 0 else 0.0,
        win_rate=len(wins) / trades if trades else 0.0,
        max_drawdown=max_drawdown(values),
        avg_win=gross_profit / len(wins) if wins else 0.0,
        avg_loss=gross_loss / len(losses) if losses else 0.0,
    )


def _format_money(value: float, currency: str) -> str:
    return f"{value:,.2f} {currency}"


def format_daily_summary(summary: Mapping[str, Any] | DailyMetrics | None, currency: str = "CAD") -> str:
    """Render a daily summary row for the operator channel."""

    if summary is None:
        return "No trades recorded today."
    row = summary.as_row() if isinstance(summary, DailyMetrics) else dict(summary)
    trades = int(row.get("trades") or 0)
    if trades == 0:
        return f"Daily summary {row.get('day')}: no closed trades."
    win_rate = float(row.get("win_rate") or 0.0)
    lines = [
        f"Daily summary {row.get('day')}",
        f"Trades: {trades} (W {int(row.get('wins') or 0)} / L {int(row.get('losses') or 0)})",
        f"Win rate: {win_rate:.0%}",
        f"Net PnL: {_format_money(float(row.get('net_pnl') or 0.0), currency)}",
        f"Profit factor: {float(row.get('profit_factor') or 0.0):.2f}",
        f"Max drawdown: {_format_money(float(row.get('max_drawdown') or 0.0), currency)}",
    ]
    return "\n".join(lines)


__all__ = ["DailyMetrics", "compute_daily_metrics", "format_daily_summary", "max_drawdown", "normalise_day"]
