"""Pure indicator kernel used by the signal engine.

Every function accepts plain sequences (lists, numpy arrays or pandas
series) and returns a single float, or ``None`` when the input is shorter
than the requested period.  The signal engine substitutes its own
fallbacks for ``None``.
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np


def _as_array(data: Sequence[float]) -> np.ndarray:
    return np.asarray(data, dtype=float)


def sma(data: Sequence[float], period: int) -> Optional[float]:
    """Arithmetic mean of the last ``period`` values."""
    values = _as_array(data)
    if period <= 0 or values.size < period:
        return None
    return float(values[-period:].mean())


def ema(data: Sequence[float], period: int) -> Optional[float]:
    """Exponential moving average seeded with the SMA of the first ``period`` values."""
    values = _as_array(data)
    if period <= 0 or values.size < period:
        return None
    multiplier = 2.0 / (period + 1)
    value = float(values[:period].mean())
    for price in values[period:]:
        value = (float(price) - value) * multiplier + value
    return value


def rsi(closes: Sequence[float], period: int = 14) -> Optional[float]:
    """Relative strength index using simple means of the last ``period`` changes.

    Returns 100 when the window contains no losses.
    """
    values = _as_array(closes)
    if period <= 0 or values.size < period + 1:
        return None
    changes = np.diff(values)[-period:]
    gains = float(np.where(changes > 0, changes, 0.0).mean())
    losses = float(np.where(changes < 0, -changes, 0.0).mean())
    if losses == 0:
        return 100.0
    return 100.0 - 100.0 / (1.0 + gains / losses)


def true_ranges(
    highs: Sequence[float], lows: Sequence[float], closes: Sequence[float]
) -> np.ndarray:
    """Return the true range of each candle after the first."""
    high = _as_array(highs)
    low = _as_array(lows)
    close = _as_array(closes)
    if high.size < 2:
        return np.empty(0)
    prev_close = close[:-1]
    return np.maximum.reduce(
        [
            high[1:] - low[1:],
            np.abs(high[1:] - prev_close),
            np.abs(low[1:] - prev_close),
        ]
    )


def atr(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    period: int = 14,
) -> Optional[float]:
    """Average true range over the last ``period`` true ranges."""
    if period <= 0 or len(closes) < period + 1:
        return None
    ranges = true_ranges(highs, lows, closes)
    return float(ranges[-period:].mean())


def atr_percent(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    period: int = 14,
) -> Optional[float]:
    """ATR expressed as a percentage of the latest close."""
    value = atr(highs, lows, closes, period)
    if value is None:
        return None
    last_close = float(_as_array(closes)[-1])
    if last_close <= 0:
        return None
    return value / last_close * 100.0


def atr_percent_average(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    period: int = 14,
    window: int = 10,
) -> Optional[float]:
    """Mean ATR% evaluated at each of the last up-to-``window`` candles.

    Smooths single-candle spikes before the value drives threshold
    adaptation.
    """
    high = _as_array(highs)
    low = _as_array(lows)
    close = _as_array(closes)
    samples = []
    for offset in range(max(1, window)):
        end = close.size - offset
        if end < period + 1:
            break
        value = atr_percent(high[:end], low[:end], close[:end], period)
        if value is not None:
            samples.append(value)
    if not samples:
        return None
    return float(np.mean(samples))


def zscore(values: Sequence[float], period: int = 20) -> Optional[float]:
    """Z-score of the latest value against the last ``period`` values.

    Uses the population standard deviation and returns 0 for a flat window.
    """
    data = _as_array(values)
    if period <= 0 or data.size < period:
        return None
    window = data[-period:]
    std = float(window.std())
    if std == 0:
        return 0.0
    return float((data[-1] - window.mean()) / std)


__all__ = [
    "atr",
    "atr_percent",
    "atr_percent_average",
    "ema",
    "rsi",
    "sma",
    "true_ranges",
    "zscore",
]
