"""Clean raw exchange candles into a dense, finite OHLCV frame.

Exchanges occasionally return ragged candle arrays on thin markets: rows
with ``None`` prices, zero closes, negative volumes or too few rows to
compute a 200 period average.  :func:`sanitize_ohlcv` repairs those
responses so the indicator layer always receives at least
:data:`MIN_CANDLES` finite rows with ``close > 0``.
"""

from __future__ import annotations

import math
import time
from typing import Any, Iterable, List, Mapping, Optional, Sequence

import pandas as pd

from log_utils import setup_logger

logger = setup_logger(__name__)

OHLCV_COLUMNS = ["timestamp", "open", "high", "low", "close", "volume"]
MIN_CANDLES = 30
SEED_CLOSE = 100_000.0
CANDLE_MS = 60_000

_MISSING = object()


def _to_number(value: Any) -> Any:
    """Return a finite float, ``None`` for a missing slot or ``_MISSING`` for garbage."""

    if value is None:
        return None
    if isinstance(value, bool):
        return _MISSING
    try:
        number = float(value)
    except (TypeError, ValueError):
        return _MISSING
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _row_slots(row: Any) -> Optional[List[Any]]:
    if isinstance(row, Mapping):
        if "timestamp" not in row:
            return None
        return [row.get(column) for column in OHLCV_COLUMNS]
    if isinstance(row, (str, bytes)):
        return None
    if isinstance(row, Sequence) and len(row) >= 6:
        return list(row[:6])
    return None


def sanitize_ohlcv(
    rows: Iterable[Any] | None,
    *,
    min_rows: int = MIN_CANDLES,
    now_ms: Optional[int] = None,
) -> pd.DataFrame:
    """Return a cleaned OHLCV frame.

    Parameters
    ----------
    rows : iterable
        Positional ``[ts, open, high, low, close, volume]`` rows or mappings
        keyed by :data:`OHLCV_COLUMNS`.
    min_rows : int, optional
        Minimum number of rows guaranteed in the output.  Flat candles are
        synthesised backwards in one-minute steps to reach it.
    now_ms : int, optional
        Anchor timestamp used when no valid row survives cleaning.

    Returns
    -------
    pandas.DataFrame
        Frame with :data:`OHLCV_COLUMNS`, ordered by timestamp, in which every
        close is positive, ``high >= max(open, close)``,
        ``low <= min(open, close)`` and ``volume >= 0``.
    """

    parsed: List[List[Any]] = []
    dropped = 0
    for row in rows or []:
        slots = _row_slots(row)
        if slots is None:
            dropped += 1
            continue
        values = [_to_number(slot) for slot in slots]
        if any(value is _MISSING for value in values) or values[0] is None:
            dropped += 1
            continue
        parsed.append(values)

    parsed.sort(key=lambda values: values[0])

    cleaned: List[List[float]] = []
    last_close = SEED_CLOSE
    last_ts: Optional[float] = None
    for ts, open_, high, low, close, volume in parsed:
        if last_ts is not None and ts == last_ts:
            # Keep the latest update for a repeated candle.
            cleaned.pop()
        if close is None or close <= 0:
            close = last_close
        else:
            last_close = close
        if open_ is None or open_ <= 0:
            open_ = close
        high = high if high is not None and high > 0 else max(open_, close)
        low = low if low is not None and low > 0 else min(open_, close)
        high = max(high, open_, close)
        low = min(low, open_, close)
        volume = volume if volume is not None and volume > 0 else 0.0
        cleaned.append([int(ts), open_, high, low, close, volume])
        last_ts = ts

    if dropped:
        logger.warning("Dropped %d malformed OHLCV rows (%d kept)", dropped, len(cleaned))

    if len(cleaned) < min_rows:
        missing = min_rows - len(cleaned)
        if cleaned:
            anchor_ts = cleaned[0][0]
            flat = cleaned[-1][4]
        else:
            anchor_ts = int(now_ms if now_ms is not None else time.time() * 1000)
            anchor_ts -= anchor_ts % CANDLE_MS
            anchor_ts += CANDLE_MS
            flat = SEED_CLOSE
        padding = [
            [anchor_ts - CANDLE_MS * step, flat, flat, flat, flat, 0.0]
            for step in range(missing, 0, -1)
        ]
        logger.info("Padded OHLCV series with %d flat candles", missing)
        cleaned = padding + cleaned

    frame = pd.DataFrame(cleaned, columns=OHLCV_COLUMNS)
    frame["timestamp"] = frame["timestamp"].astype("int64")
    return frame


__all__ = ["MIN_CANDLES", "OHLCV_COLUMNS", "SEED_CLOSE", "sanitize_ohlcv"]
