"""Shared constants for trade sizing and position management."""

from __future__ import annotations

TIME_EXIT_CANDLES = 45
"""Number of one-minute candles after which an open position is closed."""

CANDLE_SECONDS = 60
"""Length of the candles the time exit counts, in seconds."""

TRAIL_ACTIVATION_R = 1.0
"""Risk-reward multiple at which the trailing stop engages."""

TRAIL_R_EPSILON = 1e-9
"""Tolerance applied to the activation comparison for float rounding."""

TRAIL_BUFFER = 0.1
"""Fraction of the initial risk locked in above entry once trailing engages."""

TRAIL_TIGHTEN_BUFFER = 0.25
"""Buffer used instead of :data:`TRAIL_BUFFER` when volatility is low."""

DEFAULT_TAKER_FEE = 0.0026
DEFAULT_MAKER_FEE = 0.0016
"""Fallback fee rates when the exchange does not report its schedule."""

DEFAULT_TP_MULTIPLIER = 2.4
DEFAULT_SL_MULTIPLIER = 1.2
"""ATR multiples for the initial take-profit and stop-loss distances."""

PNL_SNAP_ABS = 0.001
"""Absolute net PnL below which a trade is booked as flat."""

PNL_PCT_SNAP = 0.01
"""Percentage PnL below which the percentage is booked as zero."""

FEE_REFRESH_SECONDS = 24 * 60 * 60
DUST_CLEAN_SECONDS = 10 * 60
EXTREME_RSI_NOTIFY_SECONDS = 10 * 60
EXTREME_RSI_LOW = 20.0
EXTREME_RSI_HIGH = 80.0
ERROR_BACKOFF_SECONDS = 5.0
RECENT_SIGNALS_MAX = 10
