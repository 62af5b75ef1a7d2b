"""Adaptive tuning of indicator weights and runtime strategy parameters.

Everything here is a pure function of its inputs: callers load the current
weights or runtime config, pass them in together with the new evidence
(a trade outcome, recent daily summaries or learning events) and persist
whatever comes back.  No file or database access happens in this module.
"""

from __future__ import annotations

from copy import deepcopy
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from log_utils import setup_logger
from signal_engine import WEIGHT_KEYS

logger = setup_logger(__name__)

DEFAULT_WEIGHTS: Dict[str, float] = {
    "w_rsi": 0.40,
    "w_ema": 0.30,
    "w_atr": 0.15,
    "w_vol": 0.15,
}

DEFAULT_RUNTIME_CONFIG: Dict[str, Any] = {
    "rsi_oversold": 38.0,
    "rsi_overbought": 62.0,
    "atr_low_pct": 0.4,
    "atr_high_pct": 2.0,
    "tp_multiplier": 2.4,
    "sl_multiplier": 1.2,
    "last_optimized": None,
    "optimization_history": [],
}

WEIGHT_MIN = 0.1
WEIGHT_MAX = 0.6
WEIGHT_STEP_MAJOR = 0.01
WEIGHT_STEP_MINOR = 0.005

RSI_OVERSOLD_FLOOR = 30.0
RSI_OVERBOUGHT_CAP = 70.0
TP_MULTIPLIER_CAP = 3.5
SL_MULTIPLIER_FLOOR = 0.8
ATR_LOW_PCT_CAP = 1.0
LOW_RISK_TP_MULTIPLIER = 2.0

# (upper ATR% bound, confidence threshold, atr_low_pct)
VOLATILITY_BANDS: Tuple[Tuple[float, float, float], ...] = (
    (0.05, 0.20, 0.01),
    (0.10, 0.275, 0.0075),
    (0.20, 0.35, 0.0125),
)
VOLATILITY_DEFAULT = (0.40, 0.02)
CONFIDENCE_BOUNDS = (0.2, 0.5)
ATR_LOW_BOUNDS = (0.001, 0.05)
EXTREME_RSI_BOUNDS = (25.0, 75.0)
EXTREME_RSI_CONFIDENCE_FACTOR = 0.9

SUMMARY_WINDOW_DAYS = 7
REVIEW_WINDOW = 10
REVIEW_MIN_EVENTS = 5
LOW_RISK_MIN_LOSSES = 5


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _num(value: Any, default: float = 0.0) -> float:
    try:
        if value is None:
            return default
        return float(value)
    except (TypeError, ValueError):
        return default


# ---------------------------------------------------------------------------
# Per-tick volatility adaptation
# ---------------------------------------------------------------------------


def adapt_to_volatility(atr_pct: float, rsi: Optional[float] = None) -> Tuple[float, float]:
    """Map the averaged ATR% onto ``(confidence_threshold, atr_low_pct)``.

    Quieter markets get a lower confidence bar and a lower volatility floor.
    At RSI extremes (below 25 or above 75) the threshold is eased by 10%
    after clamping.
    """

    confidence, atr_low = VOLATILITY_DEFAULT
    for upper, band_confidence, band_atr_low in VOLATILITY_BANDS:
        if atr_pct < upper:
            confidence, atr_low = band_confidence, band_atr_low
            break
    confidence = _clamp(confidence, *CONFIDENCE_BOUNDS)
    atr_low = _clamp(atr_low, *ATR_LOW_BOUNDS)
    if rsi is not None and (rsi < EXTREME_RSI_BOUNDS[0] or rsi > EXTREME_RSI_BOUNDS[1]):
        confidence *= EXTREME_RSI_CONFIDENCE_FACTOR
    return confidence, atr_low


# ---------------------------------------------------------------------------
# Per-trade weight learning
# ---------------------------------------------------------------------------


def normalize_weights(
    weights: Mapping[str, float],
    low: float = WEIGHT_MIN,
    high: float = WEIGHT_MAX,
) -> Dict[str, float]:
    """Scale ``weights`` to sum to one while keeping each inside ``[low, high]``.

    Plain division by the total can push a weight back under the floor, so
    weights that would leave the band are pinned at the bound and the rest
    are rescaled until nothing moves.
    """

    values = {key: _clamp(_num(weights.get(key), low), low, high) for key in WEIGHT_KEYS}
    pinned: Dict[str, float] = {}
    for _ in range(len(WEIGHT_KEYS) + 1):
        free = [key for key in WEIGHT_KEYS if key not in pinned]
        if not free:
            break
        target = 1.0 - sum(pinned.values())
        free_total = sum(values[key] for key in free)
        scale = target / free_total if free_total > 0 else 0.0
        moved = False
        for key in free:
            scaled = values[key] * scale if scale > 0 else target / len(free)
            if scaled < low:
                pinned[key] = low
                moved = True
            elif scaled > high:
                pinned[key] = high
                moved = True
        if not moved:
            for key in free:
                values[key] = values[key] * scale if scale > 0 else target / len(free)
            break
    values.update(pinned)

    residual = 1.0 - sum(values.values())
    if residual:
        for key in sorted(WEIGHT_KEYS, key=lambda k: values[k], reverse=residual < 0):
            adjusted = values[key] + residual
            if low <= adjusted <= high:
                values[key] = adjusted
                break
    return values


def update_weights_from_trade(
    weights: Mapping[str, float],
    pnl_net: float,
    step: float = WEIGHT_STEP_MAJOR,
) -> Tuple[Dict[str, float], str]:
    """Nudge the weights after a closed trade.

    A profitable trade favours the RSI and EMA components and a losing one
    favours the ATR and volume filters.  Returns the new weights and a short
    adjustment description for the operator.
    """

    minor = step / 2.0
    sign = 1.0 if pnl_net > 0 else -1.0
    deltas = {
        "w_rsi": sign * step,
        "w_ema": sign * step,
        "w_atr": -sign * minor,
        "w_vol": -sign * minor,
    }
    adjusted = {
        key: _clamp(_num(weights.get(key), DEFAULT_WEIGHTS[key]) + deltas[key], WEIGHT_MIN, WEIGHT_MAX)
        for key in WEIGHT_KEYS
    }
    new_weights = normalize_weights(adjusted)
    pct_major = step * 100
    pct_minor = minor * 100
    if sign > 0:
        text = f"RSI +{pct_major:g}%, EMA +{pct_major:g}%, ATR -{pct_minor:g}%, VOL -{pct_minor:g}%"
    else:
        text = f"RSI -{pct_major:g}%, EMA -{pct_major:g}%, ATR +{pct_minor:g}%, VOL +{pct_minor:g}%"
    logger.info(
        "Weights updated after %s: %s",
        "profit" if sign > 0 else "loss",
        ", ".join(f"{key}={new_weights[key]:.4f}" for key in WEIGHT_KEYS),
    )
    return new_weights, text


def weights_from_row(row: Optional[Mapping[str, Any]]) -> Optional[Dict[str, float]]:
    """Extract a normalised weight vector from a DB row or weights file."""

    if not row:
        return None
    if any(row.get(key) is None for key in WEIGHT_KEYS):
        return None
    return normalize_weights({key: _num(row.get(key)) for key in WEIGHT_KEYS})


# ---------------------------------------------------------------------------
# Periodic parameter optimisation
# ---------------------------------------------------------------------------


def aggregate_performance(summaries: Iterable[Mapping[str, Any]]) -> Dict[str, float]:
    """Collapse daily summary rows into one performance record.

    ``avg_loss`` divides the gross loss by every non-winning trade, the same
    split the daily summaries use.
    """

    rows = list(summaries)[:SUMMARY_WINDOW_DAYS]
    trades = sum(int(_num(row.get("trades"))) for row in rows)
    wins = sum(int(_num(row.get("wins"))) for row in rows)
    gross_profit = sum(_num(row.get("gross_profit")) for row in rows)
    gross_loss = sum(_num(row.get("gross_loss")) for row in rows)
    net_pnl = sum(_num(row.get("net_pnl")) for row in rows)
    max_dd = max((_num(row.get("max_drawdown")) for row in rows), default=0.0)
    non_wins = trades - wins
    return {
        "days": float(len(rows)),
        "trades": float(trades),
        "wins": float(wins),
        "win_rate": wins / trades if trades else 0.0,
        "profit_factor": gross_profit / gross_loss if gross_loss > 0 else 0.0,
        "max_drawdown": max_dd,
        "avg_win": gross_profit / wins if wins else 0.0,
        "avg_loss": gross_loss / non_wins if non_wins > 0 else 0.0,
        "net_pnl": net_pnl,
        "gross_profit": gross_profit,
        "gross_loss": gross_loss,
    }


def _config_value(config: Mapping[str, Any], key: str) -> float:
    return _num(config.get(key), DEFAULT_RUNTIME_CONFIG[key])


def optimize_parameters(
    runtime_config: Mapping[str, Any],
    performance: Mapping[str, float],
    risk_per_trade: float,
) -> Tuple[Dict[str, Any], List[str]]:
    """Apply the optimisation rules to ``runtime_config``.

    Returns ``(new_config, changes)``.  When ``changes`` is empty the caller
    must not write anything.
    """

    config = deepcopy(dict(runtime_config))
    changes: List[str] = []
    win_rate = _num(performance.get("win_rate"))
    profit_factor = _num(performance.get("profit_factor"))
    max_dd = _num(performance.get("max_drawdown"))
    avg_win = _num(performance.get("avg_win"))
    avg_loss = _num(performance.get("avg_loss"))

    if win_rate < 0.52:
        config["rsi_oversold"] = max(_config_value(config, "rsi_oversold") - 1, RSI_OVERSOLD_FLOOR)
        config["rsi_overbought"] = min(_config_value(config, "rsi_overbought") + 1, RSI_OVERBOUGHT_CAP)
        changes.append(
            f"RSI adjusted: oversold={config['rsi_oversold']:g}, overbought={config['rsi_overbought']:g}"
        )

    if profit_factor < 1.2:
        config["tp_multiplier"] = min(_config_value(config, "tp_multiplier") * 1.1, TP_MULTIPLIER_CAP)
        changes.append(f"TP multiplier increased to {config['tp_multiplier']:.2f}")

    if max_dd > 8 * risk_per_trade:
        config["atr_low_pct"] = min(_config_value(config, "atr_low_pct") + 0.1, ATR_LOW_PCT_CAP)
        changes.append(f"ATR low threshold increased to {config['atr_low_pct']:.2f}%")

    if win_rate > 0.65 and profit_factor < 1.5:
        config["tp_multiplier"] = min(_config_value(config, "tp_multiplier") * 1.05, TP_MULTIPLIER_CAP)
        changes.append(f"High win rate but low PF, TP increased to {config['tp_multiplier']:.2f}")

    if avg_loss > avg_win and avg_win > 0:
        config["sl_multiplier"] = max(_config_value(config, "sl_multiplier") * 0.95, SL_MULTIPLIER_FLOOR)
        changes.append(f"SL multiplier tightened to {config['sl_multiplier']:.2f}")

    if changes:
        logger.info("Parameter optimisation: %s", "; ".join(changes))
    else:
        logger.info("No parameter adjustments needed")
    return config, changes


# ---------------------------------------------------------------------------
# Learning-log driven checks
# ---------------------------------------------------------------------------


def _is_loss(event: Mapping[str, Any]) -> bool:
    result = event.get("result")
    if result is not None:
        return str(result).upper() == "LOSS"
    return _num(event.get("pnl")) <= 0


def review_recent_events(
    events: Sequence[Mapping[str, Any]],
    runtime_config: Mapping[str, Any],
    risk_per_trade: float,
) -> Tuple[Dict[str, Any], List[str]]:
    """Tighten the runtime config from the last learning events.

    Needs at least five of the last ten events.  A win rate under 50%
    widens the RSI band, a negative average PnL raises the take-profit
    multiplier and a single loss larger than ten times the per-trade risk
    tightens the stop multiplier.
    """

    recent = list(events)[-REVIEW_WINDOW:]
    config = deepcopy(dict(runtime_config))
    if len(recent) < REVIEW_MIN_EVENTS:
        return config, []

    pnls = [_num(event.get("pnl")) for event in recent]
    win_rate = sum(1 for event in recent if not _is_loss(event)) / len(recent)
    avg_pnl = sum(pnls) / len(pnls)
    changes: List[str] = []

    if win_rate < 0.5:
        config["rsi_oversold"] = max(RSI_OVERSOLD_FLOOR, _config_value(config, "rsi_oversold") - 1)
        config["rsi_overbought"] = min(RSI_OVERBOUGHT_CAP, _config_value(config, "rsi_overbought") + 1)
        changes.append(f"win rate {win_rate:.0%}: RSI band widened")
    if avg_pnl < 0:
        config["tp_multiplier"] = min(TP_MULTIPLIER_CAP, _config_value(config, "tp_multiplier") * 1.1)
        changes.append(f"average PnL {avg_pnl:.2f}: TP multiplier {config['tp_multiplier']:.2f}")
    if min(pnls) < -10 * risk_per_trade:
        config["sl_multiplier"] = max(SL_MULTIPLIER_FLOOR, _config_value(config, "sl_multiplier") * 0.9)
        changes.append(f"large loss {min(pnls):.2f}: SL multiplier {config['sl_multiplier']:.2f}")

    if changes:
        logger.info("Runtime config review: %s", "; ".join(changes))
    return config, changes


def check_low_risk(
    events: Sequence[Mapping[str, Any]],
    runtime_config: Mapping[str, Any],
) -> Tuple[bool, Dict[str, Any], str]:
    """Switch to low-risk parameters after five losses in the last ten events.

    Returns ``(activated, new_config, message)``.
    """

    config = deepcopy(dict(runtime_config))
    recent = list(events)[-REVIEW_WINDOW:]
    if len(recent) < REVIEW_WINDOW:
        return False, config, ""
    losses = sum(1 for event in recent if _is_loss(event))
    if losses < LOW_RISK_MIN_LOSSES:
        return False, config, ""

    config["tp_multiplier"] = LOW_RISK_TP_MULTIPLIER
    config["sl_multiplier"] = max(SL_MULTIPLIER_FLOOR, _config_value(config, "sl_multiplier") * 0.9)
    message = (
        "Low-risk mode activated\n"
        f"Reason: {losses}/{REVIEW_WINDOW} recent trades lost\n"
        f"TP: {config['tp_multiplier']:.2f}x\n"
        f"SL: {config['sl_multiplier']:.2f}x"
    )
    logger.warning("Low-risk mode activated: %d/%d losses", losses, REVIEW_WINDOW)
    return True, config, message


__all__ = [
    "DEFAULT_RUNTIME_CONFIG",
    "DEFAULT_WEIGHTS",
    "WEIGHT_MAX",
    "WEIGHT_MIN",
    "adapt_to_volatility",
    "aggregate_performance",
    "check_low_risk",
    "normalize_weights",
    "optimize_parameters",
    "review_recent_events",
    "update_weights_from_trade",
    "weights_from_row",
]
