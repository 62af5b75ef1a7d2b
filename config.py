"""Central configuration loader for environment variables."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Tuple

from dotenv import load_dotenv

# Load environment variables once when this module is imported.
load_dotenv()

import os


_REPO_ROOT = os.path.dirname(os.path.abspath(__file__))
DEFAULT_AI_DATA_DIR = os.path.join(_REPO_ROOT, "ai_data")

SIDE_BIAS_LONG_ONLY = "LONG_ONLY"
SIDE_BIAS_BOTH = "BOTH"
_SIDE_BIASES = {SIDE_BIAS_LONG_ONLY, SIDE_BIAS_BOTH}


class ConfigError(Exception):
    """Raised when the environment does not describe a runnable agent."""


def _clean_path(value: str | None) -> str:
    """Return ``value`` without inline comments or surrounding whitespace."""

    if not value:
        return ""
    return value.split("#", 1)[0].strip()


# ---------------------------------------------------------------------------
# Environment helpers
# ---------------------------------------------------------------------------
def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        return float(raw)
    except (TypeError, ValueError):
        return float(default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        return int(default)


def _env_list(name: str, default: str = "") -> Tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        raw = default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


# ---------------------------------------------------------------------------
# Trading settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TradingSettings:
    """Runtime configuration knobs for the live trading agent."""

    exchange_id: str = "kraken"
    api_key: str = ""
    api_secret: str = ""
    quote_currency: str = "CAD"
    symbols: Tuple[str, ...] = ("BTC/CAD",)
    timeframe: str = "1m"
    ohlcv_limit: int = 220

    risk_per_trade: float = 2.0
    max_daily_loss: float = 5.0
    max_daily_trades: int = 10
    cooldown_minutes: int = 5

    rsi_oversold: float = 38.0
    rsi_overbought: float = 62.0
    ema_fast: int = 20
    ema_slow: int = 50
    ema_regime: int = 200
    atr_low_pct: float = 0.4
    atr_high_pct: float = 2.0
    vol_z_min: float = 0.5
    confidence_threshold: float = 0.65
    side_bias: str = SIDE_BIAS_LONG_ONLY
    momentum_confirmation: bool = True
    trail_tighten_atr_pct: float = 0.1
    dust_threshold: float = 1.0

    ai_opt_interval_min: int = 360
    learning_rate: float = 0.01
    ai_data_dir: str = DEFAULT_AI_DATA_DIR

    database_url: str = ""
    db_host: str = "localhost"
    db_port: int = 5432
    db_user: str = "postgres"
    db_password: str = ""
    db_name: str = "spot_trader"

    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    telegram_allowed_users: Tuple[str, ...] = field(default_factory=tuple)
    enable_telegram: bool = True

    loop_interval_ms: int = 60_000
    enable_trading: bool = True
    dry_run: bool = False

    @property
    def loop_interval(self) -> float:
        """Tick period in seconds."""
        return self.loop_interval_ms / 1000.0

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.enable_telegram and self.telegram_bot_token and self.telegram_chat_id)

    def dsn(self) -> str:
        """Return a libpq connection string for the trade database."""
        if self.database_url:
            return self.database_url
        return (
            f"host={self.db_host} port={self.db_port} user={self.db_user} "
            f"password={self.db_password} dbname={self.db_name}"
        )

    def validate(self) -> None:
        """Raise :class:`ConfigError` when the settings cannot drive the loop."""

        problems: List[str] = []
        if not self.symbols:
            problems.append("TRADING_SYMBOLS is empty")
        if self.risk_per_trade <= 0:
            problems.append("RISK_PER_TRADE must be positive")
        if self.max_daily_loss <= 0:
            problems.append("MAX_DAILY_LOSS must be positive")
        if self.max_daily_trades <= 0:
            problems.append("MAX_DAILY_TRADES must be positive")
        if self.cooldown_minutes < 0:
            problems.append("COOLDOWN_MINUTES must not be negative")
        if not self.rsi_oversold < self.rsi_overbought:
            problems.append("RSI_OVERSOLD must be below RSI_OVERBOUGHT")
        if not 0 <= self.atr_low_pct <= self.atr_high_pct:
            problems.append("ATR band must satisfy 0 <= ATR_LOW_PCT <= ATR_HIGH_PCT")
        if not self.ema_fast < self.ema_slow <= self.ema_regime:
            problems.append("EMA periods must satisfy fast < slow <= regime")
        if not 0.0 <= self.confidence_threshold <= 1.0:
            problems.append("CONFIDENCE_THRESHOLD must lie in [0, 1]")
        if self.side_bias not in _SIDE_BIASES:
            problems.append(f"SIDE_BIAS must be one of {sorted(_SIDE_BIASES)}")
        if self.loop_interval_ms <= 0:
            problems.append("LOOP_INTERVAL_MS must be positive")
        if self.enable_trading and not self.dry_run and not (self.api_key and self.api_secret):
            problems.append("exchange credentials are required for live trading")
        if problems:
            raise ConfigError("; ".join(problems))


def load_trading_settings() -> TradingSettings:
    """Load trading settings for the live agent from environment variables."""

    quote = (os.getenv("QUOTE_CURRENCY") or "CAD").strip().upper()
    chat_id = (os.getenv("TELEGRAM_CHAT_ID") or "").strip()
    allowed = _env_list("TELEGRAM_ALLOWED_USERS", chat_id)
    return TradingSettings(
        exchange_id=(os.getenv("EXCHANGE_ID") or "kraken").strip().lower(),
        api_key=(os.getenv("KRAKEN_API_KEY") or "").strip(),
        api_secret=(os.getenv("KRAKEN_API_SECRET") or "").strip(),
        quote_currency=quote,
        symbols=_env_list("TRADING_SYMBOLS", f"BTC/{quote}"),
        timeframe=(os.getenv("TIMEFRAME") or "1m").strip(),
        ohlcv_limit=max(220, _env_int("OHLCV_LIMIT", 220)),
        risk_per_trade=_env_float("RISK_PER_TRADE", 2.0),
        max_daily_loss=_env_float("MAX_DAILY_LOSS", 5.0),
        max_daily_trades=_env_int("MAX_DAILY_TRADES", 10),
        cooldown_minutes=_env_int("COOLDOWN_MINUTES", 5),
        rsi_oversold=_env_float("RSI_OVERSOLD", 38),
        rsi_overbought=_env_float("RSI_OVERBOUGHT", 62),
        ema_fast=_env_int("EMA_FAST", 20),
        ema_slow=_env_int("EMA_SLOW", 50),
        ema_regime=_env_int("EMA_REGIME", 200),
        atr_low_pct=_env_float("ATR_LOW_PCT", 0.4),
        atr_high_pct=_env_float("ATR_HIGH_PCT", 2.0),
        vol_z_min=_env_float("VOL_Z_MIN", 0.5),
        confidence_threshold=_env_float("CONFIDENCE_THRESHOLD", 0.65),
        side_bias=(os.getenv("SIDE_BIAS") or SIDE_BIAS_LONG_ONLY).strip().upper(),
        momentum_confirmation=_env_bool("MOMENTUM_CONFIRMATION", True),
        trail_tighten_atr_pct=_env_float("TRAIL_TIGHTEN_ATR_PCT", 0.1),
        dust_threshold=_env_float("DUST_THRESHOLD", 1.0),
        ai_opt_interval_min=max(1, _env_int("AI_OPT_INTERVAL_MIN", 360)),
        learning_rate=_env_float("AI_LEARNING_RATE", 0.01),
        ai_data_dir=_clean_path(os.getenv("AI_DATA_DIR")) or DEFAULT_AI_DATA_DIR,
        database_url=_clean_path(os.getenv("DATABASE_URL")),
        db_host=(os.getenv("DB_HOST") or "localhost").strip(),
        db_port=_env_int("DB_PORT", 5432),
        db_user=(os.getenv("DB_USER") or "postgres").strip(),
        db_password=os.getenv("DB_PASSWORD") or "",
        db_name=(os.getenv("DB_NAME") or "spot_trader").strip(),
        telegram_bot_token=(os.getenv("TELEGRAM_BOT_TOKEN") or "").strip(),
        telegram_chat_id=chat_id,
        telegram_allowed_users=allowed,
        enable_telegram=_env_bool("ENABLE_TELEGRAM", True),
        loop_interval_ms=_env_int("LOOP_INTERVAL_MS", 60_000),
        enable_trading=_env_bool("ENABLE_TRADING", True),
        dry_run=_env_bool("DRY_RUN", False),
    )


__all__ = [
    "ConfigError",
    "SIDE_BIAS_BOTH",
    "SIDE_BIAS_LONG_ONLY",
    "TradingSettings",
    "load_trading_settings",
]
