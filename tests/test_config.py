import pytest

import config
from config import ConfigError, TradingSettings, load_trading_settings

_ENV_NAMES = [
    "QUOTE_CURRENCY",
    "TRADING_SYMBOLS",
    "RISK_PER_TRADE",
    "MAX_DAILY_LOSS",
    "RSI_OVERSOLD",
    "ENABLE_TRADING",
    "DRY_RUN",
    "TELEGRAM_CHAT_ID",
    "TELEGRAM_ALLOWED_USERS",
    "DATABASE_URL",
    "AI_DATA_DIR",
    "KRAKEN_API_KEY",
    "KRAKEN_API_SECRET",
    "OHLCV_LIMIT",
    "LOOP_INTERVAL_MS",
    "TELEGRAM_BOT_TOKEN",
]


def _clear_env(monkeypatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults(monkeypatch):
    _clear_env(monkeypatch)
    settings = load_trading_settings()
    assert settings.quote_currency == "CAD"
    assert settings.symbols == ("BTC/CAD",)
    assert settings.risk_per_trade == 2.0
    assert settings.rsi_oversold == 38.0
    assert settings.loop_interval == 60.0
    assert settings.ohlcv_limit == 220
    assert settings.ai_data_dir == config.DEFAULT_AI_DATA_DIR


def test_environment_overrides(monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv("QUOTE_CURRENCY", "usd")
    monkeypatch.setenv("TRADING_SYMBOLS", "BTC/USD, ETH/USD ,")
    monkeypatch.setenv("RISK_PER_TRADE", "not-a-number")
    monkeypatch.setenv("DRY_RUN", "yes")
    monkeypatch.setenv("TELEGRAM_CHAT_ID", "42")
    monkeypatch.setenv("AI_DATA_DIR", "/tmp/ai  # local")
    settings = load_trading_settings()
    assert settings.quote_currency == "USD"
    assert settings.symbols == ("BTC/USD", "ETH/USD")
    assert settings.risk_per_trade == 2.0
    assert settings.dry_run is True
    assert settings.telegram_allowed_users == ("42",)
    assert settings.ai_data_dir == "/tmp/ai"


def test_dsn_prefers_database_url():
    assert TradingSettings(database_url="postgres://u@h/db").dsn() == "postgres://u@h/db"
    assert "dbname=spot_trader" in TradingSettings().dsn()


def test_validate_rejects_inverted_rsi_band():
    settings = TradingSettings(rsi_oversold=70.0, rsi_overbought=30.0, dry_run=True)
    with pytest.raises(ConfigError, match="RSI_OVERSOLD"):
        settings.validate()


def test_live_trading_requires_credentials():
    with pytest.raises(ConfigError, match="credentials"):
        TradingSettings().validate()
    TradingSettings(dry_run=True).validate()
    TradingSettings(api_key="k", api_secret="s").validate()


def test_telegram_enabled_needs_token_and_chat():
    assert TradingSettings(telegram_bot_token="t", telegram_chat_id="1").telegram_enabled
    assert not TradingSettings(telegram_bot_token="t").telegram_enabled
