"""Outbound operator notifications over the Telegram Bot HTTP API.

Messages are plain text.  Delivery runs on a daemon thread by default so a
slow or unreachable Telegram endpoint never stalls the trading loop; a
failed delivery is logged and otherwise ignored.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Dict, Iterable, Mapping, Optional

import requests

from daily_summary import DailyMetrics, format_daily_summary
from log_utils import setup_logger
from trade_constants import EXTREME_RSI_HIGH, EXTREME_RSI_LOW, EXTREME_RSI_NOTIFY_SECONDS
from trade_schema import ClosedTrade, Position

logger = setup_logger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"
REQUEST_TIMEOUT = 8
MAX_MESSAGE_LENGTH = 4096


def _coerce_number(value: Any) -> Optional[float]:
    """Best-effort conversion of a value to ``float``."""

    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.replace(",", ""))
        except ValueError:
            return None
    return None


def _format_number(value: Any) -> str:
    number = _coerce_number(value)
    if number is None:
        return str(value)
    if abs(number) >= 100:
        formatted = f"{number:,.2f}"
    elif abs(number) >= 1:
        formatted = f"{number:,.3f}"
    else:
        formatted = f"{number:,.5f}"
    return formatted.rstrip("0").rstrip(".") if "." in formatted else formatted


def _signed(value: float, currency: str) -> str:
    return f"{value:+,.2f} {currency}"


def format_trade_open(
    position: Position,
    currency: str = "CAD",
    reasons: Optional[Iterable[str]] = None,
    indicators: Optional[Mapping[str, float]] = None,
) -> str:
    lines = [
        f"BUY {position.symbol}",
        f"Qty: {position.qty:.8f}",
        f"Entry: {_format_number(position.entry_price)} {currency}",
        f"Stop: {_format_number(position.stop_loss)} | Target: {_format_number(position.take_profit)}",
        f"Confidence: {position.ai_confidence:.0%}",
        f"Entry fee: {position.entry_fee:.4f} {currency}{' (est.)' if position.fee_estimated else ''}",
    ]
    if indicators:
        lines.append(
            "Indicators: "
            + ", ".join(f"{key}={_format_number(value)}" for key, value in indicators.items())
        )
    for reason in reasons or ():
        lines.append(f"- {reason}")
    return "\n".join(lines)


def format_trade_close(trade: ClosedTrade, currency: str = "CAD", explanation: Optional[str] = None) -> str:
    position = trade.position
    lines = [
        f"{'WIN' if trade.is_win else 'LOSS'} {position.symbol} closed ({trade.exit_reason})",
        f"Entry: {_format_number(position.entry_price)} -> Exit: {_format_number(trade.exit_price)}",
        f"Gross: {_signed(trade.pnl_gross, currency)}",
        f"Fees: {trade.total_fees:.4f} {currency}",
        f"Net: {_signed(trade.pnl_net, currency)} ({trade.pnl_pct_net:+.2f}%)",
        f"Held: {trade.candles_held} candles",
    ]
    if explanation:
        lines.append(explanation)
    return "\n".join(lines)


class TelegramNotifier:
    """Send operator messages to one Telegram chat."""

    def __init__(
        self,
        bot_token: str = "",
        chat_id: str = "",
        *,
        enabled: bool = True,
        currency: str = "CAD",
        session: Any = None,
        background: bool = True,
    ) -> None:
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.enabled = bool(enabled and bot_token and chat_id)
        self.currency = currency
        self._session = session or requests.Session()
        self._background = background
        self._last_extreme_rsi: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Any) -> "TelegramNotifier":
        return cls(
            settings.telegram_bot_token,
            settings.telegram_chat_id,
            enabled=settings.telegram_enabled,
            currency=settings.quote_currency,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def _send_blocking(self, text: str) -> bool:
        url = TELEGRAM_API_URL.format(token=self.bot_token)
        payload = {
            "chat_id": self.chat_id,
            "text": text[:MAX_MESSAGE_LENGTH],
            "disable_web_page_preview": True,
        }
        try:
            response = self._session.post(url, data=payload, timeout=REQUEST_TIMEOUT)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Telegram delivery failed: %s", exc)
            return False
        return True

    def send(self, text: str) -> bool:
        """Queue ``text`` for delivery; returns ``False`` when disabled."""

        if not text:
            return False
        if not self.enabled:
            logger.debug("Telegram disabled, message not sent: %s", text.splitlines()[0])
            return False
        if not self._background:
            return self._send_blocking(text)
        thread = threading.Thread(target=self._send_blocking, args=(text,), daemon=True)
        thread.start()
        return True

    # ------------------------------------------------------------------
    # Message helpers
    # ------------------------------------------------------------------
    def notify_trade_open(
        self,
        position: Position,
        reasons: Optional[Iterable[str]] = None,
        indicators: Optional[Mapping[str, float]] = None,
    ) -> bool:
        return self.send(format_trade_open(position, self.currency, reasons, indicators))

    def notify_trade_close(self, trade: ClosedTrade, explanation: Optional[str] = None) -> bool:
        return self.send(format_trade_close(trade, self.currency, explanation))

    def notify_daily_summary(self, summary: Mapping[str, Any] | DailyMetrics | None) -> bool:
        return self.send(format_daily_summary(summary, self.currency))

    def notify_error(self, context: str, error: BaseException | str) -> bool:
        return self.send(f"ERROR in {context}: {error}")

    def notify_extreme_rsi(self, symbol: str, rsi: float, now: Optional[datetime] = None) -> bool:
        """Alert on RSI below 20 or above 80, once per symbol per 10 minutes."""

        if EXTREME_RSI_LOW <= rsi <= EXTREME_RSI_HIGH:
            return False
        when = now or datetime.now()
        with self._lock:
            last = self._last_extreme_rsi.get(symbol)
            if last is not None and (when - last).total_seconds() < EXTREME_RSI_NOTIFY_SECONDS:
                return False
            self._last_extreme_rsi[symbol] = when
        label = "oversold" if rsi < EXTREME_RSI_LOW else "overbought"
        logger.info("Extreme RSI on %s: %.1f (%s)", symbol, rsi, label)
        self.send(f"Extreme RSI {symbol}: {rsi:.1f} ({label})")
        return True


__all__ = ["TelegramNotifier", "format_trade_close", "format_trade_open"]
