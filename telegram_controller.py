"""Operator command channel on python-telegram-bot.

Commands only read :meth:`TradingState.snapshot` or set one of the two
operator flags; the trading loop picks the flags up on its next tick.
Callers outside the allow-list get ``Unauthorized`` and nothing else.
"""

from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.error import BadRequest
from telegram.ext import ApplicationBuilder, CallbackQueryHandler, CommandHandler, ContextTypes

from daily_summary import format_daily_summary
from log_utils import setup_logger
from state_manager import TradingState

logger = setup_logger(__name__)

UNAUTHORIZED_TEXT = "Unauthorized"


def keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        [
            [
                InlineKeyboardButton("Status", callback_data="status"),
                InlineKeyboardButton("Daily", callback_data="daily"),
            ],
            [
                InlineKeyboardButton("AI status", callback_data="ai_status"),
                InlineKeyboardButton("Optimize", callback_data="optimize"),
            ],
            [
                InlineKeyboardButton("Emergency flat", callback_data="flat"),
                InlineKeyboardButton("Help", callback_data="help"),
            ],
        ]
    )


def help_text() -> str:
    return (
        "Commands:\n"
        "/start - show menu\n"
        "/help - show this help\n"
        "/status - positions and today's stats\n"
        "/daily - today's summary\n"
        "/ai_status - weights and adaptive thresholds\n"
        "/optimize - run the parameter optimizer on the next tick\n"
        "/flat - close every position at market on the next tick\n"
    )


def _uptime(start: Optional[datetime], now: datetime) -> str:
    if start is None:
        return "n/a"
    minutes = int((now - start).total_seconds() // 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


def status_text(snapshot: Mapping[str, Any], currency: str = "CAD", now: Optional[datetime] = None) -> str:
    daily = snapshot.get("daily") or {}
    lines = [
        f"Date: {daily.get('date')}",
        f"Trades today: {daily.get('trades_count', 0)}",
        f"Realized PnL: {float(daily.get('realized_pnl') or 0.0):+.2f} {currency}",
        f"Uptime: {_uptime(snapshot.get('start_time'), now or datetime.now())}",
    ]
    positions = snapshot.get("positions") or {}
    if positions:
        for pos in positions.values():
            lines.append(
                f"Open {pos['symbol']}: {float(pos['qty']):.8f} @ {float(pos['entry_price']):.2f} "
                f"SL {float(pos['stop_loss']):.2f} TP {float(pos['take_profit']):.2f}"
            )
    else:
        lines.append("No open position.")
    if snapshot.get("emergency_flat_pending"):
        lines.append("Emergency flat pending.")
    signals = snapshot.get("recent_signals") or []
    if signals:
        last = signals[-1]
        lines.append(
            f"Last signal: {last.get('symbol')} {last.get('action')} "
            f"conf={float(last.get('confidence') or 0.0):.2f} RSI={float(last.get('rsi') or 0.0):.1f}"
        )
    return "\n".join(lines)


def ai_status_text(snapshot: Mapping[str, Any]) -> str:
    weights = snapshot.get("weights") or {}
    config = snapshot.get("runtime_config") or {}
    lines = ["AI weights:"]
    for key in ("w_rsi", "w_ema", "w_atr", "w_vol"):
        lines.append(f"  {key}: {float(weights.get(key) or 0.0):.3f}")
    lines.append(
        f"RSI band: {config.get('rsi_oversold')} / {config.get('rsi_overbought')}"
    )
    lines.append(f"TP x{float(config.get('tp_multiplier') or 0.0):.2f}, SL x{float(config.get('sl_multiplier') or 0.0):.2f}")
    threshold = snapshot.get("confidence_threshold")
    atr_low = snapshot.get("atr_low_pct")
    if threshold is not None:
        lines.append(f"Adaptive confidence threshold: {threshold:.3f}")
    if atr_low is not None:
        lines.append(f"Adaptive ATR low: {atr_low:.4f}%")
    lines.append(f"Last optimized: {config.get('last_optimized') or 'never'}")
    return "\n".join(lines)


class TelegramController:
    """Serve operator commands against the shared :class:`TradingState`."""

    def __init__(
        self,
        bot_token: str,
        state: TradingState,
        allowed_users: Iterable[str],
        *,
        currency: str = "CAD",
        daily_summary_loader: Optional[Callable[[], Optional[Dict[str, Any]]]] = None,
    ) -> None:
        self.bot_token = bot_token
        self.state = state
        self.allowed_users = {str(user).strip() for user in allowed_users if str(user).strip()}
        self.currency = currency
        self._daily_summary_loader = daily_summary_loader
        self._app: Any = None
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------
    def is_authorized(self, update: Update) -> bool:
        candidates = []
        user = getattr(update, "effective_user", None)
        chat = getattr(update, "effective_chat", None)
        if user is not None:
            candidates.append(str(user.id))
        if chat is not None:
            candidates.append(str(chat.id))
        authorized = any(candidate in self.allowed_users for candidate in candidates)
        if not authorized:
            logger.warning("Rejected Telegram command from %s", ", ".join(candidates) or "unknown caller")
        return authorized

    # ------------------------------------------------------------------
    # Actions shared by commands and buttons
    # ------------------------------------------------------------------
    def _daily_text(self) -> str:
        summary = self._daily_summary_loader() if self._daily_summary_loader else None
        if summary is None:
            daily = self.state.snapshot()["daily"]
            return (
                f"Today {daily['date']}: {daily['trades_count']} trades, "
                f"realized {float(daily['realized_pnl']):+.2f} {self.currency}"
            )
        return format_daily_summary(summary, self.currency)

    def _request_optimization(self) -> str:
        self.state.request_optimization()
        logger.info("Optimization requested by operator")
        return "Optimization scheduled for the next tick."

    def _request_flat(self) -> str:
        self.state.request_emergency_flat()
        logger.warning("Emergency flat requested by operator")
        return "Emergency flat requested: positions close on the next tick."

    def respond(self, action: str) -> str:
        """Text reply for ``action`` (a command name or button payload)."""

        if action == "status":
            return status_text(self.state.snapshot(), self.currency)
        if action == "daily":
            return self._daily_text()
        if action == "ai_status":
            return ai_status_text(self.state.snapshot())
        if action == "optimize":
            return self._request_optimization()
        if action == "flat":
            return self._request_flat()
        return help_text()

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    async def _reply(self, update: Update, action: str) -> None:
        if not self.is_authorized(update):
            await update.message.reply_text(UNAUTHORIZED_TEXT)
            return
        await update.message.reply_text(self.respond(action), reply_markup=keyboard())

    async def cmd_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self._reply(update, "help")

    async def cmd_help(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self._reply(update, "help")

    async def cmd_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self._reply(update, "status")

    async def cmd_daily(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self._reply(update, "daily")

    async def cmd_ai_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self._reply(update, "ai_status")

    async def cmd_optimize(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self._reply(update, "optimize")

    async def cmd_flat(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self._reply(update, "flat")

    async def on_button(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        query = update.callback_query
        await query.answer()
        if not self.is_authorized(update):
            await query.edit_message_text(UNAUTHORIZED_TEXT)
            return
        try:
            await query.edit_message_text(self.respond(query.data), reply_markup=keyboard())
        except BadRequest as exc:
            if "Message is not modified" in str(exc):
                return
            raise

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def build_application(self) -> Any:
        app = ApplicationBuilder().token(self.bot_token).build()
        app.add_handler(CommandHandler("start", self.cmd_start))
        app.add_handler(CommandHandler("help", self.cmd_help))
        app.add_handler(CommandHandler("status", self.cmd_status))
        app.add_handler(CommandHandler("daily", self.cmd_daily))
        app.add_handler(CommandHandler("ai_status", self.cmd_ai_status))
        app.add_handler(CommandHandler("optimize", self.cmd_optimize))
        app.add_handler(CommandHandler("flat", self.cmd_flat))
        app.add_handler(CallbackQueryHandler(self.on_button))
        return app

    def _run(self) -> None:
        asyncio.set_event_loop(asyncio.new_event_loop())
        logger.info("Telegram controller online")
        self._app.run_polling(stop_signals=None, close_loop=False)

    def start(self) -> None:
        """Poll for commands on a daemon thread."""

        if self._thread is not None:
            return
        self._app = self.build_application()
        self._thread = threading.Thread(target=self._run, name="telegram-controller", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if self._app is not None and self._thread is not None and self._thread.is_alive():
            self._app.stop_running()
            logger.info("Telegram controller stopping")


__all__ = ["TelegramController", "ai_status_text", "help_text", "keyboard", "status_text"]
