"""Control loop of the spot trading agent.

One thread ticks at a fixed period and owns every trading decision.  Each
tick runs, in order:

1. day rollover (orphan cleanup, inventory adjustment, summary flush, reset)
2. emergency flat requested by the operator
3. daily loss and trade-count limits
4. fee schedule refresh (daily)
5. dust cleanup (every ten minutes)
6. periodic parameter optimisation
7. low-risk mode check
8. exits and trailing for the open position, or a scan for the best BUY
9. daily summary upsert

The operator channel only sets flags on :class:`TradingState`; the loop
drains them at the step above.
"""

from __future__ import annotations

import signal
import sys
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ai_memory import AIMemory
from config import ConfigError, TradingSettings, load_trading_settings
from exchange_port import CcxtExchange, ExchangeError, ExchangePort
from log_utils import setup_logger
from notifier import TelegramNotifier
from ohlcv_sanitizer import sanitize_ohlcv
from position_manager import PositionManager
from risk_gate import RiskLimits, daily_limits_ok, evaluate_trade
from signal_engine import EXTREME_OVERSOLD_RSI, Signal, StrategyParams, compute_indicators, evaluate_signal
from state_manager import TradingState
from telegram_controller import TelegramController
from trade_constants import DUST_CLEAN_SECONDS, ERROR_BACKOFF_SECONDS, FEE_REFRESH_SECONDS
from trade_schema import EXIT_MANUAL, BuyExecuted, BuyRejected, Closed, ClosedTrade, TradeEvent
from trade_storage import StorageError, TradeStore
from weight_optimizer import (
    DEFAULT_WEIGHTS,
    adapt_to_volatility,
    aggregate_performance,
    check_low_risk,
    optimize_parameters,
    review_recent_events,
    update_weights_from_trade,
    weights_from_row,
)

logger = setup_logger(__name__)


def handle_exception(exc_type, exc_value, exc_traceback):
    """Log uncaught exceptions with stack traces."""
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.error("Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback))


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        logger.warning("Ignoring unparseable timestamp %r", value)
        return None


def entry_reasons(signal: Signal) -> List[str]:
    """Short operator explanation of why ``signal`` was accepted."""

    ind = signal.indicators
    reasons = [
        f"RSI {ind.rsi:.1f} oversold",
        f"EMA fast {ind.ema_fast:.2f} above slow {ind.ema_slow:.2f}",
        f"ATR {ind.atr_pct:.3f}% in band",
        f"volume z {ind.vol_z:.2f}",
    ]
    if ind.rsi < EXTREME_OVERSOLD_RSI and signal.signal_price <= ind.ema_regime:
        reasons.append("extreme oversold overrides the regime filter")
    return reasons


def _elapsed(since: Optional[datetime], now: datetime) -> float:
    if since is None:
        return float("inf")
    return (now - since).total_seconds()


class TradingAgent:
    """Wire the exchange, store, tuner and notifier into the tick loop."""

    def __init__(
        self,
        settings: TradingSettings,
        exchange: ExchangePort,
        store: Any,
        notifier: TelegramNotifier,
        memory: AIMemory,
        *,
        state: Optional[TradingState] = None,
        controller: Optional[TelegramController] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.settings = settings
        self.exchange = exchange
        self.store = store
        self.notifier = notifier
        self.memory = memory
        self.state = state or TradingState()
        self.controller = controller
        self._clock = clock
        self.symbols: List[str] = list(settings.symbols)
        self.limits = RiskLimits(
            max_daily_loss=settings.max_daily_loss,
            max_daily_trades=settings.max_daily_trades,
            cooldown_minutes=settings.cooldown_minutes,
        )
        self.positions = PositionManager(
            exchange,
            store,
            self.state,
            trail_tighten_atr_pct=settings.trail_tighten_atr_pct,
            clock=clock,
        )
        self._stop = threading.Event()
        self._entry_signal: Optional[Signal] = None

    def configured_thresholds(self) -> Dict[str, float]:
        """Initial RSI/ATR thresholds from the environment."""
        settings = self.settings
        return {
            "rsi_oversold": settings.rsi_oversold,
            "rsi_overbought": settings.rsi_overbought,
            "atr_low_pct": settings.atr_low_pct,
            "atr_high_pct": settings.atr_high_pct,
        }

    @property
    def trading_live(self) -> bool:
        return self.settings.enable_trading and not self.settings.dry_run

    # ------------------------------------------------------------------
    # Boot
    # ------------------------------------------------------------------
    def boot(self) -> None:
        """Restore everything the loop needs from the store and AI files."""

        now = self._clock()
        self.store.ensure_schema()
        validate = getattr(self.exchange, "validate_symbols", None)
        if validate is not None:
            self.symbols = validate(self.symbols) or self.symbols
        logger.info("Trading symbols: %s", ", ".join(self.symbols))

        today = now.date()
        self.state.reset_daily(
            today,
            self.store.get_today_closed_count(today),
            self.store.get_today_pnl(today),
        )
        self.positions.restore()
        self.state.set_weights(self.load_weights())
        config = self.memory.load_runtime_config(self.configured_thresholds())
        self.state.set_runtime_config(config)
        self.state.last_optimization = _parse_timestamp(config.get("last_optimized"))
        self.refresh_fees(now)

        last = self.store.get_last_closed_trade()
        if last and last.get("closed_at") is not None:
            self.state.last_trade_time = last["closed_at"]
            self.state.last_trade_pnl = float(last.get("pnl_net") or 0.0)
        events = self.memory.learning_events()
        if events:
            self.state.low_risk_checked_event = str(events[-1].get("timestamp"))

        daily = self.state.daily
        logger.info(
            "Boot complete: %d trades today, realized %.2f %s, %d open position(s)",
            daily.trades_count,
            daily.realized_pnl,
            self.settings.quote_currency,
            len(self.state.positions),
        )

    def load_weights(self) -> Dict[str, float]:
        """Latest weights from the store, then the weights file, then defaults."""

        weights = weights_from_row(self.store.get_latest_weights())
        if weights is not None:
            logger.info("Loaded AI weights from database")
            return weights
        weights = self.memory.load_weights()
        if weights is not None:
            logger.info("Loaded AI weights from %s", self.memory.weights_path)
            return weights
        logger.info("Using default AI weights")
        return dict(DEFAULT_WEIGHTS)

    # ------------------------------------------------------------------
    # Parameters
    # ------------------------------------------------------------------
    def strategy_params(self) -> StrategyParams:
        """Current thresholds: adaptive values over runtime config over settings."""

        settings = self.settings
        config = self.state.runtime_config
        atr_low = self.state.atr_low_pct
        if atr_low is None:
            atr_low = float(config.get("atr_low_pct") or settings.atr_low_pct)
        threshold = self.state.confidence_threshold
        if threshold is None:
            threshold = settings.confidence_threshold
        return StrategyParams(
            rsi_oversold=float(config.get("rsi_oversold") or settings.rsi_oversold),
            rsi_overbought=float(config.get("rsi_overbought") or settings.rsi_overbought),
            ema_fast=settings.ema_fast,
            ema_slow=settings.ema_slow,
            ema_regime=settings.ema_regime,
            atr_low_pct=atr_low,
            atr_high_pct=float(config.get("atr_high_pct") or settings.atr_high_pct),
            vol_z_min=settings.vol_z_min,
            confidence_threshold=threshold,
            side_bias=settings.side_bias,
            momentum_confirmation=settings.momentum_confirmation,
        )

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------
    def tick(self) -> List[TradeEvent]:
        now = self._clock()
        events: List[TradeEvent] = []

        if now.date() != self.state.daily.date:
            self.rollover(now)

        if self.state.consume_emergency_flat():
            events.extend(self.emergency_flat(now))

        daily = self.state.daily
        limits_ok = daily_limits_ok(self.limits, daily.realized_pnl, daily.trades_count)
        if not limits_ok:
            logger.info("Daily limits reached (%s); no new entries this tick", limits_ok.reason)
            if self.state.has_position:
                events.extend(self._dispatch(self.positions.manage(now), now))
            self.store.update_daily_summary(now.date())
            return events

        if _elapsed(self.state.last_fee_refresh, now) >= FEE_REFRESH_SECONDS:
            self.refresh_fees(now)

        if _elapsed(self.state.last_dust_clean, now) >= DUST_CLEAN_SECONDS:
            self.clean_dust(now)

        interval = self.settings.ai_opt_interval_min * 60
        if self.state.consume_optimization_request() or _elapsed(self.state.last_optimization, now) >= interval:
            self.run_optimization(now)

        self.check_low_risk_mode()

        if self.state.has_position:
            events.extend(self._dispatch(self.positions.manage(now), now))
        else:
            events.extend(self._dispatch(self.scan_and_enter(now), now))

        self.store.update_daily_summary(now.date())
        return events

    # ------------------------------------------------------------------
    # Step 1: rollover
    # ------------------------------------------------------------------
    def rollover(self, now: datetime) -> None:
        previous = self.state.daily.date
        logger.info("Day rollover %s -> %s", previous, now.date())
        self.clean_orphans(now)
        summary = self.store.update_daily_summary(previous)
        if summary.trades > 0:
            self.notifier.notify_daily_summary(summary)
        self.state.reset_daily(now.date())
        # leftover inventory is booked against the day that starts now
        self.adjust_for_inventory(now)

    def _base_of(self, symbol: str) -> str:
        return symbol.split("/")[0]

    def _symbol_for(self, base: str) -> str:
        symbol = f"{base}/{self.settings.quote_currency}"
        normalize = getattr(self.exchange, "normalize_symbol", None)
        return normalize(symbol) if normalize is not None else symbol

    def clean_orphans(self, now: datetime) -> int:
        """Sell base balances that have no open trade behind them.

        Each sale is recorded as a ``MANUAL`` trade with zero PnL.
        """

        open_bases = {self._base_of(row["symbol"]) for row in self.store.get_open_trades()}
        sold = 0
        for base, amounts in self.exchange.base_balances().items():
            if base in open_bases:
                continue
            amount = amounts.get("free") or amounts.get("total") or 0.0
            symbol = self._symbol_for(base)
            try:
                minimum = self.exchange.min_amount(symbol)
            except ExchangeError as exc:
                logger.info("Orphan %s %.8f has no %s market: %s", base, amount, self.settings.quote_currency, exc)
                continue
            if amount < minimum or amount <= 0:
                logger.info("Orphan %s %.8f below minimum %.8f, left in place", base, amount, minimum)
                continue
            if not self.trading_live:
                logger.info("Orphan %s %.8f found; trading not live, not selling", base, amount)
                continue
            fill = self.exchange.market_sell(symbol, amount)
            self.store.insert_closed_trade(symbol, fill.filled, fill.average, fill.fee or 0.0, EXIT_MANUAL, now)
            self.notifier.send(f"Orphan cleanup: sold {fill.filled:.8f} {base} @ {fill.average:.2f}")
            sold += 1
        return sold

    def adjust_for_inventory(self, now: datetime, symbols: Optional[List[str]] = None) -> float:
        """Book leftover base inventory of ``symbols`` against today's PnL.

        Inventory at or above the market minimum is valued at the ticker and
        subtracted from realized PnL.  Symbols with an open position are
        skipped.
        """

        if self.settings.dry_run:
            return 0.0
        targets = symbols if symbols is not None else self.symbols
        balances = self.exchange.base_balances()
        total = 0.0
        for symbol in targets:
            if symbol in self.state.held_symbols():
                continue
            base = self._base_of(symbol)
            amount = (balances.get(base) or {}).get("total") or 0.0
            if amount <= 0:
                continue
            minimum = self.exchange.min_amount(symbol)
            if amount < minimum:
                continue
            value = amount * self.exchange.last_price(symbol)
            self.state.adjust_realized(-value)
            total += value
            logger.warning("Remaining %s inventory %.8f valued %.2f deducted from realized PnL", base, amount, value)
            self.notifier.send(
                f"Inventory adjustment: {amount:.8f} {base} ({value:.2f} {self.settings.quote_currency}) "
                "deducted from today's PnL"
            )
        return total

    # ------------------------------------------------------------------
    # Step 2: emergency flat
    # ------------------------------------------------------------------
    def emergency_flat(self, now: datetime) -> List[TradeEvent]:
        logger.warning("Emergency flat: closing %d position(s)", len(self.state.positions))
        events = self._dispatch(self.positions.emergency_flat(now), now)
        self.notifier.send("Emergency flat completed")
        return events

    # ------------------------------------------------------------------
    # Steps 4-5: fees and dust
    # ------------------------------------------------------------------
    def refresh_fees(self, now: datetime) -> None:
        symbol = self.symbols[0] if self.symbols else None
        fees = self.exchange.fetch_trading_fees(symbol)
        self.state.set_fees(fees["taker"], fees["maker"], now)
        logger.info(
            "Fee rates: taker=%.4f maker=%.4f combined=%.4f",
            self.state.fees.taker,
            self.state.fees.maker,
            self.state.fees.combined,
        )

    def clean_dust(self, now: datetime) -> int:
        """Sell base balances worth less than the dust threshold."""

        self.state.last_dust_clean = now
        held = {self._base_of(symbol) for symbol in self.state.held_symbols()}
        cleaned = 0
        for base, amounts in self.exchange.base_balances().items():
            if base in held:
                continue
            amount = amounts.get("free") or amounts.get("total") or 0.0
            if amount <= 0:
                continue
            symbol = self._symbol_for(base)
            try:
                minimum = self.exchange.min_amount(symbol)
                price = self.exchange.last_price(symbol)
            except ExchangeError as exc:
                logger.debug("Dust check skipped for %s: %s", base, exc)
                continue
            notional = amount * price
            if notional >= self.settings.dust_threshold:
                continue
            if amount < minimum:
                logger.info("Dust %s %.8f (%.4f %s) below exchange minimum", base, amount, notional, self.settings.quote_currency)
                continue
            if not self.trading_live:
                continue
            self.exchange.market_sell(symbol, amount)
            logger.info("Dust %s %.8f sold (%.4f %s)", base, amount, notional, self.settings.quote_currency)
            cleaned += 1
        return cleaned

    # ------------------------------------------------------------------
    # Steps 6-7: tuning
    # ------------------------------------------------------------------
    def run_optimization(self, now: datetime) -> List[str]:
        self.state.last_optimization = now
        summaries = self.store.get_recent_summaries(7)
        if not summaries:
            logger.info("No performance data available for optimization")
            return []
        performance = aggregate_performance(summaries)
        logger.info(
            "Performance (last %d days): WR=%.1f%% PF=%.2f MaxDD=%.2f",
            int(performance["days"]),
            performance["win_rate"] * 100,
            performance["profit_factor"],
            performance["max_drawdown"],
        )
        config, changes = optimize_parameters(
            self.state.runtime_config, performance, self.settings.risk_per_trade
        )
        if not changes:
            return []
        saved = self.memory.save_runtime_config(config, changes, now=now, optimized=True)
        self.state.set_runtime_config(saved)
        self.store.insert_weights(self.state.weights, saved, performance, now)
        self.memory.save_weights(self.state.weights, saved, now=now)
        self.memory.create_backup(now=now)
        self.notifier.send("AI optimization completed\n" + "\n".join(changes))
        return changes

    def check_low_risk_mode(self) -> bool:
        """Evaluate low-risk mode once per new learning event."""

        events = self.memory.recent_learning_events(10)
        if not events:
            return False
        latest = str(events[-1].get("timestamp"))
        if latest == self.state.low_risk_checked_event:
            return False
        self.state.low_risk_checked_event = latest
        activated, config, message = check_low_risk(events, self.state.runtime_config)
        if not activated:
            return False
        saved = self.memory.save_runtime_config(config, ["low-risk mode"])
        self.state.set_runtime_config(saved)
        self.notifier.send(message)
        return True

    # ------------------------------------------------------------------
    # Step 8: entries
    # ------------------------------------------------------------------
    def evaluate_symbol(self, symbol: str, now: datetime) -> Signal:
        rows = self.exchange.fetch_ohlcv(symbol, self.settings.timeframe, self.settings.ohlcv_limit)
        candles = sanitize_ohlcv(rows)
        snapshot = compute_indicators(candles, self.strategy_params())
        threshold, atr_low = adapt_to_volatility(snapshot.atr_pct, snapshot.rsi)
        self.state.set_adaptive_thresholds(threshold, atr_low)
        signal = evaluate_signal(
            symbol, candles, self.strategy_params(), self.state.weights, snapshot=snapshot, timestamp=now
        )
        self.state.record_signal(signal.summary())
        self.notifier.notify_extreme_rsi(symbol, snapshot.rsi, now)
        return signal

    def scan_and_enter(self, now: datetime) -> List[TradeEvent]:
        best: Optional[Signal] = None
        for symbol in self.symbols:
            signal = self.evaluate_symbol(symbol, now)
            if signal.is_buy and (best is None or signal.confidence > best.confidence):
                best = signal
        if best is None:
            return []

        daily = self.state.daily
        decision = evaluate_trade(
            best,
            self.limits,
            realized_pnl=daily.realized_pnl,
            trades_count=daily.trades_count,
            has_position=self.state.has_position,
            confidence_threshold=self.strategy_params().confidence_threshold,
            last_trade_time=self.state.last_trade_time,
            last_trade_pnl=self.state.last_trade_pnl,
            now=now,
        )
        if not decision:
            logger.info("BUY %s blocked by risk gate: %s", best.symbol, decision.reason)
            return []
        if not self.settings.enable_trading:
            logger.info("Trading disabled; BUY %s (confidence %.3f) not executed", best.symbol, best.confidence)
            return []
        self._entry_signal = best
        return self.positions.open_position(best, self.settings.risk_per_trade)

    # ------------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------------
    def _dispatch(self, events: List[TradeEvent], now: datetime) -> List[TradeEvent]:
        for event in events:
            if isinstance(event, BuyExecuted):
                entry = self._entry_signal
                if entry is not None and entry.symbol == event.position.symbol:
                    self.notifier.notify_trade_open(
                        event.position, entry_reasons(entry), entry.indicators.as_dict()
                    )
                else:
                    self.notifier.notify_trade_open(event.position)
            elif isinstance(event, BuyRejected) and event.reason != "position already open":
                self.notifier.send(f"BUY {event.symbol} rejected: {event.reason}")
            elif isinstance(event, Closed):
                self.after_close(event.trade, now)
        return events

    def after_close(self, trade: ClosedTrade, now: datetime) -> str:
        """Inventory check, close notification and learning for one trade."""

        self.adjust_for_inventory(now, [trade.symbol])
        self.notifier.notify_trade_close(trade)
        explanation = self.learn_from_trade(trade, now)
        self.notifier.send(f"Learning ({trade.symbol}): {explanation}")
        return explanation

    def learn_from_trade(self, trade: ClosedTrade, now: datetime) -> str:
        new_weights, adjustment = update_weights_from_trade(
            self.state.weights, trade.pnl_net, step=self.settings.learning_rate
        )
        self.state.set_weights(new_weights)
        config = self.state.runtime_config
        self.store.insert_weights(new_weights, config, None, now)
        self.memory.save_weights(new_weights, config, now=now)
        events = self.memory.append_learning_event(
            {
                "timestamp": now.isoformat(),
                "symbol": trade.symbol,
                "result": "PROFIT" if trade.is_win else "LOSS",
                "pnl": trade.pnl_net,
                "reason": trade.exit_reason,
                "adjustments": adjustment,
                "weights": new_weights,
            }
        )
        reviewed, changes = review_recent_events(events, config, self.settings.risk_per_trade)
        if changes:
            saved = self.memory.save_runtime_config(reviewed, changes, now=now)
            self.state.set_runtime_config(saved)
        return f"{trade.exit_reason}; {adjustment}"

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------
    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return

        def _handler(signum, _frame):
            logger.info("Received signal %s, stopping", signum)
            self.stop()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)

    def stop(self) -> None:
        self._stop.set()

    def run(self) -> None:
        self._install_signal_handlers()
        interval = self.settings.loop_interval
        logger.info("Trading loop started (interval %.0fs, live=%s)", interval, self.trading_live)
        while not self._stop.is_set():
            started = time.monotonic()
            try:
                self.tick()
            except Exception as exc:
                logger.exception("Tick failed: %s", exc)
                self.notifier.notify_error("trading loop", exc)
                self._stop.wait(ERROR_BACKOFF_SECONDS)
                continue
            remaining = interval - (time.monotonic() - started)
            if remaining > 0:
                self._stop.wait(remaining)
        self.shutdown()

    def shutdown(self) -> None:
        logger.info("Shutting down")
        try:
            self.store.update_daily_summary(self.state.daily.date)
        except StorageError as exc:
            logger.error("Final daily summary failed: %s", exc)
        if self.controller is not None:
            self.controller.stop()
        self.store.close()


def main() -> int:
    sys.excepthook = handle_exception
    try:
        settings = load_trading_settings()
        settings.validate()
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 1

    try:
        store = TradeStore.from_settings(settings)
    except StorageError as exc:
        logger.error("Cannot start without the trade database: %s", exc)
        return 1

    state = TradingState()
    notifier = TelegramNotifier.from_settings(settings)
    controller = None
    if settings.telegram_enabled:
        controller = TelegramController(
            settings.telegram_bot_token,
            state,
            settings.telegram_allowed_users,
            currency=settings.quote_currency,
            daily_summary_loader=lambda: store.get_daily_summary(state.daily.date),
        )
    agent = TradingAgent(
        settings,
        CcxtExchange.from_settings(settings),
        store,
        notifier,
        AIMemory(settings.ai_data_dir),
        state=state,
        controller=controller,
    )
    agent.boot()
    if controller is not None:
        controller.start()
    notifier.send(
        f"Spot trader started ({'DRY-RUN' if settings.dry_run else 'LIVE'}): {', '.join(agent.symbols)}"
    )
    agent.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
