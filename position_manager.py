"""Single-position lifecycle: open, trail, exit and close.

The manager never holds more than the one position it opened itself.  A
buy while a position exists is rejected, and an exit without a position is
a no-op.  Every method returns the :mod:`trade_schema` events it produced
so the control loop can dispatch notifications, statistics and learning
without the manager knowing about any of them.

Persistence ordering matters: a close is written to the trade store before
the in-memory slot is cleared, so a crash between the two is recovered
from the database on the next boot.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, List, Optional

from exchange_port import BelowMinimumError, ExchangePort, InvalidOrderError
from log_utils import setup_logger
from signal_engine import Signal
from state_manager import TradingState
from trade_constants import (
    CANDLE_SECONDS,
    DEFAULT_SL_MULTIPLIER,
    DEFAULT_TP_MULTIPLIER,
    TIME_EXIT_CANDLES,
    TRAIL_ACTIVATION_R,
    TRAIL_BUFFER,
    TRAIL_R_EPSILON,
    TRAIL_TIGHTEN_BUFFER,
)
from trade_schema import (
    EXIT_DUST_ORPHANED,
    EXIT_EMERGENCY_FLAT,
    EXIT_STOP_LOSS,
    EXIT_TAKE_PROFIT,
    EXIT_TIME,
    BuyExecuted,
    BuyRejected,
    BuyRequested,
    Closed,
    ClosedTrade,
    ExitTriggered,
    Position,
    StopTrailed,
    TradeEvent,
)

logger = setup_logger(__name__)


class PositionError(Exception):
    """Raised when a position cannot be handled consistently."""


def candles_elapsed(opened_at: datetime, now: datetime, candle_seconds: int = CANDLE_SECONDS) -> int:
    """Whole candles between ``opened_at`` and ``now``."""

    seconds = (now - opened_at).total_seconds()
    if seconds <= 0:
        return 0
    return int(seconds // candle_seconds)


def exit_reason_for(position: Position, price: float, now: datetime) -> Optional[str]:
    """Return the exit that applies at ``price``, checked in priority order."""

    if price <= position.stop_loss:
        return EXIT_STOP_LOSS
    if price >= position.take_profit:
        return EXIT_TAKE_PROFIT
    if candles_elapsed(position.opened_at, now) >= TIME_EXIT_CANDLES:
        return EXIT_TIME
    return None


def proposed_trailing_stop(
    position: Position,
    price: float,
    atr_pct: float,
    tighten_below_atr_pct: float,
) -> Optional[float]:
    """Stop the trailing rule proposes at ``price``, or ``None`` below 1R.

    The locked-in buffer is a fraction of the initial risk: 0.1 normally and
    0.25 when volatility is below ``tighten_below_atr_pct``.
    """

    risk = position.initial_risk
    if risk <= 0:
        return None
    r_multiple = (price - position.entry_price) / risk
    if r_multiple + TRAIL_R_EPSILON < TRAIL_ACTIVATION_R:
        return None
    buffer = TRAIL_TIGHTEN_BUFFER if atr_pct < tighten_below_atr_pct else TRAIL_BUFFER
    return position.entry_price + risk * buffer


class PositionManager:
    """Open and close the agent's position through the exchange port."""

    def __init__(
        self,
        exchange: ExchangePort,
        store: Any,
        state: TradingState,
        *,
        trail_tighten_atr_pct: float = 0.1,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.exchange = exchange
        self.store = store
        self.state = state
        self.trail_tighten_atr_pct = trail_tighten_atr_pct
        self._clock = clock

    # ------------------------------------------------------------------
    # Boot
    # ------------------------------------------------------------------
    def restore(self) -> List[Position]:
        """Load open trades from the store into the position slot."""

        restored: List[Position] = []
        for row in self.store.get_open_trades():
            position = Position.from_row(row)
            if position.qty <= 0:
                logger.warning("Skipping open trade %s with qty %s", position.id, position.qty)
                continue
            self.state.set_position(position)
            restored.append(position)
            logger.info(
                "Restored position %s: %.8f @ %.2f SL=%.2f TP=%.2f",
                position.symbol,
                position.qty,
                position.entry_price,
                position.stop_loss,
                position.take_profit,
            )
        if len(restored) > 1:
            logger.warning("%d open trades restored; no new entries until they close", len(restored))
        return restored

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------
    def _multipliers(self) -> tuple[float, float]:
        config = self.state.runtime_config
        tp = float(config.get("tp_multiplier") or DEFAULT_TP_MULTIPLIER)
        sl = float(config.get("sl_multiplier") or DEFAULT_SL_MULTIPLIER)
        return tp, sl

    def open_position(self, signal: Signal, risk_amount: float) -> List[TradeEvent]:
        """Buy ``risk_amount`` of quote currency for an approved BUY signal.

        Invalid orders (below minimum, bad cost) are returned as a
        :class:`BuyRejected` event; transient and storage errors propagate
        and leave the slot empty.
        """

        symbol = signal.symbol
        events: List[TradeEvent] = [BuyRequested(symbol, risk_amount, signal.confidence)]
        if self.state.has_position:
            logger.warning("BUY %s rejected: position already open", symbol)
            events.append(BuyRejected(symbol, "position already open"))
            return events

        fees = self.state.fees
        net_spend = risk_amount / (1.0 + fees.combined)
        try:
            fill = self.exchange.market_buy_cost(symbol, net_spend)
        except InvalidOrderError as exc:
            logger.error("BUY %s rejected by exchange checks: %s", symbol, exc)
            events.append(BuyRejected(symbol, str(exc)))
            return events

        entry_price = fill.average if fill.average > 0 else signal.execution_price
        qty = fill.filled
        if fill.fee_reported:
            entry_fee = float(fill.fee or 0.0)
        else:
            entry_fee = net_spend * fees.taker
        tp_mult, sl_mult = self._multipliers()
        atr = signal.atr
        position = Position(
            symbol=symbol,
            qty=qty,
            entry_price=entry_price,
            stop_loss=max(0.0, entry_price - sl_mult * atr),
            take_profit=max(0.0, entry_price + tp_mult * atr),
            opened_at=self._clock(),
            ai_confidence=signal.confidence,
            atr_pct=signal.indicators.atr_pct,
            entry_fee=entry_fee,
            fee_estimated=not fill.fee_reported,
        )
        position.id = self.store.insert_trade(position)
        self.state.set_position(position)
        logger.info(
            "Position opened: %s %.8f @ %.2f SL=%.2f TP=%.2f fee=%.4f%s",
            symbol,
            qty,
            entry_price,
            position.stop_loss,
            position.take_profit,
            entry_fee,
            " (estimated)" if position.fee_estimated else "",
        )
        events.append(BuyExecuted(position))
        return events

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------
    def update_trailing_stop(
        self,
        position: Position,
        price: float,
        atr_pct: Optional[float] = None,
    ) -> Optional[StopTrailed]:
        """Raise the stop once the trade is 1R in profit; never lower it."""

        current_atr_pct = position.atr_pct if atr_pct is None else atr_pct
        proposed = proposed_trailing_stop(position, price, current_atr_pct, self.trail_tighten_atr_pct)
        if proposed is None or proposed <= position.stop_loss:
            return None
        old_stop = position.stop_loss
        if position.id is not None:
            self.store.update_stop_loss(position.id, proposed)
        position.stop_loss = proposed
        r_multiple = (price - position.entry_price) / position.initial_risk
        logger.info("%s stop trailed %.4f -> %.4f at %.2fR", position.symbol, old_stop, proposed, r_multiple)
        return StopTrailed(position.symbol, old_stop, proposed, r_multiple)

    def manage(self, now: Optional[datetime] = None) -> List[TradeEvent]:
        """Apply exits, then trailing, to every open position."""

        events: List[TradeEvent] = []
        when = now or self._clock()
        for position in list(self.state.positions.values()):
            price = self.exchange.last_price(position.symbol)
            reason = exit_reason_for(position, price, when)
            if reason is None:
                trailed = self.update_trailing_stop(position, price)
                if trailed is not None:
                    events.append(trailed)
                continue
            logger.info("%s exit triggered: %s at %.2f", position.symbol, reason, price)
            events.append(ExitTriggered(position.symbol, reason, price))
            events.extend(self.close_position(position, reason, price, when))
        return events

    def emergency_flat(self, now: Optional[datetime] = None) -> List[TradeEvent]:
        """Close every open position at the current ticker."""

        events: List[TradeEvent] = []
        when = now or self._clock()
        for position in list(self.state.positions.values()):
            price = self.exchange.last_price(position.symbol)
            events.append(ExitTriggered(position.symbol, EXIT_EMERGENCY_FLAT, price))
            events.extend(self.close_position(position, EXIT_EMERGENCY_FLAT, price, when))
        return events

    # ------------------------------------------------------------------
    # Exits
    # ------------------------------------------------------------------
    def close_position(
        self,
        position: Position,
        reason: str,
        price: float,
        now: Optional[datetime] = None,
    ) -> List[TradeEvent]:
        """Sell the position and book the result.

        A sell rejected for the exchange minimum retires the trade as
        ``DUST_ORPHANED`` with zero PnL.  Any other sell failure propagates
        and the position stays open for the next tick.
        """

        if position.id is None:
            raise PositionError(f"Position {position.symbol} has no trade id")
        when = now or self._clock()
        held = candles_elapsed(position.opened_at, when)
        try:
            fill = self.exchange.market_sell(position.symbol, position.qty)
        except BelowMinimumError as exc:
            logger.warning("%s sell below minimum (%s); closing as %s", position.symbol, exc, EXIT_DUST_ORPHANED)
            accounting = self.store.update_trade_exit(
                position.id,
                qty=position.qty,
                entry_price=position.entry_price,
                exit_price=price,
                exit_fee=0.0,
                closed_at=when,
                exit_reason=EXIT_DUST_ORPHANED,
                candles_held=held,
                flat=True,
            )
            return [self._finish(position, price, 0.0, accounting, when, EXIT_DUST_ORPHANED, held)]

        exit_price = fill.average if fill.average > 0 else price
        if fill.fee_reported:
            exit_fee = float(fill.fee or 0.0)
        else:
            exit_fee = position.qty * exit_price * self.state.fees.taker
        accounting = self.store.update_trade_exit(
            position.id,
            qty=position.qty,
            entry_price=position.entry_price,
            exit_price=exit_price,
            exit_fee=exit_fee,
            closed_at=when,
            exit_reason=reason,
            candles_held=held,
        )
        return [self._finish(position, exit_price, exit_fee, accounting, when, reason, held)]

    def _finish(
        self,
        position: Position,
        exit_price: float,
        exit_fee: float,
        accounting: dict,
        when: datetime,
        reason: str,
        held: int,
    ) -> Closed:
        trade = ClosedTrade(
            position=position,
            exit_price=exit_price,
            exit_fee=exit_fee,
            total_fees=float(accounting["total_fees"]),
            pnl_gross=float(accounting["pnl_gross"]),
            pnl_net=float(accounting["pnl_net"]),
            pnl_pct_net=float(accounting["pnl_pct_net"]),
            closed_at=when,
            exit_reason=reason,
            candles_held=held,
        )
        self.state.remove_position(position.slot_key)
        self.state.record_close(trade.pnl_net, when)
        log = logger.info if trade.pnl_net > 0 else logger.warning
        log(
            "Position closed: %s %s @ %.2f net=%.4f (%.2f%%) after %d candles",
            position.symbol,
            reason,
            exit_price,
            trade.pnl_net,
            trade.pnl_pct_net,
            held,
        )
        return Closed(trade)


__all__ = [
    "PositionError",
    "PositionManager",
    "candles_elapsed",
    "exit_reason_for",
    "proposed_trailing_stop",
]
