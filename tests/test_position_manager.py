from datetime import datetime, timedelta

import pytest

from exchange_port import BelowMinimumError, InvalidOrderError, OrderFill, TransientExchangeError
from position_manager import PositionManager, candles_elapsed, exit_reason_for
from signal_engine import IndicatorSnapshot, StrategyParams, build_signal
from state_manager import TradingState
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
    ExitTriggered,
    StopTrailed,
    compute_trade_pnl,
)

T0 = datetime(2024, 5, 1, 12, 0)
EQUAL_WEIGHTS = {"w_rsi": 0.25, "w_ema": 0.25, "w_atr": 0.25, "w_vol": 0.25}


class FakeExchange:
    def __init__(self, price=100.6, fee=None):
        self.price = price
        self.fee = fee
        self.buys = []
        self.sells = []
        self.buy_error = None
        self.sell_error = None

    def last_price(self, symbol):
        return self.price

    def market_buy_cost(self, symbol, cost):
        if self.buy_error is not None:
            raise self.buy_error
        self.buys.append((symbol, cost))
        qty = cost / self.price
        return OrderFill(symbol, "buy", qty, self.price, cost, fee=self.fee)

    def market_sell(self, symbol, qty):
        if self.sell_error is not None:
            raise self.sell_error
        self.sells.append((symbol, qty))
        return OrderFill(symbol, "sell", qty, self.price, qty * self.price, fee=self.fee)


class FakeStore:
    def __init__(self, open_rows=None):
        self.open_rows = list(open_rows or [])
        self.trades = {}
        self.stops = []
        self.next_id = 1

    def insert_trade(self, position):
        trade_id = self.next_id
        self.next_id += 1
        self.trades[trade_id] = {"entry_fee": position.entry_fee, "closed": False}
        return trade_id

    def update_stop_loss(self, trade_id, stop_loss):
        self.stops.append((trade_id, stop_loss))

    def update_trade_exit(self, trade_id, *, qty, entry_price, exit_price, exit_fee, closed_at,
                          exit_reason, candles_held, flat=False):
        entry_fee = self.trades[trade_id]["entry_fee"]
        if flat:
            accounting = {"pnl_gross": 0.0, "pnl_net": 0.0, "pnl_pct_net": 0.0, "total_fees": entry_fee + exit_fee}
        else:
            accounting = compute_trade_pnl(qty, entry_price, exit_price, entry_fee, exit_fee)
        self.trades[trade_id].update(closed=True, exit_reason=exit_reason, candles_held=candles_held)
        return accounting

    def get_open_trades(self, symbol=None):
        return list(self.open_rows)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def s1_signal():
    snapshot = IndicatorSnapshot(
        rsi=34.0,
        ema_fast=100.5,
        ema_slow=100.0,
        ema_regime=99.0,
        ema_fast_prev=100.4,
        atr=0.5,
        atr_pct=0.5,
        vol_z=1.0,
        close=100.5,
    )
    params = StrategyParams(confidence_threshold=0.5)
    return build_signal("X/Q", snapshot, 100.6, 100.5, params, EQUAL_WEIGHTS, T0)


def _opened(fee=None):
    exchange = FakeExchange(fee=fee)
    store = FakeStore()
    state = TradingState()
    manager = PositionManager(exchange, store, state, clock=Clock(T0))
    events = manager.open_position(s1_signal(), 2.0)
    return manager, exchange, store, state, events


def test_open_position_sets_atr_based_levels():
    manager, exchange, store, state, events = _opened()
    assert isinstance(events[0], BuyRequested)
    assert isinstance(events[1], BuyExecuted)
    position = state.position
    assert position.entry_price == 100.6
    assert position.stop_loss == pytest.approx(100.0)
    assert position.take_profit == pytest.approx(101.8)
    assert position.id == 1
    # risk amount covers both legs of the round trip
    net_spend = 2.0 / (1 + 2 * 0.0026)
    assert exchange.buys == [("X/Q", pytest.approx(net_spend))]
    assert position.entry_fee == pytest.approx(net_spend * 0.0026)
    assert position.fee_estimated is True


def test_reported_fee_is_used():
    _, _, _, state, _ = _opened(fee=0.01)
    assert state.position.entry_fee == 0.01
    assert state.position.fee_estimated is False


def test_take_profit_books_fee_aware_pnl():
    manager, exchange, store, state, _ = _opened()
    position = state.position
    exchange.price = 101.9
    events = manager.manage(T0 + timedelta(minutes=3))
    assert isinstance(events[0], ExitTriggered)
    assert events[0].reason == EXIT_TAKE_PROFIT
    closed = events[1]
    assert isinstance(closed, Closed)
    trade = closed.trade
    gross = (101.9 - 100.6) * position.qty
    exit_fee = position.qty * 101.9 * 0.0026
    assert trade.pnl_gross == pytest.approx(gross)
    assert trade.pnl_net == pytest.approx(gross - position.entry_fee - exit_fee, abs=0.01)
    assert trade.candles_held == 3
    assert state.daily.trades_count == 1
    assert state.daily.realized_pnl == pytest.approx(trade.pnl_net)
    assert not state.has_position
    assert store.trades[1]["exit_reason"] == EXIT_TAKE_PROFIT


def test_stop_loss_realizes_loss():
    manager, exchange, _, state, _ = _opened()
    exchange.price = 99.9
    events = manager.manage(T0 + timedelta(minutes=1))
    closed = events[-1]
    assert closed.trade.exit_reason == EXIT_STOP_LOSS
    assert closed.pnl_net < 0
    assert state.daily.realized_pnl < 0
    assert state.last_trade_pnl == closed.pnl_net


def test_trailing_stop_engages_at_one_r_and_never_retreats():
    manager, exchange, store, state, _ = _opened()
    position = state.position
    now = T0 + timedelta(minutes=2)

    exchange.price = 101.1
    assert manager.manage(now) == []
    assert position.stop_loss == pytest.approx(100.0)

    exchange.price = 101.2
    events = manager.manage(now)
    assert len(events) == 1 and isinstance(events[0], StopTrailed)
    assert position.stop_loss == pytest.approx(100.66)
    assert store.stops == [(1, pytest.approx(100.66))]

    exchange.price = 101.3
    assert manager.manage(now) == []
    assert position.stop_loss == pytest.approx(100.66)
    assert state.has_position


def test_trailing_buffer_tightens_in_quiet_markets():
    manager, _, _, state, _ = _opened()
    position = state.position
    trailed = manager.update_trailing_stop(position, 101.2, atr_pct=0.05)
    assert trailed is not None
    assert trailed.new_stop == pytest.approx(100.6 + 0.6 * 0.25)


def test_time_exit_after_45_candles():
    manager, exchange, _, state, _ = _opened()
    exchange.price = 100.7
    assert manager.manage(T0 + timedelta(minutes=44, seconds=59)) == []
    events = manager.manage(T0 + timedelta(minutes=45))
    assert events[-1].trade.exit_reason == EXIT_TIME
    assert events[-1].trade.candles_held == 45


def test_exit_priority_and_candle_count():
    _, _, _, state, _ = _opened()
    position = state.position
    late = T0 + timedelta(minutes=50)
    assert exit_reason_for(position, 99.0, late) == EXIT_STOP_LOSS
    assert exit_reason_for(position, 102.0, late) == EXIT_TAKE_PROFIT
    assert candles_elapsed(T0, T0 - timedelta(minutes=1)) == 0


def test_sell_below_minimum_closes_as_dust():
    manager, exchange, store, state, _ = _opened()
    exchange.price = 99.0
    exchange.sell_error = BelowMinimumError("X/Q", 0.00001, 0.0001)
    events = manager.manage(T0 + timedelta(minutes=1))
    trade = events[-1].trade
    assert trade.exit_reason == EXIT_DUST_ORPHANED
    assert trade.pnl_net == 0.0
    assert state.daily.trades_count == 1
    assert not state.has_position


def test_failed_sell_keeps_position_open():
    manager, exchange, _, state, _ = _opened()
    exchange.price = 99.0
    exchange.sell_error = TransientExchangeError("timeout")
    with pytest.raises(TransientExchangeError):
        manager.manage(T0 + timedelta(minutes=1))
    assert state.has_position
    assert state.daily.trades_count == 0


def test_emergency_flat_closes_position():
    manager, _, _, state, _ = _opened()
    events = manager.emergency_flat(T0 + timedelta(minutes=5))
    assert events[0].reason == EXIT_EMERGENCY_FLAT
    assert events[-1].trade.exit_reason == EXIT_EMERGENCY_FLAT
    assert not state.has_position


def test_second_buy_rejected_while_open():
    manager, exchange, _, _, _ = _opened()
    events = manager.open_position(s1_signal(), 2.0)
    assert isinstance(events[-1], BuyRejected)
    assert events[-1].reason == "position already open"
    assert len(exchange.buys) == 1


def test_invalid_order_becomes_rejection():
    exchange = FakeExchange()
    exchange.buy_error = InvalidOrderError("cost too small")
    state = TradingState()
    manager = PositionManager(exchange, FakeStore(), state, clock=Clock(T0))
    events = manager.open_position(s1_signal(), 2.0)
    assert isinstance(events[-1], BuyRejected)
    assert not state.has_position


def test_restore_rebuilds_open_positions():
    rows = [
        {"id": 7, "symbol": "BTC/CAD", "side": "BUY", "qty": 0.001, "entry_price": 90000.0,
         "stop_loss": 89500.0, "take_profit": 91000.0, "opened_at": T0, "ai_confidence": 0.8,
         "atr_pct": 0.3, "entry_fee": 0.2},
        {"id": 8, "symbol": "ETH/CAD", "qty": 0.05, "entry_price": 4000.0, "stop_loss": 3950.0,
         "take_profit": 4100.0, "opened_at": T0},
        {"id": 9, "symbol": "SOL/CAD", "qty": 0, "entry_price": 200.0, "opened_at": T0},
    ]
    state = TradingState()
    manager = PositionManager(FakeExchange(), FakeStore(rows), state)
    restored = manager.restore()
    assert [p.id for p in restored] == [7, 8]
    btc = state.positions[7]
    assert btc.qty == 0.001
    assert btc.stop_loss == 89500.0
    assert btc.initial_stop_loss == 89500.0
    assert btc.entry_fee == 0.2
    assert state.held_symbols() == {"BTC/CAD", "ETH/CAD"}


def test_restore_keeps_every_open_row_for_one_symbol():
    rows = [
        {"id": 1, "symbol": "X/CAD", "qty": 0.01, "entry_price": 100.0, "stop_loss": 99.0,
         "take_profit": 102.0, "opened_at": T0},
        {"id": 2, "symbol": "X/CAD", "qty": 0.02, "entry_price": 101.0, "stop_loss": 100.0,
         "take_profit": 103.0, "opened_at": T0},
    ]
    exchange = FakeExchange()
    store = FakeStore(rows)
    store.trades = {1: {"entry_fee": 0.0, "closed": False}, 2: {"entry_fee": 0.0, "closed": False}}
    state = TradingState()
    manager = PositionManager(exchange, store, state, clock=Clock(T0))
    assert len(manager.restore()) == 2
    assert sorted(state.positions) == [1, 2]

    manager.emergency_flat(T0)
    assert not state.has_position
    assert store.trades[1]["closed"] and store.trades[2]["closed"]
