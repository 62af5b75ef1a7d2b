from datetime import date, datetime

import pytest

from state_manager import FeeRates, TradingState
from trade_schema import Position

NOW = datetime(2024, 5, 1, 12, 0)


def _position(symbol="BTC/CAD"):
    return Position(symbol=symbol, qty=0.001, entry_price=100.0, stop_loss=99.0, take_profit=102.0, opened_at=NOW)


def test_snapshot_is_a_deep_copy():
    state = TradingState()
    snap = state.snapshot()
    snap["runtime_config"]["tp_multiplier"] = 9.9
    snap["weights"]["w_rsi"] = 0.9
    assert state.runtime_config["tp_multiplier"] == 2.4
    assert state.weights["w_rsi"] == 0.4


def test_position_slot():
    state = TradingState()
    assert state.position is None
    state.set_position(_position())
    assert state.has_position
    assert state.snapshot()["positions"]["BTC/CAD"]["entry_price"] == 100.0
    state.remove_position("BTC/CAD")
    assert not state.has_position


def test_persisted_positions_are_keyed_by_trade_id():
    state = TradingState()
    first, second = _position(), _position()
    first.id, second.id = 1, 2
    state.set_position(first)
    state.set_position(second)
    assert sorted(state.positions) == [1, 2]
    assert state.held_symbols() == {"BTC/CAD"}
    assert set(state.snapshot()["positions"]) == {"1", "2"}
    state.remove_position(first.slot_key)
    assert state.position is second


def test_record_close_updates_daily_and_cooldown():
    state = TradingState()
    state.reset_daily(date(2024, 5, 1))
    state.record_close(-0.5, NOW)
    state.record_close(1.25, NOW)
    assert state.daily.trades_count == 2
    assert state.daily.realized_pnl == pytest.approx(0.75)
    assert state.last_trade_pnl == 1.25
    assert state.last_trade_time == NOW


def test_operator_flags_are_consumed_once():
    state = TradingState()
    assert state.consume_emergency_flat() is False
    state.request_emergency_flat()
    assert state.snapshot()["emergency_flat_pending"] is True
    assert state.consume_emergency_flat() is True
    assert state.consume_emergency_flat() is False
    state.request_optimization()
    assert state.consume_optimization_request() is True
    assert state.consume_optimization_request() is False


def test_recent_signals_ring_keeps_ten():
    state = TradingState()
    for i in range(15):
        state.record_signal({"symbol": "BTC/CAD", "confidence": i})
    signals = state.snapshot()["recent_signals"]
    assert len(signals) == 10
    assert signals[0]["confidence"] == 5


def test_fee_rates_combined_is_two_taker_legs():
    assert FeeRates(taker=0.004, maker=0.002).combined == pytest.approx(0.008)
    state = TradingState()
    state.set_fees(0.003, 0.001, NOW)
    assert state.snapshot()["fees"]["combined"] == pytest.approx(0.006)
    assert state.last_fee_refresh == NOW
