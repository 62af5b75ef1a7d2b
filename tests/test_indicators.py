import numpy as np
import pytest

import indicators


def test_sma_and_short_input():
    assert indicators.sma([1, 2, 3, 4], 2) == pytest.approx(3.5)
    assert indicators.sma([1, 2], 3) is None


def test_ema_is_seeded_with_sma():
    assert indicators.ema([1, 2, 3], 3) == pytest.approx(2.0)
    # multiplier 2 / (3 + 1) = 0.5
    assert indicators.ema([1, 2, 3, 4], 3) == pytest.approx(3.0)
    assert indicators.ema([1, 2], 3) is None


def test_rsi_without_losses_is_100():
    assert indicators.rsi(list(range(1, 20)), 14) == 100.0


def test_rsi_balanced_moves_is_50():
    closes = [1, 2, 1, 2, 1]
    assert indicators.rsi(closes, 4) == pytest.approx(50.0)


def test_rsi_needs_period_plus_one_values():
    assert indicators.rsi([1.0] * 14, 14) is None


def test_atr_and_percent_on_constant_range():
    highs = [11.0] * 16
    lows = [9.0] * 16
    closes = [10.0] * 16
    assert indicators.atr(highs, lows, closes, 14) == pytest.approx(2.0)
    assert indicators.atr_percent(highs, lows, closes, 14) == pytest.approx(20.0)
    assert indicators.atr_percent_average(highs, lows, closes, 14, 10) == pytest.approx(20.0)


def test_true_range_uses_previous_close_gap():
    ranges = indicators.true_ranges([10, 15], [9, 14], [10, 14.5])
    # gap up: |15 - 10| beats the 1.0 bar range
    assert ranges.tolist() == [5.0]


def test_zscore_flat_window_is_zero():
    assert indicators.zscore([5.0] * 20, 20) == 0.0


def test_zscore_spike():
    values = [1.0] * 19 + [2.0]
    window = np.array(values)
    expected = (2.0 - window.mean()) / window.std()
    assert indicators.zscore(values, 20) == pytest.approx(expected)
    assert indicators.zscore(values[:10], 20) is None
