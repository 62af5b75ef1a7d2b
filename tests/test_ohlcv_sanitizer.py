import ohlcv_sanitizer
from ohlcv_sanitizer import MIN_CANDLES, OHLCV_COLUMNS, SEED_CLOSE, sanitize_ohlcv


def test_empty_input_is_padded_with_seed_candles():
    frame = sanitize_ohlcv([], now_ms=6_030_000)
    assert list(frame.columns) == OHLCV_COLUMNS
    assert len(frame) == MIN_CANDLES
    assert (frame["close"] == SEED_CLOSE).all()
    assert (frame["volume"] == 0.0).all()
    assert frame["timestamp"].iloc[-1] == 6_000_000
    assert frame["timestamp"].iloc[0] == 6_000_000 - 60_000 * (MIN_CANDLES - 1)


def test_missing_prices_are_carried_forward():
    rows = [
        [0, 10, 11, 9, 10, 5],
        [60_000, None, None, None, None, -1],
        [120_000, 10, 12, 0, 11, 3],
    ]
    frame = sanitize_ohlcv(rows, min_rows=3)
    assert frame["close"].tolist() == [10, 10, 11]
    repaired = frame.iloc[1]
    assert repaired["open"] == 10
    assert repaired["high"] == 10
    assert repaired["low"] == 10
    assert repaired["volume"] == 0.0
    # non-positive low falls back to min(open, close)
    assert frame.iloc[2]["low"] == 10


def test_garbage_rows_are_dropped():
    rows = [
        [0, 10, 11, 9, 10, 1],
        [60_000, 10, 11, 9, "abc", 1],
        [120_000, 10],
        "not a row",
        {"timestamp": 180_000, "open": 10, "high": 12, "low": 9, "close": 11, "volume": 2},
    ]
    frame = sanitize_ohlcv(rows, min_rows=2)
    assert frame["timestamp"].tolist() == [0, 180_000]
    assert frame["close"].tolist() == [10, 11]


def test_rows_are_sorted_and_duplicates_keep_latest():
    rows = [
        [120_000, 12, 12, 12, 12, 1],
        [0, 10, 10, 10, 10, 1],
        [120_000, 13, 13, 13, 13, 1],
    ]
    frame = sanitize_ohlcv(rows, min_rows=1)
    assert frame["timestamp"].tolist() == [0, 120_000]
    assert frame["close"].iloc[-1] == 13


def test_short_series_padded_before_first_row_at_last_close():
    rows = [[600_000, 10, 10, 10, 10, 1], [660_000, 20, 20, 20, 20, 1]]
    frame = sanitize_ohlcv(rows, min_rows=5)
    assert len(frame) == 5
    assert frame["timestamp"].tolist() == [420_000, 480_000, 540_000, 600_000, 660_000]
    assert frame["close"].tolist()[:3] == [20, 20, 20]


def test_output_invariants_hold():
    rows = [[i * 60_000, 10 + i, 9 + i, 11 + i, 10 + i, -5] for i in range(40)]
    frame = ohlcv_sanitizer.sanitize_ohlcv(rows)
    assert (frame["close"] > 0).all()
    assert (frame["high"] >= frame[["open", "close"]].max(axis=1)).all()
    assert (frame["low"] <= frame[["open", "close"]].min(axis=1)).all()
    assert (frame["volume"] >= 0).all()
