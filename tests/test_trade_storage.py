from datetime import datetime
from decimal import Decimal

import psycopg2
import pytest
from psycopg2.extras import Json

from trade_schema import Position
from trade_storage import StorageError, TradeStore

NOW = datetime(2024, 5, 1, 12, 0)


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, query, params=()):
        if self.conn.fail_on and self.conn.fail_on in query:
            raise psycopg2.OperationalError("connection lost")
        self.conn.executed.append((" ".join(query.split()), params))

    def fetchone(self):
        return self.conn.results.pop(0) if self.conn.results else None

    def fetchall(self):
        return self.conn.results.pop(0) if self.conn.results else []


class FakeConnection:
    def __init__(self):
        self.executed = []
        self.results = []
        self.commits = 0
        self.rollbacks = 0
        self.fail_on = None

    def cursor(self, cursor_factory=None):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1


class FakePool:
    def __init__(self):
        self.conn = FakeConnection()
        self.closed = False

    def getconn(self):
        return self.conn

    def putconn(self, conn):
        pass

    def closeall(self):
        self.closed = True


def _store():
    pool = FakePool()
    return TradeStore(pool=pool), pool.conn


def _position():
    return Position(
        symbol="BTC/CAD",
        qty=0.001,
        entry_price=90000.0,
        stop_loss=89500.0,
        take_profit=91000.0,
        opened_at=NOW,
        ai_confidence=0.8,
        atr_pct=0.3,
        entry_fee=0.23,
    )


def test_insert_trade_returns_id_and_commits():
    store, conn = _store()
    conn.results = [{"id": 42}]
    assert store.insert_trade(_position()) == 42
    query, params = conn.executed[0]
    assert query.startswith("INSERT INTO trades")
    assert params[0] == "BTC/CAD"
    assert params[-1] == NOW
    assert conn.commits == 1


def test_update_trade_exit_uses_persisted_entry_fee():
    store, conn = _store()
    conn.results = [{"entry_fee": Decimal("0.05")}]
    accounting = store.update_trade_exit(
        3,
        qty=1.0,
        entry_price=100.0,
        exit_price=110.0,
        exit_fee=0.1,
        closed_at=NOW,
        exit_reason="TAKE_PROFIT",
        candles_held=12,
    )
    assert accounting["pnl_gross"] == pytest.approx(10.0)
    assert accounting["pnl_net"] == pytest.approx(9.85)
    assert accounting["total_fees"] == pytest.approx(0.15)
    select, _ = conn.executed[0]
    assert "FOR UPDATE" in select
    _, params = conn.executed[1]
    assert params[5] == pytest.approx(9.85)
    assert params[-3:] == ("TAKE_PROFIT", 12, 3)
    assert conn.commits == 1


def test_flat_exit_books_zero_pnl():
    store, conn = _store()
    conn.results = [{"entry_fee": 0.05}]
    accounting = store.update_trade_exit(
        3, qty=1.0, entry_price=100.0, exit_price=50.0, exit_fee=0.0,
        closed_at=NOW, exit_reason="DUST_ORPHANED", candles_held=1, flat=True,
    )
    assert accounting["pnl_net"] == 0.0
    assert accounting["total_fees"] == pytest.approx(0.05)


def test_missing_trade_rolls_back():
    store, conn = _store()
    with pytest.raises(StorageError):
        store.update_trade_exit(
            99, qty=1.0, entry_price=1.0, exit_price=1.0, exit_fee=0.0,
            closed_at=NOW, exit_reason="STOP_LOSS", candles_held=0,
        )
    assert conn.rollbacks == 1
    assert conn.commits == 0


def test_database_errors_are_wrapped():
    store, conn = _store()
    conn.fail_on = "INSERT INTO trades"
    with pytest.raises(StorageError, match="connection lost"):
        store.insert_trade(_position())
    assert conn.rollbacks == 1


def test_daily_summary_upsert_is_idempotent():
    store, conn = _store()
    rows = [{"pnl": Decimal("2.0")}, {"pnl": -1.0}, {"pnl": 3.0}]
    conn.results = [list(rows)]
    first = store.update_daily_summary("2024-05-01")
    conn.results = [list(rows)]
    second = store.update_daily_summary("2024-05-01")
    assert first == second
    assert first.trades == 3
    assert first.wins == 2
    assert first.net_pnl == pytest.approx(4.0)
    assert first.profit_factor == pytest.approx(5.0)
    assert first.max_drawdown == pytest.approx(1.0)
    upserts = [params for query, params in conn.executed if query.startswith("INSERT INTO daily_summary")]
    assert len(upserts) == 2
    assert upserts[0] == upserts[1]


def test_today_pnl_prefers_net_column():
    store, conn = _store()
    conn.results = [{"total": Decimal("-1.25")}]
    assert store.get_today_pnl(NOW) == -1.25
    query, params = conn.executed[0]
    assert "COALESCE(pnl_net, pnl)" in query
    assert params == (NOW.date(),)


def test_today_closed_count_skips_manual_orphan_sales():
    store, conn = _store()
    conn.results = [{"count": 2}]
    assert store.get_today_closed_count(NOW) == 2
    query, params = conn.executed[0]
    assert "exit_reason" in query
    assert params == (NOW.date(), "MANUAL")


def test_daily_summary_skips_manual_orphan_sales():
    store, conn = _store()
    conn.results = [[{"pnl": 1.0}]]
    summary = store.update_daily_summary("2024-05-01")
    assert summary.trades == 1
    assert summary.losses == 0
    query, params = conn.executed[0]
    assert "exit_reason" in query
    assert params[1] == "MANUAL"


def test_open_trades_are_normalised():
    store, conn = _store()
    conn.results = [[{"id": 1, "qty": Decimal("0.5"), "symbol": "BTC/CAD"}]]
    rows = store.get_open_trades()
    assert rows == [{"id": 1, "qty": 0.5, "symbol": "BTC/CAD"}]
    assert isinstance(rows[0]["qty"], float)


def test_insert_weights_stores_snapshot_as_json():
    store, conn = _store()
    conn.results = [{"id": 5}]
    weights = {"w_rsi": 0.4, "w_ema": 0.3, "w_atr": 0.15, "w_vol": 0.15}
    store.insert_weights(weights, {"rsi_oversold": 37.0}, {"win_rate": 0.5}, NOW)
    _, params = conn.executed[0]
    assert params[:4] == (0.4, 0.3, 0.15, 0.15)
    assert params[4] == 37.0
    assert isinstance(params[8], Json)
    assert params[9] == NOW


def test_update_stop_loss_only_touches_open_trades():
    store, conn = _store()
    store.update_stop_loss(4, 100.66)
    query, params = conn.executed[0]
    assert "closed_at IS NULL" in query
    assert params == (100.66, 4)


def test_close_releases_pool_once():
    pool = FakePool()
    store = TradeStore(pool=pool)
    store.close()
    store.close()
    assert pool.closed
