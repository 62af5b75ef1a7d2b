"""
PostgreSQL persistence for trades, daily summaries and tuner weights.

The store owns a ``psycopg2`` threaded connection pool (at most ten
connections) and exposes the narrow set of queries the trading loop
needs:

* **Trades** – insert on open, transactional exit update on close, open
  trade recovery on boot and today's counters for the risk gate.
* **Daily summary** – an idempotent upsert keyed by day, rebuilt from the
  closed trades of that day.
* **AI weights** – an append-only history of weight vectors together with
  the thresholds and performance snapshot that produced them.

Every psycopg2 failure is wrapped in :class:`StorageError` and re-raised so
the caller aborts the tick without touching in-memory position state.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Dict, Iterator, List, Mapping, Optional

import psycopg2
from psycopg2.extras import Json, RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

from daily_summary import DailyMetrics, compute_daily_metrics, normalise_day
from log_utils import setup_logger
from trade_schema import EXIT_MANUAL, SIDE_BUY, Position, compute_trade_pnl

logger = setup_logger(__name__)

POOL_MIN_CONNECTIONS = 1
POOL_MAX_CONNECTIONS = 10

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS trades (
        id SERIAL PRIMARY KEY,
        symbol VARCHAR(20) NOT NULL,
        side VARCHAR(4) NOT NULL,
        qty NUMERIC(18, 8) NOT NULL,
        entry_price NUMERIC(18, 8) NOT NULL,
        entry_fee NUMERIC(18, 8) DEFAULT 0,
        exit_price NUMERIC(18, 8),
        exit_fee NUMERIC(18, 8) DEFAULT 0,
        total_fees NUMERIC(18, 8) DEFAULT 0,
        pnl NUMERIC(18, 8),
        pnl_pct NUMERIC(10, 4),
        pnl_net NUMERIC(18, 8),
        ai_confidence NUMERIC(5, 4),
        atr_pct NUMERIC(10, 4),
        stop_loss NUMERIC(18, 8),
        take_profit NUMERIC(18, 8),
        opened_at TIMESTAMP NOT NULL,
        closed_at TIMESTAMP,
        exit_reason VARCHAR(50),
        candles_held INTEGER,
        balance_before NUMERIC(18, 8),
        balance_after NUMERIC(18, 8),
        net_balance_change NUMERIC(18, 8)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_trades_closed_at ON trades (closed_at)",
    "CREATE INDEX IF NOT EXISTS idx_trades_symbol ON trades (symbol)",
    """
    CREATE TABLE IF NOT EXISTS daily_summary (
        day DATE PRIMARY KEY,
        trades INTEGER DEFAULT 0,
        wins INTEGER DEFAULT 0,
        losses INTEGER DEFAULT 0,
        net_pnl NUMERIC(18, 8) DEFAULT 0,
        gross_profit NUMERIC(18, 8) DEFAULT 0,
        gross_loss NUMERIC(18, 8) DEFAULT 0,
        profit_factor NUMERIC(10, 4) DEFAULT 0,
        win_rate NUMERIC(5, 4) DEFAULT 0,
        max_drawdown NUMERIC(18, 8) DEFAULT 0,
        avg_win NUMERIC(18, 8) DEFAULT 0,
        avg_loss NUMERIC(18, 8) DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_weights (
        id SERIAL PRIMARY KEY,
        w_rsi NUMERIC(6, 4) NOT NULL,
        w_ema NUMERIC(6, 4) NOT NULL,
        w_atr NUMERIC(6, 4) NOT NULL,
        w_vol NUMERIC(6, 4) NOT NULL,
        rsi_oversold NUMERIC(6, 2),
        rsi_overbought NUMERIC(6, 2),
        atr_low_pct NUMERIC(8, 4),
        atr_high_pct NUMERIC(8, 4),
        performance_snapshot JSONB,
        updated_at TIMESTAMP NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_ai_weights_updated_at ON ai_weights (updated_at)",
)

_INSERT_TRADE = """
    INSERT INTO trades (
        symbol, side, qty, entry_price, entry_fee, ai_confidence,
        atr_pct, stop_loss, take_profit, opened_at
    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
    RETURNING id
"""

_INSERT_CLOSED_TRADE = """
    INSERT INTO trades (
        symbol, side, qty, entry_price, entry_fee, exit_price, exit_fee,
        total_fees, pnl, pnl_pct, pnl_net, opened_at, closed_at,
        exit_reason, candles_held
    ) VALUES (%s, %s, %s, %s, 0, %s, %s, %s, 0, 0, 0, %s, %s, %s, 0)
    RETURNING id
"""

_UPDATE_TRADE_EXIT = """
    UPDATE trades
    SET exit_price = %s, exit_fee = %s, total_fees = %s,
        pnl = %s, pnl_pct = %s, pnl_net = %s,
        closed_at = %s, exit_reason = %s, candles_held = %s
    WHERE id = %s
"""

_UPSERT_DAILY_SUMMARY = """
    INSERT INTO daily_summary (
        day, trades, wins, losses, net_pnl, gross_profit, gross_loss,
        profit_factor, win_rate, max_drawdown, avg_win, avg_loss
    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
    ON CONFLICT (day) DO UPDATE SET
        trades = EXCLUDED.trades,
        wins = EXCLUDED.wins,
        losses = EXCLUDED.losses,
        net_pnl = EXCLUDED.net_pnl,
        gross_profit = EXCLUDED.gross_profit,
        gross_loss = EXCLUDED.gross_loss,
        profit_factor = EXCLUDED.profit_factor,
        win_rate = EXCLUDED.win_rate,
        max_drawdown = EXCLUDED.max_drawdown,
        avg_win = EXCLUDED.avg_win,
        avg_loss = EXCLUDED.avg_loss
"""

_INSERT_WEIGHTS = """
    INSERT INTO ai_weights (
        w_rsi, w_ema, w_atr, w_vol, rsi_oversold, rsi_overbought,
        atr_low_pct, atr_high_pct, performance_snapshot, updated_at
    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
    RETURNING id
"""


class StorageError(Exception):
    """Raised when the trade database rejects a read or write."""


def _float(value: Any, default: float = 0.0) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _normalise_row(row: Mapping[str, Any]) -> Dict[str, Any]:
    """Convert ``Decimal`` columns to floats so callers deal in plain numbers."""

    result: Dict[str, Any] = {}
    for key, value in row.items():
        if value is not None and value.__class__.__name__ == "Decimal":
            value = float(value)
        result[key] = value
    return result


class TradeStore:
    """Relational persistence port backed by a psycopg2 connection pool."""

    def __init__(self, dsn: str = "", pool: Any = None) -> None:
        if pool is None:
            try:
                pool = ThreadedConnectionPool(POOL_MIN_CONNECTIONS, POOL_MAX_CONNECTIONS, dsn)
            except psycopg2.Error as exc:
                raise StorageError(f"Unable to connect to trade database: {exc}") from exc
        self._pool = pool
        self._closed = False

    @classmethod
    def from_settings(cls, settings: Any) -> "TradeStore":
        return cls(settings.dsn())

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------
    @contextmanager
    def _connection(self) -> Iterator[Any]:
        conn = self._pool.getconn()
        try:
            yield conn
        finally:
            self._pool.putconn(conn)

    @contextmanager
    def _transaction(self, description: str) -> Iterator[Any]:
        """Yield a dict cursor inside a transaction, rolling back on failure."""

        with self._connection() as conn:
            try:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    yield cur
                conn.commit()
            except psycopg2.Error as exc:
                conn.rollback()
                logger.error("Database error while trying to %s: %s", description, exc)
                raise StorageError(f"{description}: {exc}") from exc
            except Exception:
                conn.rollback()
                raise

    def _fetchall(self, query: str, params: tuple = (), description: str = "query") -> List[Dict[str, Any]]:
        with self._transaction(description) as cur:
            cur.execute(query, params)
            return [_normalise_row(row) for row in cur.fetchall()]

    def _fetchone(self, query: str, params: tuple = (), description: str = "query") -> Optional[Dict[str, Any]]:
        with self._transaction(description) as cur:
            cur.execute(query, params)
            row = cur.fetchone()
            return _normalise_row(row) if row else None

    def ensure_schema(self) -> None:
        with self._transaction("create schema") as cur:
            for statement in SCHEMA_STATEMENTS:
                cur.execute(statement)
        logger.info("Trade database schema ready")

    def close(self) -> None:
        if not self._closed:
            self._pool.closeall()
            self._closed = True
            logger.info("Trade database pool closed")

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------
    def insert_trade(self, position: Position) -> int:
        """Persist a freshly opened position and return its id."""

        values = (
            position.symbol,
            position.side or SIDE_BUY,
            position.qty,
            position.entry_price,
            position.entry_fee,
            position.ai_confidence,
            position.atr_pct,
            position.stop_loss,
            position.take_profit,
            position.opened_at,
        )
        with self._transaction(f"insert trade for {position.symbol}") as cur:
            cur.execute(_INSERT_TRADE, values)
            trade_id = int(cur.fetchone()["id"])
        logger.info(
            "Trade inserted: id=%d %s %s %.8f @ %.2f fee=%.4f",
            trade_id,
            position.symbol,
            position.side,
            position.qty,
            position.entry_price,
            position.entry_fee,
        )
        return trade_id

    def insert_closed_trade(
        self,
        symbol: str,
        qty: float,
        price: float,
        exit_fee: float,
        exit_reason: str,
        at: Optional[datetime] = None,
    ) -> int:
        """Record an inventory sale that never had an open position.

        Used for orphan cleanup: the row carries zero PnL so the sale is
        visible in the trade history without distorting performance.
        """

        when = at or datetime.now()
        values = (symbol, "SELL", qty, price, price, exit_fee, exit_fee, when, when, exit_reason)
        with self._transaction(f"record {exit_reason} sale of {symbol}") as cur:
            cur.execute(_INSERT_CLOSED_TRADE, values)
            trade_id = int(cur.fetchone()["id"])
        logger.info("Recorded %s sale of %.8f %s @ %.2f (id=%d)", exit_reason, qty, symbol, price, trade_id)
        return trade_id

    def update_trade_exit(
        self,
        trade_id: int,
        *,
        qty: float,
        entry_price: float,
        exit_price: float,
        exit_fee: float,
        closed_at: datetime,
        exit_reason: str,
        candles_held: int,
        flat: bool = False,
    ) -> Dict[str, float]:
        """Close a trade atomically.

        The persisted ``entry_fee`` is read and the exit row written inside
        one transaction.  When ``flat`` is true the trade is booked with zero
        PnL, which is how unsellable dust positions are retired.

        Returns
        -------
        dict
            The accounting that was written: ``pnl_gross``, ``pnl_net``,
            ``pnl_pct_net`` and ``total_fees``.
        """

        with self._transaction(f"close trade {trade_id}") as cur:
            cur.execute("SELECT entry_fee FROM trades WHERE id = %s FOR UPDATE", (trade_id,))
            row = cur.fetchone()
            if row is None:
                raise StorageError(f"Trade {trade_id} does not exist")
            entry_fee = _float(row.get("entry_fee"))
            if flat:
                accounting = {
                    "pnl_gross": 0.0,
                    "pnl_net": 0.0,
                    "pnl_pct_net": 0.0,
                    "total_fees": entry_fee + exit_fee,
                }
            else:
                accounting = compute_trade_pnl(qty, entry_price, exit_price, entry_fee, exit_fee)
            cur.execute(
                _UPDATE_TRADE_EXIT,
                (
                    exit_price,
                    exit_fee,
                    accounting["total_fees"],
                    accounting["pnl_gross"],
                    accounting["pnl_pct_net"],
                    accounting["pnl_net"],
                    closed_at,
                    exit_reason,
                    int(candles_held),
                    trade_id,
                ),
            )
        log = logger.info if accounting["pnl_net"] > 0 else logger.warning
        log(
            "Trade closed: id=%d reason=%s gross=%.4f net=%.4f (%.2f%%) fees=%.4f",
            trade_id,
            exit_reason,
            accounting["pnl_gross"],
            accounting["pnl_net"],
            accounting["pnl_pct_net"],
            accounting["total_fees"],
        )
        return accounting

    def update_stop_loss(self, trade_id: int, stop_loss: float) -> None:
        with self._transaction(f"update stop for trade {trade_id}") as cur:
            cur.execute(
                "UPDATE trades SET stop_loss = %s WHERE id = %s AND closed_at IS NULL",
                (stop_loss, trade_id),
            )

    def get_open_trades(self, symbol: Optional[str] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM trades WHERE closed_at IS NULL"
        params: tuple = ()
        if symbol:
            query += " AND symbol = %s"
            params = (symbol,)
        query += " ORDER BY opened_at ASC"
        return self._fetchall(query, params, "load open trades")

    def get_today_closed_count(self, day: date | datetime | str | None = None) -> int:
        """Closed trades on ``day``; orphan-cleanup ``MANUAL`` sales are not counted."""
        row = self._fetchone(
            "SELECT COUNT(*) AS count FROM trades WHERE closed_at IS NOT NULL AND closed_at::date = %s "
            "AND COALESCE(exit_reason, '') <> %s",
            (normalise_day(day), EXIT_MANUAL),
            "count closed trades",
        )
        return int(row["count"]) if row else 0

    def get_today_pnl(self, day: date | datetime | str | None = None) -> float:
        row = self._fetchone(
            "SELECT COALESCE(SUM(COALESCE(pnl_net, pnl)), 0) AS total FROM trades "
            "WHERE closed_at IS NOT NULL AND closed_at::date = %s",
            (normalise_day(day),),
            "sum today's pnl",
        )
        return _float(row["total"]) if row else 0.0

    def get_last_closed_trade(self) -> Optional[Dict[str, Any]]:
        return self._fetchone(
            "SELECT closed_at, COALESCE(pnl_net, pnl) AS pnl_net FROM trades "
            "WHERE closed_at IS NOT NULL ORDER BY closed_at DESC LIMIT 1",
            (),
            "load last closed trade",
        )

    def get_closed_trades(self, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM trades WHERE closed_at IS NOT NULL"
        params: tuple = ()
        if since is not None:
            query += " AND closed_at >= %s"
            params = (since,)
        query += " ORDER BY closed_at ASC, id ASC"
        return self._fetchall(query, params, "load closed trades")

    def update_trade_balances(
        self,
        trade_id: int,
        balance_before: float,
        balance_after: float,
        net_balance_change: float,
    ) -> None:
        with self._transaction(f"update balances for trade {trade_id}") as cur:
            cur.execute(
                "UPDATE trades SET balance_before = %s, balance_after = %s, "
                "net_balance_change = %s WHERE id = %s",
                (balance_before, balance_after, net_balance_change, trade_id),
            )

    # ------------------------------------------------------------------
    # Daily summary
    # ------------------------------------------------------------------
    def update_daily_summary(self, day: date | datetime | str | None = None) -> DailyMetrics:
        """Rebuild and upsert the summary row for ``day``."""

        trading_day = normalise_day(day)
        with self._transaction(f"update daily summary for {trading_day}") as cur:
            cur.execute(
                "SELECT COALESCE(pnl_net, pnl, 0) AS pnl FROM trades "
                "WHERE closed_at IS NOT NULL AND closed_at::date = %s "
                "AND COALESCE(exit_reason, '') <> %s "
                "ORDER BY closed_at ASC, id ASC",
                (trading_day, EXIT_MANUAL),
            )
            pnls = [_float(row["pnl"]) for row in cur.fetchall()]
            metrics = compute_daily_metrics(trading_day, pnls)
            cur.execute(
                _UPSERT_DAILY_SUMMARY,
                (
                    metrics.day,
                    metrics.trades,
                    metrics.wins,
                    metrics.losses,
                    metrics.net_pnl,
                    metrics.gross_profit,
                    metrics.gross_loss,
                    metrics.profit_factor,
                    metrics.win_rate,
                    metrics.max_drawdown,
                    metrics.avg_win,
                    metrics.avg_loss,
                ),
            )
        return metrics

    def get_daily_summary(self, day: date | datetime | str | None = None) -> Optional[Dict[str, Any]]:
        return self._fetchone(
            "SELECT * FROM daily_summary WHERE day = %s",
            (normalise_day(day),),
            "load daily summary",
        )

    def get_recent_summaries(self, days: int = 7) -> List[Dict[str, Any]]:
        limit = max(1, int(days or 7))
        return self._fetchall(
            "SELECT * FROM daily_summary ORDER BY day DESC LIMIT %s",
            (limit,),
            "load recent summaries",
        )

    # ------------------------------------------------------------------
    # AI weights
    # ------------------------------------------------------------------
    def get_latest_weights(self) -> Optional[Dict[str, Any]]:
        return self._fetchone(
            "SELECT * FROM ai_weights ORDER BY updated_at DESC, id DESC LIMIT 1",
            (),
            "load latest weights",
        )

    def insert_weights(
        self,
        weights: Mapping[str, float],
        runtime_config: Optional[Mapping[str, Any]] = None,
        performance_snapshot: Optional[Mapping[str, Any]] = None,
        at: Optional[datetime] = None,
    ) -> int:
        config = runtime_config or {}
        values = (
            weights["w_rsi"],
            weights["w_ema"],
            weights["w_atr"],
            weights["w_vol"],
            config.get("rsi_oversold"),
            config.get("rsi_overbought"),
            config.get("atr_low_pct"),
            config.get("atr_high_pct"),
            Json(dict(performance_snapshot)) if performance_snapshot else None,
            at or datetime.now(),
        )
        with self._transaction("insert weights") as cur:
            cur.execute(_INSERT_WEIGHTS, values)
            weights_id = int(cur.fetchone()["id"])
        logger.info("AI weights stored (id=%d)", weights_id)
        return weights_id


__all__ = ["POOL_MAX_CONNECTIONS", "SCHEMA_STATEMENTS", "StorageError", "TradeStore"]
