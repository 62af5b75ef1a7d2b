#!/usr/bin/env python3
"""Backfill wallet balance columns on historical closed trades.

Walks the closed trades in chronological order from a known starting quote
balance and writes ``balance_before``, ``balance_after`` and
``net_balance_change`` for every row still missing them.  Rows that already
carry a balance reset the running balance to their recorded value.
"""

from __future__ import annotations

import argparse
import os
import sys
from typing import Any, Dict, Iterable, List, Sequence, Tuple

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import pandas as pd  # noqa: E402

from config import load_trading_settings  # noqa: E402
from log_utils import setup_logger  # noqa: E402
from trade_storage import TradeStore  # noqa: E402

logger = setup_logger("backfill_trade_balances")


def _pnl(row: Dict[str, Any]) -> float:
    value = row.get("pnl_net")
    if value is None:
        value = row.get("pnl")
    return float(value or 0.0)


def plan_backfill(
    trades: Iterable[Dict[str, Any]],
    starting_balance: float,
) -> List[Tuple[int, float, float, float]]:
    """Return ``(trade_id, before, after, change)`` for rows missing balances."""

    running = float(starting_balance)
    updates: List[Tuple[int, float, float, float]] = []
    for row in trades:
        if row.get("balance_after") is not None:
            running = float(row["balance_after"])
            continue
        change = _pnl(row)
        before = running
        running = before + change
        updates.append((int(row["id"]), before, running, change))
    return updates


def main(cli_args: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Backfill balance columns on closed trades.")
    parser.add_argument("--starting-balance", type=float, required=True, help="Quote balance before the first trade")
    parser.add_argument("--since", help="Only trades closed on or after this date (YYYY-MM-DD)")
    parser.add_argument("--dry-run", action="store_true", help="Print the plan without writing")
    args = parser.parse_args(cli_args)

    since = pd.to_datetime(args.since).to_pydatetime() if args.since else None
    store = TradeStore.from_settings(load_trading_settings())
    try:
        updates = plan_backfill(store.get_closed_trades(since), args.starting_balance)
        for trade_id, before, after, change in updates:
            if args.dry_run:
                print(f"trade {trade_id}: {before:.2f} -> {after:.2f} ({change:+.2f})")
                continue
            store.update_trade_balances(trade_id, before, after, change)
        logger.info("%s %d trades", "Planned" if args.dry_run else "Backfilled", len(updates))
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
