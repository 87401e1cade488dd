"""Print open-position performance and recent trades from the autotrader database."""

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import config  # noqa: E402
from database.db import Store  # noqa: E402


def build_snapshot(store: Store, trade_limit: int = 8) -> dict[str, Any]:
    open_rows: list[dict[str, Any]] = []
    for position in store.list_active_positions():
        meta = position.metadata or {}
        open_rows.append(
            {
                "id": position.id,
                "mint": position.token_mint,
                "entry_sol": float(position.entry_notional_sol),
                "current_value_sol": float(meta.get("current_value_sol", 0.0) or 0.0),
                "pnl_pct": float(meta.get("pnl_pct", 0.0) or 0.0),
            }
        )
    entry_sol = sum(row["entry_sol"] for row in open_rows)
    current_sol = sum(row["current_value_sol"] for row in open_rows)
    unrealized_sol = current_sol - entry_sol
    return {
        "open_positions": len(open_rows),
        "entry_sol": entry_sol,
        "current_sol": current_sol,
        "unrealized_sol": unrealized_sol,
        "unrealized_pct": (unrealized_sol / entry_sol * 100.0) if entry_sol > 0 else 0.0,
        "positions": open_rows,
        "recent_trades": store.recent_trades(limit=trade_limit),
    }


def render_text(snapshot: dict[str, Any], db_label: str) -> list[str]:
    lines = [
        "===== PERFORMANCE SNAPSHOT =====",
        f"DB: {db_label}",
        f"OPEN_POSITIONS: {snapshot['open_positions']}",
        f"ENTRY_SOL: {snapshot['entry_sol']:.6f}",
        f"CURRENT_SOL: {snapshot['current_sol']:.6f}",
        f"UNREALIZED_SOL: {snapshot['unrealized_sol']:.6f} ({snapshot['unrealized_pct']:.2f}%)",
        "----- OPEN POSITIONS -----",
    ]
    for row in snapshot["positions"]:
        lines.append(
            f"#{row['id']} {row['mint']} | ENTRY={row['entry_sol']:.6f} SOL"
            f" | NOW={row['current_value_sol']:.6f} SOL | PNL={row['pnl_pct']:.2f}%"
        )
    lines.append("----- RECENT TRADES -----")
    for trade in snapshot["recent_trades"]:
        lines.append(
            f"{trade['ts']} {trade['side']} {trade['output_mint']} IN={trade['in_amount']}"
            f" OUT={trade['out_amount'] or 'n/a'} {trade['status']}"
        )
    return lines


def main() -> int:
    parser = argparse.ArgumentParser(description="Print autotrader performance snapshot.")
    parser.add_argument("--db", default="", help="SQLite path (default: DB_PATH from env)")
    parser.add_argument("--json", action="store_true", help="Emit JSON instead of text")
    args = parser.parse_args()

    db_path = os.path.abspath(args.db) if args.db else str(config.DB_PATH)
    if not os.path.exists(db_path):
        print(f"DB not found: {db_path}", file=sys.stderr)
        return 1
    store = Store(f"sqlite:///{db_path}")
    try:
        snapshot = build_snapshot(store)
    finally:
        store.close()

    if args.json:
        print(json.dumps(snapshot, ensure_ascii=False, indent=2))
    else:
        print("\n".join(render_text(snapshot, db_path)))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
