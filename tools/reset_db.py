"""Delete the SQLite database (with -wal/-shm siblings) and re-create an empty schema."""

from __future__ import annotations

import argparse
import os
import sys

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import config  # noqa: E402
from database.db import Store  # noqa: E402


def reset_database(db_path: str) -> list[str]:
    removed: list[str] = []
    for path in (db_path, f"{db_path}-wal", f"{db_path}-shm"):
        if os.path.exists(path):
            os.remove(path)
            removed.append(path)
    store = Store(f"sqlite:///{db_path}")
    try:
        store.init_db()
    finally:
        store.close()
    return removed


def main() -> int:
    parser = argparse.ArgumentParser(description="Reset the autotrader SQLite database.")
    parser.add_argument("--db", default="", help="SQLite path (default: DB_PATH from env)")
    parser.add_argument("--yes", action="store_true", help="Confirm deletion")
    args = parser.parse_args()

    db_path = os.path.abspath(args.db) if args.db else str(config.DB_PATH)
    if not args.yes:
        print(f"Refusing to reset {db_path} without --yes", file=sys.stderr)
        return 2
    removed = reset_database(db_path)
    for path in removed:
        print(f"removed {path}")
    print(f"DB RESET COMPLETE: {db_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
