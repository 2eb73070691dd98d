from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pricealert.db import fail_interrupted_events, init_db


def main() -> None:
    parser = argparse.ArgumentParser(description="Initialize pricealert SQLite schema")
    parser.add_argument(
        "--db-path",
        default=None,
        help="SQLite file path (defaults to PRICEALERT_DB_PATH or data/pricealert.sqlite3)",
    )
    parser.add_argument(
        "--fail-queued",
        action="store_true",
        help="Mark events still queued from a previous run as failed",
    )
    args = parser.parse_args()

    db_path = init_db(db_path=args.db_path)
    print(f"[OK] Initialized database schema at: {db_path}")
    if args.fail_queued:
        count = fail_interrupted_events(db_path)
        print(f"[OK] Marked {count} queued events as failed")


if __name__ == "__main__":
    main()
