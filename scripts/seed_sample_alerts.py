from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pricealert.models import AlertCreateIn, UserCreateIn
from pricealert.store import SQLiteStore

SAMPLE_ALERTS: tuple[dict[str, object], ...] = (
    {"symbol": "BTCUSDT", "condition_type": "cross_up", "threshold": 70000, "poll_interval_sec": 5},
    {"symbol": "BTCUSDT", "condition_type": "cross_down", "threshold": 60000, "poll_interval_sec": 5},
    {"symbol": "ETHUSDT", "condition_type": "price_gte", "threshold": 4000, "poll_interval_sec": 10},
    {
        "symbol": "ETHUSDT",
        "condition_type": "pct_change_down",
        "threshold": 2,
        "poll_interval_sec": 60,
        "notify_times": 3,
    },
)


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed sample alerts for local testing")
    parser.add_argument("--db-path", default=None, help="SQLite file path")
    parser.add_argument("--username", default="demo")
    parser.add_argument("--bot-token", default=None)
    parser.add_argument("--chat-id", default=None)
    args = parser.parse_args()

    store = SQLiteStore(args.db_path)
    existing = {user.username: user for user in store.list_users()}
    user = existing.get(args.username)
    if user is None:
        user = store.create_user(
            UserCreateIn(
                username=args.username,
                telegram_bot_token=args.bot_token,
                telegram_chat_id=args.chat_id,
            )
        )
    for sample in SAMPLE_ALERTS:
        alert = store.create_alert(AlertCreateIn(user_id=user.id, **sample))
        print(f"[OK] {alert.id} {alert.symbol} {alert.condition_type} {alert.threshold}")
    print(f"[OK] Seeded {len(SAMPLE_ALERTS)} alerts for user {user.username} in {store.db_path}")


if __name__ == "__main__":
    main()
