#!/usr/bin/env python3
"""Send one message through the configured message sink."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from pricealert.notifier import NotificationError, build_message_sink_from_config
from pricealert.rules import Destination


async def _send(destination: Destination, message: str) -> None:
    sink = build_message_sink_from_config()
    try:
        await sink.send(destination, message)
    finally:
        await sink.aclose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Send a Telegram test message")
    parser.add_argument("--bot-token", required=True)
    parser.add_argument("--chat-id", required=True)
    parser.add_argument("--message", default="✅ <b>pricealert</b> test message")
    args = parser.parse_args()

    try:
        asyncio.run(_send(Destination(bot_token=args.bot_token, chat_id=args.chat_id), args.message))
    except NotificationError as exc:
        print(f"[FAIL] {exc}")
        raise SystemExit(1) from exc
    print("[OK] Message sent")


if __name__ == "__main__":
    main()
