#!/usr/bin/env python3
"""Fetch the current spot price for one or more symbols."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from pricealert.models import normalize_symbol
from pricealert.price_source import (
    BinanceSpotPriceProvider,
    PriceSourceError,
    build_price_provider_from_config,
)


async def _run(symbols: list[str], validate: bool) -> int:
    provider = build_price_provider_from_config()
    exit_code = 0
    try:
        for raw in symbols:
            try:
                symbol = normalize_symbol(raw)
            except ValueError as exc:
                print(json.dumps({"symbol": raw, "error": str(exc)}))
                exit_code = 1
                continue
            payload: dict[str, object] = {"symbol": symbol}
            if validate and isinstance(provider, BinanceSpotPriceProvider):
                payload["tradable"] = await provider.validate_symbol(symbol)
            try:
                spot = await provider.get_spot_price(symbol)
            except PriceSourceError as exc:
                payload["error"] = str(exc)
                exit_code = 1
            else:
                payload["price"] = spot.price
                payload["as_of"] = spot.as_of
            print(json.dumps(payload, ensure_ascii=False))
    finally:
        await provider.aclose()
    return exit_code


def main() -> None:
    parser = argparse.ArgumentParser(description="Check spot prices via the configured price source")
    parser.add_argument("symbols", nargs="+", help="Symbols such as BTCUSDT ETHUSDT")
    parser.add_argument("--validate", action="store_true", help="Also check the symbol is trading")
    args = parser.parse_args()
    raise SystemExit(asyncio.run(_run(args.symbols, args.validate)))


if __name__ == "__main__":
    main()
