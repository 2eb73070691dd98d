from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Protocol

import httpx

from .config import AppConfig, load_app_config
from .logging_config import configure_price_source_logging


class PriceSourceError(RuntimeError):
    pass


@dataclass(frozen=True)
class SpotPrice:
    price: float
    as_of: int


class SpotPriceProvider(Protocol):
    async def get_spot_price(self, symbol: str) -> SpotPrice:
        ...

    async def aclose(self) -> None:
        ...


def _normalize_symbol(symbol: str) -> str:
    normalized = str(symbol or "").strip().upper()
    if not normalized:
        raise PriceSourceError("symbol cannot be empty")
    return normalized


class BinanceSpotPriceProvider:
    def __init__(
        self,
        *,
        base_url: str = "https://api.binance.com/api/v3",
        cache_ttl_seconds: float = 1.0,
        timeout_seconds: float = 5.0,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        configure_price_source_logging()
        self._logger = logging.getLogger("pricealert.price_source")
        self._base_url = base_url.rstrip("/")
        self._cache_ttl_seconds = max(0.0, float(cache_ttl_seconds))
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = client is None
        self._clock = clock or time.time
        self._cache: dict[str, tuple[SpotPrice, float]] = {}

    async def get_spot_price(self, symbol: str) -> SpotPrice:
        key = _normalize_symbol(symbol)
        now = self._clock()
        cached = self._cache.get(key)
        if cached is not None and now < cached[1]:
            return cached[0]

        try:
            response = await self._client.get(f"{self._base_url}/ticker/price", params={"symbol": key})
            response.raise_for_status()
            payload = response.json()
            price = float(payload["price"])
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as exc:
            if cached is not None:
                self._logger.warning(
                    "price fetch failed symbol=%s; serving stale price=%s as_of=%s error=%s",
                    key,
                    cached[0].price,
                    cached[0].as_of,
                    exc,
                )
                return cached[0]
            raise PriceSourceError(f"failed to fetch price for {key}: {exc}") from exc

        result = SpotPrice(price=price, as_of=int(now))
        self._cache[key] = (result, now + self._cache_ttl_seconds)
        return result

    async def validate_symbol(self, symbol: str) -> bool:
        key = _normalize_symbol(symbol)
        try:
            response = await self._client.get(f"{self._base_url}/exchangeInfo", params={"symbol": key})
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            self._logger.warning("symbol validation failed symbol=%s error=%s", key, exc)
            return False
        symbols = payload.get("symbols") if isinstance(payload, dict) else None
        if not isinstance(symbols, list):
            return False
        return any(
            isinstance(item, dict) and item.get("symbol") == key and item.get("status") == "TRADING"
            for item in symbols
        )

    def clear_cache(self) -> None:
        self._cache.clear()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class FixtureSpotPriceProvider:
    def __init__(
        self,
        prices: Mapping[str, float] | None = None,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._prices = {str(k).upper(): float(v) for k, v in (prices or {}).items()}
        self._clock = clock or time.time

    def set_price(self, symbol: str, price: float) -> None:
        self._prices[_normalize_symbol(symbol)] = float(price)

    async def get_spot_price(self, symbol: str) -> SpotPrice:
        key = _normalize_symbol(symbol)
        price = self._prices.get(key)
        if price is None:
            raise PriceSourceError(f"no fixture price for {key}")
        return SpotPrice(price=price, as_of=int(self._clock()))

    async def validate_symbol(self, symbol: str) -> bool:
        return _normalize_symbol(symbol) in self._prices

    async def aclose(self) -> None:
        return None


def build_price_provider_from_config(config: AppConfig | None = None) -> SpotPriceProvider:
    cfg = config or load_app_config()
    if cfg.providers.price_source == "fixture":
        return FixtureSpotPriceProvider(cfg.fixture_prices)
    return BinanceSpotPriceProvider(
        base_url=cfg.binance.base_url,
        cache_ttl_seconds=cfg.binance.cache_ttl_seconds,
        timeout_seconds=cfg.binance.timeout_seconds,
    )
