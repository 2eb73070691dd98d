from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any


PROJECT_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_APP_CONFIG_PATH = PROJECT_ROOT / "conf" / "app.toml"
SUPPORTED_CONDITION_TYPES: tuple[str, ...] = (
    "cross_up",
    "cross_down",
    "price_gte",
    "price_lte",
    "pct_change_up",
    "pct_change_down",
)
DEFAULT_RETRY_DELAYS_SECONDS: tuple[float, ...] = (1.0, 3.0, 10.0)


@dataclass(frozen=True)
class RuntimeConfig:
    data_dir: str | None
    db_path: str | None
    log_path: str | None
    price_log_path: str | None


@dataclass(frozen=True)
class MonitorConfig:
    enabled: bool
    tick_interval_ms: int
    repeat_spacing_seconds: float


@dataclass(frozen=True)
class DeliveryConfig:
    max_attempts: int
    retry_delays_seconds: tuple[float, ...]
    min_send_spacing_ms: int
    send_timeout_seconds: float
    display_timezone: str


@dataclass(frozen=True)
class ProvidersConfig:
    price_source: str
    message_sink: str


@dataclass(frozen=True)
class BinanceConfig:
    base_url: str
    cache_ttl_seconds: float
    timeout_seconds: float


@dataclass(frozen=True)
class TelegramConfig:
    api_base: str


@dataclass(frozen=True)
class LimitsConfig:
    min_poll_sec: int
    max_poll_sec: int
    default_cooldown_sec: int
    max_notify_times: int


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    monitor: MonitorConfig
    delivery: DeliveryConfig
    providers: ProvidersConfig
    binance: BinanceConfig
    telegram: TelegramConfig
    limits: LimitsConfig
    fixture_prices: dict[str, float]


def resolve_app_config_path() -> Path:
    env_path = os.getenv("PRICEALERT_APP_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_APP_CONFIG_PATH


def clear_app_config_cache() -> None:
    load_app_config.cache_clear()


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_str(value: Any, default: str) -> str:
    if isinstance(value, str):
        normalized = value.strip()
        if normalized:
            return normalized
    return default


def _as_optional_str(value: Any) -> str | None:
    if isinstance(value, str):
        normalized = value.strip()
        if normalized:
            return normalized
    return None


def _as_int(value: Any, default: int, *, minimum: int | None = None, maximum: int | None = None) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        parsed = default
    if minimum is not None:
        parsed = max(parsed, minimum)
    if maximum is not None:
        parsed = min(parsed, maximum)
    return parsed


def _as_float(
    value: Any,
    default: float,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        parsed = default
    if minimum is not None:
        parsed = max(parsed, minimum)
    if maximum is not None:
        parsed = min(parsed, maximum)
    return parsed


def _as_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    return default


def _as_delay_schedule(value: Any, default: tuple[float, ...]) -> tuple[float, ...]:
    if not isinstance(value, list):
        return default
    delays: list[float] = []
    for item in value:
        try:
            parsed = float(item)
        except (TypeError, ValueError):
            return default
        delays.append(min(max(parsed, 0.0), 3600.0))
    return tuple(delays) if delays else default


def _normalize_price_source(value: Any, default: str = "binance") -> str:
    normalized = str(value or "").strip().lower()
    if normalized in {"binance", "fixture"}:
        return normalized
    return default


def _normalize_message_sink(value: Any, default: str = "telegram") -> str:
    normalized = str(value or "").strip().lower()
    if normalized in {"telegram", "log"}:
        return normalized
    return default


def _build_fixture_prices(raw: dict[str, Any]) -> dict[str, float]:
    prices: dict[str, float] = {}
    for symbol, value in raw.items():
        key = str(symbol).strip().upper()
        if not key:
            continue
        try:
            price = float(value)
        except (TypeError, ValueError):
            continue
        if price > 0:
            prices[key] = price
    return prices


@lru_cache(maxsize=1)
def load_app_config() -> AppConfig:
    path = resolve_app_config_path()
    raw: dict[str, Any] = {}
    if path.exists():
        try:
            raw = _as_dict(tomllib.loads(path.read_text(encoding="utf-8")))
        except tomllib.TOMLDecodeError as exc:
            raise RuntimeError(f"invalid app config TOML: {path}: {exc}") from exc

    runtime_raw = _as_dict(raw.get("runtime"))
    monitor_raw = _as_dict(raw.get("monitor"))
    delivery_raw = _as_dict(raw.get("delivery"))
    providers_raw = _as_dict(raw.get("providers"))
    binance_raw = _as_dict(raw.get("binance"))
    telegram_raw = _as_dict(raw.get("telegram"))
    limits_raw = _as_dict(raw.get("limits"))

    runtime = RuntimeConfig(
        data_dir=_as_optional_str(runtime_raw.get("data_dir")),
        db_path=_as_optional_str(runtime_raw.get("db_path")),
        log_path=_as_optional_str(runtime_raw.get("log_path")),
        price_log_path=_as_optional_str(runtime_raw.get("price_log_path")),
    )
    monitor = MonitorConfig(
        enabled=_as_bool(monitor_raw.get("enabled"), True),
        tick_interval_ms=_as_int(monitor_raw.get("tick_interval_ms"), 200, minimum=10, maximum=10000),
        repeat_spacing_seconds=_as_float(
            monitor_raw.get("repeat_spacing_seconds"),
            3.0,
            minimum=0.0,
            maximum=600.0,
        ),
    )
    delivery = DeliveryConfig(
        max_attempts=_as_int(delivery_raw.get("max_attempts"), 3, minimum=1, maximum=20),
        retry_delays_seconds=_as_delay_schedule(
            delivery_raw.get("retry_delays_seconds"),
            DEFAULT_RETRY_DELAYS_SECONDS,
        ),
        min_send_spacing_ms=_as_int(delivery_raw.get("min_send_spacing_ms"), 500, minimum=0, maximum=60000),
        send_timeout_seconds=_as_float(delivery_raw.get("send_timeout_seconds"), 10.0, minimum=0.5),
        display_timezone=_as_str(delivery_raw.get("display_timezone"), "Asia/Shanghai"),
    )
    providers = ProvidersConfig(
        price_source=_normalize_price_source(providers_raw.get("price_source")),
        message_sink=_normalize_message_sink(providers_raw.get("message_sink")),
    )
    binance = BinanceConfig(
        base_url=_as_str(binance_raw.get("base_url"), "https://api.binance.com/api/v3").rstrip("/"),
        cache_ttl_seconds=_as_float(binance_raw.get("cache_ttl_seconds"), 1.0, minimum=0.0, maximum=60.0),
        timeout_seconds=_as_float(binance_raw.get("timeout_seconds"), 5.0, minimum=0.1),
    )
    telegram = TelegramConfig(
        api_base=_as_str(telegram_raw.get("api_base"), "https://api.telegram.org").rstrip("/"),
    )
    min_poll_sec = _as_int(limits_raw.get("min_poll_sec"), 1, minimum=1, maximum=3600)
    limits = LimitsConfig(
        min_poll_sec=min_poll_sec,
        max_poll_sec=_as_int(limits_raw.get("max_poll_sec"), 3600, minimum=min_poll_sec, maximum=3600),
        default_cooldown_sec=_as_int(limits_raw.get("default_cooldown_sec"), 300, minimum=0),
        max_notify_times=_as_int(limits_raw.get("max_notify_times"), 10, minimum=1, maximum=10),
    )

    return AppConfig(
        runtime=runtime,
        monitor=monitor,
        delivery=delivery,
        providers=providers,
        binance=binance,
        telegram=telegram,
        limits=limits,
        fixture_prices=_build_fixture_prices(_as_dict(raw.get("fixture_prices"))),
    )
