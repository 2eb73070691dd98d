from __future__ import annotations

from pathlib import Path

import pytest

from pricealert.config import DEFAULT_RETRY_DELAYS_SECONDS, clear_app_config_cache, load_app_config
from pricealert.db import resolve_db_path
from pricealert.runtime_paths import resolve_data_dir, resolve_log_path


def _write_toml(path: Path, content: str) -> None:
    path.write_text(content.strip() + "\n", encoding="utf-8")


@pytest.fixture(autouse=True)
def _reset_config_cache(monkeypatch: pytest.MonkeyPatch):
    for name in ("PRICEALERT_DATA_DIR", "PRICEALERT_DB_PATH", "PRICEALERT_LOG_PATH"):
        monkeypatch.delenv(name, raising=False)
    clear_app_config_cache()
    yield
    clear_app_config_cache()


def test_load_app_config_from_conf_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    conf_path = tmp_path / "app.toml"
    _write_toml(
        conf_path,
        """
        [monitor]
        enabled = false
        tick_interval_ms = 250
        repeat_spacing_seconds = 2.5

        [delivery]
        max_attempts = 5
        retry_delays_seconds = [2, 4]
        min_send_spacing_ms = 100
        display_timezone = "UTC"

        [providers]
        price_source = "FIXTURE"
        message_sink = "log"

        [binance]
        base_url = "https://binance.example/api/v3/"

        [limits]
        min_poll_sec = 5
        max_poll_sec = 600
        default_cooldown_sec = 60

        [fixture_prices]
        btcusdt = 50000
        ethusdt = "3000.5"
        bad = "nope"
        """,
    )
    monkeypatch.setenv("PRICEALERT_APP_CONFIG", str(conf_path))

    cfg = load_app_config()

    assert cfg.monitor.enabled is False
    assert cfg.monitor.tick_interval_ms == 250
    assert cfg.monitor.repeat_spacing_seconds == 2.5
    assert cfg.delivery.max_attempts == 5
    assert cfg.delivery.retry_delays_seconds == (2.0, 4.0)
    assert cfg.delivery.min_send_spacing_ms == 100
    assert cfg.delivery.display_timezone == "UTC"
    assert cfg.providers.price_source == "fixture"
    assert cfg.providers.message_sink == "log"
    assert cfg.binance.base_url == "https://binance.example/api/v3"
    assert cfg.limits.min_poll_sec == 5
    assert cfg.limits.max_poll_sec == 600
    assert cfg.limits.default_cooldown_sec == 60
    assert cfg.fixture_prices == {"BTCUSDT": 50000.0, "ETHUSDT": 3000.5}


def test_missing_config_uses_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PRICEALERT_APP_CONFIG", str(tmp_path / "absent.toml"))

    cfg = load_app_config()

    assert cfg.monitor.enabled is True
    assert cfg.monitor.tick_interval_ms == 200
    assert cfg.monitor.repeat_spacing_seconds == 3.0
    assert cfg.delivery.max_attempts == 3
    assert cfg.delivery.retry_delays_seconds == DEFAULT_RETRY_DELAYS_SECONDS
    assert cfg.delivery.min_send_spacing_ms == 500
    assert cfg.providers.price_source == "binance"
    assert cfg.providers.message_sink == "telegram"
    assert cfg.limits.min_poll_sec == 1
    assert cfg.limits.max_poll_sec == 3600
    assert cfg.limits.max_notify_times == 10


def test_invalid_values_fall_back_or_clamp(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    conf_path = tmp_path / "app.toml"
    _write_toml(
        conf_path,
        """
        [monitor]
        tick_interval_ms = "fast"

        [delivery]
        max_attempts = 0
        retry_delays_seconds = ["x"]

        [providers]
        price_source = "coinbase"
        """,
    )
    monkeypatch.setenv("PRICEALERT_APP_CONFIG", str(conf_path))

    cfg = load_app_config()

    assert cfg.monitor.tick_interval_ms == 200
    assert cfg.delivery.max_attempts == 1
    assert cfg.delivery.retry_delays_seconds == DEFAULT_RETRY_DELAYS_SECONDS
    assert cfg.providers.price_source == "binance"


def test_invalid_toml_raises(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    conf_path = tmp_path / "app.toml"
    conf_path.write_text("[monitor\nenabled = true\n", encoding="utf-8")
    monkeypatch.setenv("PRICEALERT_APP_CONFIG", str(conf_path))

    with pytest.raises(RuntimeError, match="invalid app config TOML"):
        load_app_config()


def test_runtime_paths_resolve_from_config_then_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    conf_path = tmp_path / "app.toml"
    _write_toml(
        conf_path,
        f"""
        [runtime]
        data_dir = "{(tmp_path / 'from_conf').as_posix()}"
        """,
    )
    monkeypatch.setenv("PRICEALERT_APP_CONFIG", str(conf_path))

    assert resolve_data_dir() == tmp_path / "from_conf"
    assert resolve_db_path() == tmp_path / "from_conf" / "pricealert.sqlite3"
    assert resolve_log_path() == tmp_path / "from_conf" / "logs" / "pricealert.log"

    monkeypatch.setenv("PRICEALERT_DATA_DIR", str(tmp_path / "from_env"))
    monkeypatch.setenv("PRICEALERT_DB_PATH", str(tmp_path / "explicit.sqlite3"))

    assert resolve_data_dir() == tmp_path / "from_env"
    assert resolve_db_path() == tmp_path / "explicit.sqlite3"
