from __future__ import annotations

from pathlib import Path

import pytest
from fastapi import HTTPException

from pricealert.config import clear_app_config_cache
from pricealert.models import AlertCreateIn, AlertPatchIn, UserCreateIn, UserTelegramIn
from pricealert.rules import Destination, NewAlertEvent
from pricealert.store import SQLiteStore


@pytest.fixture
def store(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> SQLiteStore:
    monkeypatch.setenv("PRICEALERT_APP_CONFIG", str(tmp_path / "absent.toml"))
    monkeypatch.setenv("PRICEALERT_DATA_DIR", str(tmp_path / "data"))
    clear_app_config_cache()
    yield SQLiteStore(tmp_path / "store.sqlite3")
    clear_app_config_cache()


def _alert(store: SQLiteStore, **overrides):
    payload = {
        "symbol": "btc-usdt",
        "condition_type": "price_gte",
        "threshold": 100,
        "poll_interval_sec": 5,
    }
    payload.update(overrides)
    return store.create_alert(AlertCreateIn(**payload))


def test_create_alert_normalizes_and_applies_defaults(store: SQLiteStore) -> None:
    alert = _alert(store)

    assert alert.symbol == "BTCUSDT"
    assert alert.cooldown_sec == 300
    assert alert.notify_times == 1
    assert alert.is_enabled is True
    assert alert.last_state == {}
    assert store.get_alert(alert.id) == alert


def test_create_alert_rejects_unknown_user(store: SQLiteStore) -> None:
    with pytest.raises(HTTPException) as exc_info:
        _alert(store, user_id="nobody")

    assert exc_info.value.status_code == 422


def test_list_enabled_rules_joins_owner_destination(store: SQLiteStore) -> None:
    user = store.create_user(UserCreateIn(username="alice", telegram_bot_token="tok", telegram_chat_id="42"))
    owned = _alert(store, user_id=user.id)
    _alert(store, is_enabled=False)
    anonymous = _alert(store, symbol="ETHUSDT")

    rules = {rule.id: rule for rule in store.list_enabled_rules()}

    assert set(rules) == {owned.id, anonymous.id}
    assert rules[owned.id].destination == Destination(bot_token="tok", chat_id="42")
    assert rules[owned.id].user_id == user.id
    assert rules[anonymous.id].destination is None


def test_update_rule_persists_runtime_fields(store: SQLiteStore) -> None:
    alert = _alert(store, condition_type="cross_up")

    store.update_rule(alert.id, {"last_state": {"was_above": True}, "last_triggered_at": 1234})

    rule = store.get_rule(alert.id)
    assert rule.last_state == {"was_above": True}
    assert rule.last_triggered_at == 1234


def test_update_rule_rejects_non_runtime_columns(store: SQLiteStore) -> None:
    alert = _alert(store)

    with pytest.raises(ValueError):
        store.update_rule(alert.id, {"threshold": 1})


def test_patch_alert_resets_state_when_condition_changes(store: SQLiteStore) -> None:
    alert = _alert(store, condition_type="cross_up")
    store.update_rule(alert.id, {"last_state": {"was_above": True}})

    cooled = store.patch_alert(alert.id, AlertPatchIn(cooldown_sec=10))
    assert cooled.cooldown_sec == 10
    assert cooled.last_state == {"was_above": True}

    moved = store.patch_alert(alert.id, AlertPatchIn(threshold=200))
    assert moved.threshold == 200
    assert moved.last_state == {}


def test_patch_and_delete_missing_alert_raise_404(store: SQLiteStore) -> None:
    with pytest.raises(HTTPException) as patch_exc:
        store.patch_alert("missing", AlertPatchIn(is_enabled=False))
    with pytest.raises(HTTPException) as delete_exc:
        store.delete_alert("missing")

    assert patch_exc.value.status_code == 404
    assert delete_exc.value.status_code == 404


def test_delete_alert_returns_removed_rule(store: SQLiteStore) -> None:
    alert = _alert(store)

    rule = store.delete_alert(alert.id)

    assert rule.id == alert.id
    assert store.list_alerts() == []


def test_duplicate_username_is_conflict(store: SQLiteStore) -> None:
    store.create_user(UserCreateIn(username="bob"))

    with pytest.raises(HTTPException) as exc_info:
        store.create_user(UserCreateIn(username="bob"))

    assert exc_info.value.status_code == 409


def test_update_user_telegram_changes_rule_destination(store: SQLiteStore) -> None:
    user = store.create_user(UserCreateIn(username="carol"))
    alert = _alert(store, user_id=user.id)
    assert store.get_rule(alert.id).destination is None

    updated = store.update_user_telegram(
        user.id,
        UserTelegramIn(telegram_bot_token="tok", telegram_chat_id="99"),
    )

    assert updated.telegram_configured is True
    assert [rule.destination for rule in store.list_rules_for_user(user.id)] == [
        Destination(bot_token="tok", chat_id="99")
    ]


def test_events_lifecycle_and_filters(store: SQLiteStore) -> None:
    btc = _alert(store)
    eth = _alert(store, symbol="ETHUSDT")
    first = store.create_event(
        NewAlertEvent(
            alert_id=btc.id,
            event_type="trigger",
            reason="price_gte: 101 >= 100 (x1)",
            price=101.0,
            threshold=100.0,
            triggered_at=1000,
        )
    )
    second = store.create_event(
        NewAlertEvent(
            alert_id=eth.id,
            event_type="test",
            reason="test notification",
            price=None,
            threshold=100.0,
            triggered_at=2000,
        )
    )

    store.update_event_status(first, "failed", "chat not found")

    event = store.get_event(first)
    assert event.notify_status == "failed"
    assert event.error_message == "chat not found"
    assert event.symbol == "BTCUSDT"
    assert [e.id for e in store.list_events()] == [second, first]
    assert [e.id for e in store.list_events(symbol="ethusdt")] == [second]
    assert [e.id for e in store.list_events(limit=1)] == [second]

    with pytest.raises(ValueError):
        store.update_event_status(first, "delivered")


def test_event_symbol_survives_alert_deletion(store: SQLiteStore) -> None:
    alert = _alert(store, symbol="SOLUSDT")
    event_id = store.create_event(
        NewAlertEvent(
            alert_id=alert.id,
            symbol=alert.symbol,
            event_type="trigger",
            reason="price_gte: 101 >= 100 (x1)",
            price=101.0,
            threshold=100.0,
            triggered_at=1000,
        )
    )

    store.delete_alert(alert.id)

    assert store.get_event(event_id).symbol == "SOLUSDT"
    assert [e.id for e in store.list_events(symbol="SOLUSDT")] == [event_id]


def test_clear_user_telegram_removes_destination(store: SQLiteStore) -> None:
    user = store.create_user(UserCreateIn(username="dana", telegram_bot_token="tok", telegram_chat_id="7"))
    alert = _alert(store, user_id=user.id)
    assert store.get_user_destination(user.id) == Destination(bot_token="tok", chat_id="7")

    cleared = store.clear_user_telegram(user.id)

    assert cleared.telegram_configured is False
    assert cleared.telegram_chat_id is None
    assert store.get_user_destination(user.id) is None
    assert store.get_rule(alert.id).destination is None
    with pytest.raises(HTTPException) as exc_info:
        store.clear_user_telegram("missing")
    assert exc_info.value.status_code == 404
