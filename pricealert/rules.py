from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field, replace
from typing import Any, Mapping

StateValue = str | int | float | bool | None


@dataclass(frozen=True)
class Destination:
    bot_token: str
    chat_id: str


@dataclass(frozen=True)
class AlertRule:
    """Derived copy of one stored alert, as held by the monitor engine.

    ``last_state`` is evaluator scratch data; nothing outside the evaluator
    interprets its keys.
    """

    id: str
    symbol: str
    condition_type: str
    threshold: float
    poll_interval_sec: int
    cooldown_sec: int = 300
    is_enabled: bool = True
    notify_times: int = 1
    user_id: str | None = None
    last_state: Mapping[str, StateValue] = field(default_factory=dict)
    last_triggered_at: int | None = None
    created_at: int | None = None
    updated_at: int | None = None
    destination: Destination | None = None

    def with_runtime(
        self,
        *,
        last_state: Mapping[str, StateValue],
        last_triggered_at: int | None,
    ) -> AlertRule:
        return replace(self, last_state=dict(last_state), last_triggered_at=last_triggered_at)


def _loads_state(raw: Any) -> dict[str, StateValue]:
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    try:
        payload = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return {}
    return payload if isinstance(payload, dict) else {}


def destination_from_row(row: sqlite3.Row) -> Destination | None:
    keys = set(row.keys())
    if "telegram_bot_token" not in keys or "telegram_chat_id" not in keys:
        return None
    token = str(row["telegram_bot_token"] or "").strip()
    chat_id = str(row["telegram_chat_id"] or "").strip()
    if not token or not chat_id:
        return None
    return Destination(bot_token=token, chat_id=chat_id)


def rule_from_row(row: sqlite3.Row) -> AlertRule:
    last_triggered_at = row["last_triggered_at"]
    return AlertRule(
        id=str(row["id"]),
        user_id=row["user_id"],
        symbol=str(row["symbol"]),
        condition_type=str(row["condition_type"]),
        threshold=float(row["threshold"]),
        poll_interval_sec=int(row["poll_interval_sec"]),
        cooldown_sec=int(row["cooldown_sec"]),
        is_enabled=bool(row["is_enabled"]),
        notify_times=int(row["notify_times"] or 1),
        last_state=_loads_state(row["last_state"]),
        last_triggered_at=None if last_triggered_at is None else int(last_triggered_at),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        destination=destination_from_row(row),
    )


@dataclass(frozen=True)
class NewAlertEvent:
    alert_id: str
    event_type: str
    reason: str
    price: float | None
    threshold: float | None
    triggered_at: int
    user_id: str | None = None
    symbol: str | None = None
    notify_status: str = "queued"
