from __future__ import annotations

import json
import logging
import sqlite3
import time
from pathlib import Path
from threading import Lock
from typing import Any, Mapping
from uuid import uuid4

from fastapi import HTTPException

from .db import get_connection, init_db, resolve_db_path
from .models import (
    AlertCreateIn,
    AlertEventOut,
    AlertOut,
    AlertPatchIn,
    UserCreateIn,
    UserOut,
    UserTelegramIn,
)
from .rules import AlertRule, Destination, NewAlertEvent, destination_from_row, rule_from_row

_LOGGER = logging.getLogger("pricealert.store")

RUNTIME_COLUMNS: frozenset[str] = frozenset({"last_state", "last_triggered_at"})
# Changing what a rule watches invalidates evaluator state.
STATE_RESET_FIELDS: frozenset[str] = frozenset({"symbol", "condition_type", "threshold"})
NOTIFY_STATUSES: frozenset[str] = frozenset({"queued", "success", "failed"})
MAX_EVENT_LIMIT = 500

_RULE_SELECT = """
    SELECT a.*, u.telegram_bot_token, u.telegram_chat_id
    FROM alerts a
    LEFT JOIN users u ON u.id = a.user_id
"""

# Events keep their own symbol so they still list after the alert is deleted.
_EVENT_COLUMNS = (
    "e.id, e.user_id, e.alert_id, COALESCE(e.symbol, a.symbol) AS symbol, e.event_type, e.reason, "
    "e.price, e.threshold, e.notify_status, e.error_message, e.triggered_at"
)


def now_ts() -> int:
    return int(time.time())


def dumps_json(value: object) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _loads_json_dict(value: str | None) -> dict[str, Any]:
    if not value:
        return {}
    try:
        payload = json.loads(value)
    except json.JSONDecodeError:
        _LOGGER.warning("discarding malformed last_state json")
        return {}
    return payload if isinstance(payload, dict) else {}


def _normalize_optional_text(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def _user_out(row: sqlite3.Row) -> UserOut:
    return UserOut(
        id=row["id"],
        username=row["username"],
        telegram_configured=bool(row["telegram_bot_token"] and row["telegram_chat_id"]),
        telegram_chat_id=row["telegram_chat_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _alert_out(row: sqlite3.Row) -> AlertOut:
    return AlertOut(
        id=row["id"],
        user_id=row["user_id"],
        symbol=row["symbol"],
        condition_type=row["condition_type"],
        threshold=float(row["threshold"]),
        poll_interval_sec=int(row["poll_interval_sec"]),
        cooldown_sec=int(row["cooldown_sec"]),
        is_enabled=bool(row["is_enabled"]),
        notify_times=int(row["notify_times"] or 1),
        last_triggered_at=row["last_triggered_at"],
        last_state=_loads_json_dict(row["last_state"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _event_out(row: sqlite3.Row) -> AlertEventOut:
    return AlertEventOut(
        id=int(row["id"]),
        user_id=row["user_id"],
        alert_id=row["alert_id"],
        symbol=row["symbol"],
        event_type=row["event_type"],
        reason=row["reason"],
        price=row["price"],
        threshold=row["threshold"],
        notify_status=row["notify_status"],
        error_message=row["error_message"],
        triggered_at=int(row["triggered_at"]),
    )


class SQLiteStore:
    def __init__(self, db_path: str | Path | None = None) -> None:
        self._lock = Lock()
        self._db_path = resolve_db_path(db_path)
        init_db(self._db_path)

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _conn(self) -> sqlite3.Connection:
        return get_connection(self._db_path)

    def _get_user_row(self, conn: sqlite3.Connection, user_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            raise HTTPException(status_code=404, detail="user not found")
        return row

    def _get_alert_row(self, conn: sqlite3.Connection, alert_id: str) -> sqlite3.Row:
        row = conn.execute(f"{_RULE_SELECT} WHERE a.id = ?", (alert_id,)).fetchone()
        if row is None:
            raise HTTPException(status_code=404, detail="alert not found")
        return row

    # Rule store interface used by the monitor engine.

    def list_enabled_rules(self) -> list[AlertRule]:
        with self._conn() as conn:
            rows = conn.execute(
                f"{_RULE_SELECT} WHERE a.is_enabled = 1 ORDER BY a.created_at, a.id"
            ).fetchall()
        rules: list[AlertRule] = []
        for row in rows:
            try:
                rules.append(rule_from_row(row))
            except (TypeError, ValueError):
                _LOGGER.exception("skipping unreadable alert row id=%s", row["id"])
        return rules

    def update_rule(self, rule_id: str, changes: Mapping[str, Any]) -> None:
        unknown = set(changes) - RUNTIME_COLUMNS
        if unknown:
            raise ValueError(f"unsupported runtime columns: {sorted(unknown)}")
        if not changes:
            return
        assignments: list[str] = []
        params: list[Any] = []
        for column, value in changes.items():
            assignments.append(f"{column} = ?")
            if column == "last_state":
                params.append(None if value is None else dumps_json(dict(value)))
            else:
                params.append(value)
        params.append(rule_id)
        with self._lock, self._conn() as conn:
            conn.execute(f"UPDATE alerts SET {', '.join(assignments)} WHERE id = ?", params)
            conn.commit()

    def create_event(self, event: NewAlertEvent) -> int:
        with self._lock, self._conn() as conn:
            cursor = conn.execute(
                """
                INSERT INTO alert_events (
                  user_id, alert_id, symbol, event_type, reason, price, threshold, notify_status, triggered_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.user_id,
                    event.alert_id,
                    event.symbol,
                    event.event_type,
                    event.reason,
                    event.price,
                    event.threshold,
                    event.notify_status,
                    event.triggered_at,
                ),
            )
            conn.commit()
            return int(cursor.lastrowid)

    def update_event_status(self, event_id: int, status: str, error: str | None = None) -> None:
        if status not in NOTIFY_STATUSES:
            raise ValueError(f"unsupported notify status: {status}")
        with self._lock, self._conn() as conn:
            conn.execute(
                "UPDATE alert_events SET notify_status = ?, error_message = ? WHERE id = ?",
                (status, error, event_id),
            )
            conn.commit()

    # Users.

    def create_user(self, payload: UserCreateIn) -> UserOut:
        ts = now_ts()
        user_id = str(uuid4())
        with self._lock, self._conn() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO users (id, username, telegram_bot_token, telegram_chat_id, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        payload.username,
                        _normalize_optional_text(payload.telegram_bot_token),
                        _normalize_optional_text(payload.telegram_chat_id),
                        ts,
                        ts,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise HTTPException(status_code=409, detail="username already exists") from exc
            conn.commit()
            return _user_out(self._get_user_row(conn, user_id))

    def list_users(self) -> list[UserOut]:
        with self._conn() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY created_at, username").fetchall()
        return [_user_out(row) for row in rows]

    def get_user(self, user_id: str) -> UserOut:
        with self._conn() as conn:
            return _user_out(self._get_user_row(conn, user_id))

    def update_user_telegram(self, user_id: str, payload: UserTelegramIn) -> UserOut:
        with self._lock, self._conn() as conn:
            self._get_user_row(conn, user_id)
            conn.execute(
                """
                UPDATE users
                SET telegram_bot_token = ?, telegram_chat_id = ?, updated_at = ?
                WHERE id = ?
                """,
                (payload.telegram_bot_token, payload.telegram_chat_id, now_ts(), user_id),
            )
            conn.commit()
            return _user_out(self._get_user_row(conn, user_id))

    def clear_user_telegram(self, user_id: str) -> UserOut:
        with self._lock, self._conn() as conn:
            self._get_user_row(conn, user_id)
            conn.execute(
                """
                UPDATE users
                SET telegram_bot_token = NULL, telegram_chat_id = NULL, updated_at = ?
                WHERE id = ?
                """,
                (now_ts(), user_id),
            )
            conn.commit()
            _LOGGER.info("telegram credentials cleared user_id=%s", user_id)
            return _user_out(self._get_user_row(conn, user_id))

    def get_user_destination(self, user_id: str) -> Destination | None:
        with self._conn() as conn:
            return destination_from_row(self._get_user_row(conn, user_id))

    # Alerts.

    def create_alert(self, payload: AlertCreateIn) -> AlertOut:
        ts = now_ts()
        alert_id = str(uuid4())
        with self._lock, self._conn() as conn:
            if payload.user_id is not None:
                hit = conn.execute("SELECT 1 FROM users WHERE id = ?", (payload.user_id,)).fetchone()
                if hit is None:
                    raise HTTPException(status_code=422, detail="user_id does not exist")
            conn.execute(
                """
                INSERT INTO alerts (
                  id, user_id, symbol, condition_type, threshold, poll_interval_sec, cooldown_sec,
                  is_enabled, notify_times, last_triggered_at, last_state, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, NULL, ?, ?)
                """,
                (
                    alert_id,
                    payload.user_id,
                    payload.symbol,
                    payload.condition_type,
                    payload.threshold,
                    payload.poll_interval_sec,
                    payload.cooldown_sec,
                    1 if payload.is_enabled else 0,
                    payload.notify_times,
                    ts,
                    ts,
                ),
            )
            conn.commit()
            row = self._get_alert_row(conn, alert_id)
        _LOGGER.info(
            "alert created id=%s symbol=%s condition=%s threshold=%s interval=%s",
            alert_id,
            payload.symbol,
            payload.condition_type,
            payload.threshold,
            payload.poll_interval_sec,
        )
        return _alert_out(row)

    def list_alerts(self, *, user_id: str | None = None) -> list[AlertOut]:
        with self._conn() as conn:
            if user_id is None:
                rows = conn.execute(f"{_RULE_SELECT} ORDER BY a.created_at DESC, a.id").fetchall()
            else:
                rows = conn.execute(
                    f"{_RULE_SELECT} WHERE a.user_id = ? ORDER BY a.created_at DESC, a.id",
                    (user_id,),
                ).fetchall()
        return [_alert_out(row) for row in rows]

    def get_alert(self, alert_id: str) -> AlertOut:
        with self._conn() as conn:
            return _alert_out(self._get_alert_row(conn, alert_id))

    def get_rule(self, alert_id: str) -> AlertRule:
        with self._conn() as conn:
            return rule_from_row(self._get_alert_row(conn, alert_id))

    def list_rules_for_user(self, user_id: str) -> list[AlertRule]:
        with self._conn() as conn:
            rows = conn.execute(f"{_RULE_SELECT} WHERE a.user_id = ?", (user_id,)).fetchall()
        return [rule_from_row(row) for row in rows]

    def patch_alert(self, alert_id: str, payload: AlertPatchIn) -> AlertOut:
        changes = payload.model_dump(exclude_unset=True, exclude_none=True)
        with self._lock, self._conn() as conn:
            existing = self._get_alert_row(conn, alert_id)
            if not changes:
                return _alert_out(existing)
            assignments: list[str] = []
            params: list[Any] = []
            for column, value in changes.items():
                assignments.append(f"{column} = ?")
                params.append((1 if value else 0) if column == "is_enabled" else value)
            if any(
                column in STATE_RESET_FIELDS and changes[column] != existing[column]
                for column in changes
            ):
                assignments.append("last_state = NULL")
            assignments.append("updated_at = ?")
            params.append(now_ts())
            params.append(alert_id)
            conn.execute(f"UPDATE alerts SET {', '.join(assignments)} WHERE id = ?", params)
            conn.commit()
            row = self._get_alert_row(conn, alert_id)
        _LOGGER.info("alert updated id=%s fields=%s", alert_id, ",".join(sorted(changes)))
        return _alert_out(row)

    def delete_alert(self, alert_id: str) -> AlertRule:
        with self._lock, self._conn() as conn:
            row = self._get_alert_row(conn, alert_id)
            conn.execute("DELETE FROM alerts WHERE id = ?", (alert_id,))
            conn.commit()
        _LOGGER.info("alert deleted id=%s", alert_id)
        return rule_from_row(row)

    # Events.

    def get_event(self, event_id: int) -> AlertEventOut:
        with self._conn() as conn:
            row = conn.execute(
                f"""
                SELECT {_EVENT_COLUMNS}
                FROM alert_events e
                LEFT JOIN alerts a ON a.id = e.alert_id
                WHERE e.id = ?
                """,
                (event_id,),
            ).fetchone()
        if row is None:
            raise HTTPException(status_code=404, detail="event not found")
        return _event_out(row)

    def list_events(
        self,
        *,
        limit: int = 50,
        symbol: str | None = None,
        user_id: str | None = None,
    ) -> list[AlertEventOut]:
        clauses: list[str] = []
        params: list[Any] = []
        if symbol:
            clauses.append("COALESCE(e.symbol, a.symbol) = ?")
            params.append(symbol.strip().upper())
        if user_id:
            clauses.append("e.user_id = ?")
            params.append(user_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, min(int(limit), MAX_EVENT_LIMIT)))
        with self._conn() as conn:
            rows = conn.execute(
                f"""
                SELECT {_EVENT_COLUMNS}
                FROM alert_events e
                LEFT JOIN alerts a ON a.id = e.alert_id
                {where}
                ORDER BY e.triggered_at DESC, e.id DESC
                LIMIT ?
                """,
                params,
            ).fetchall()
        return [_event_out(row) for row in rows]
