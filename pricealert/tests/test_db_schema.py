from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from pricealert.db import fail_interrupted_events, get_connection, init_db


def _insert_alert(conn: sqlite3.Connection, alert_id: str, **overrides) -> None:
    values = {
        "id": alert_id,
        "symbol": "BTCUSDT",
        "condition_type": "price_gte",
        "threshold": 100.0,
        "poll_interval_sec": 5,
        "cooldown_sec": 300,
        "is_enabled": 1,
        "notify_times": 1,
        "last_state": None,
        "created_at": 1000,
        "updated_at": 1000,
    }
    values.update(overrides)
    columns = ", ".join(values)
    placeholders = ", ".join("?" for _ in values)
    conn.execute(f"INSERT INTO alerts ({columns}) VALUES ({placeholders})", tuple(values.values()))


def test_init_db_creates_core_tables(tmp_path: Path) -> None:
    db_path = tmp_path / "pricealert_test.sqlite3"
    init_db(db_path=db_path)

    with get_connection(db_path) as conn:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
        names = {r[0] for r in rows}

    assert {"users", "alerts", "alert_events"}.issubset(names)


def test_init_db_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "pricealert_test.sqlite3"
    init_db(db_path=db_path)
    init_db(db_path=db_path)

    with get_connection(db_path) as conn:
        _insert_alert(conn, "A-1")
        conn.commit()
        count = conn.execute("SELECT COUNT(*) FROM alerts").fetchone()[0]

    assert count == 1


@pytest.mark.parametrize(
    "overrides",
    [
        {"condition_type": "moon_phase"},
        {"threshold": 0},
        {"poll_interval_sec": 0},
        {"poll_interval_sec": 3601},
        {"cooldown_sec": -1},
        {"notify_times": 11},
        {"last_state": "{not json"},
    ],
)
def test_alert_constraints_reject_invalid_rows(tmp_path: Path, overrides: dict) -> None:
    db_path = tmp_path / "pricealert_test.sqlite3"
    init_db(db_path=db_path)

    with get_connection(db_path) as conn:
        with pytest.raises(sqlite3.IntegrityError):
            _insert_alert(conn, "A-BAD", **overrides)


def test_migrate_adds_columns_to_legacy_tables(tmp_path: Path) -> None:
    db_path = tmp_path / "legacy.sqlite3"
    with get_connection(db_path) as conn:
        conn.executescript(
            """
            CREATE TABLE alerts (
              id TEXT PRIMARY KEY,
              symbol TEXT NOT NULL,
              condition_type TEXT NOT NULL,
              threshold REAL NOT NULL,
              poll_interval_sec INTEGER NOT NULL,
              cooldown_sec INTEGER NOT NULL DEFAULT 300,
              is_enabled INTEGER NOT NULL DEFAULT 1,
              last_triggered_at INTEGER,
              last_state TEXT,
              created_at INTEGER NOT NULL,
              updated_at INTEGER NOT NULL
            );
            CREATE TABLE alert_events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              alert_id TEXT NOT NULL,
              event_type TEXT NOT NULL,
              reason TEXT,
              price REAL,
              threshold REAL,
              notify_status TEXT NOT NULL DEFAULT 'queued',
              error_message TEXT,
              triggered_at INTEGER NOT NULL
            );
            """
        )
        conn.commit()

    init_db(db_path=db_path)

    with get_connection(db_path) as conn:
        alert_columns = {row["name"] for row in conn.execute("PRAGMA table_info(alerts)")}
        event_columns = {row["name"] for row in conn.execute("PRAGMA table_info(alert_events)")}

    assert {"notify_times", "user_id"}.issubset(alert_columns)
    assert {"user_id", "symbol"}.issubset(event_columns)


def test_fail_interrupted_events_marks_queued_rows(tmp_path: Path) -> None:
    db_path = tmp_path / "pricealert_test.sqlite3"
    init_db(db_path=db_path)
    with get_connection(db_path) as conn:
        conn.executemany(
            "INSERT INTO alert_events (alert_id, event_type, notify_status, triggered_at) VALUES (?, ?, ?, ?)",
            [("A-1", "trigger", "queued", 1), ("A-1", "trigger", "success", 2), ("A-2", "test", "queued", 3)],
        )
        conn.commit()

    assert fail_interrupted_events(db_path) == 2

    with get_connection(db_path) as conn:
        rows = conn.execute("SELECT notify_status, error_message FROM alert_events ORDER BY id").fetchall()

    assert [(r["notify_status"], r["error_message"]) for r in rows] == [
        ("failed", "interrupted by restart"),
        ("success", None),
        ("failed", "interrupted by restart"),
    ]
