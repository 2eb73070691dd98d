from __future__ import annotations

import os
import sqlite3
from pathlib import Path

from .config import load_app_config
from .runtime_paths import resolve_data_dir

SCHEMA_PATH = Path(__file__).with_name("sql").joinpath("schema_v1.sql")


def resolve_db_path(db_path: str | Path | None = None) -> Path:
    if db_path is not None:
        return Path(db_path)
    env_path = os.getenv("PRICEALERT_DB_PATH")
    if env_path:
        return Path(env_path)
    configured = load_app_config().runtime.db_path
    if configured:
        return Path(configured)
    return resolve_data_dir() / "pricealert.sqlite3"


def get_connection(db_path: str | Path | None = None) -> sqlite3.Connection:
    path = resolve_db_path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(path, detect_types=sqlite3.PARSE_DECLTYPES)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA journal_mode = WAL;")
    conn.execute("PRAGMA synchronous = NORMAL;")
    conn.execute("PRAGMA busy_timeout = 5000;")
    return conn


def _table_columns(conn: sqlite3.Connection, table_name: str) -> set[str]:
    rows = conn.execute(f"PRAGMA table_info({table_name})").fetchall()
    return {str(row["name"]) for row in rows}


def _migrate_schema(conn: sqlite3.Connection) -> None:
    alert_columns = _table_columns(conn, "alerts")
    if "notify_times" not in alert_columns:
        conn.execute(
            """
            ALTER TABLE alerts
            ADD COLUMN notify_times INTEGER NOT NULL DEFAULT 1
            """
        )
    if "user_id" not in alert_columns:
        conn.execute(
            """
            ALTER TABLE alerts
            ADD COLUMN user_id TEXT
            """
        )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_alerts_user_id
        ON alerts (user_id)
        """
    )
    event_columns = _table_columns(conn, "alert_events")
    if "user_id" not in event_columns:
        conn.execute(
            """
            ALTER TABLE alert_events
            ADD COLUMN user_id TEXT
            """
        )
    if "symbol" not in event_columns:
        conn.execute(
            """
            ALTER TABLE alert_events
            ADD COLUMN symbol TEXT
            """
        )


def init_db(db_path: str | Path | None = None) -> Path:
    path = resolve_db_path(db_path)
    if not SCHEMA_PATH.exists():
        raise FileNotFoundError(f"schema file not found: {SCHEMA_PATH}")

    schema_sql = SCHEMA_PATH.read_text(encoding="utf-8")
    with get_connection(path) as conn:
        conn.executescript(schema_sql)
        _migrate_schema(conn)
        conn.commit()
    return path


def fail_interrupted_events(db_path: str | Path | None = None) -> int:
    # Queued events from a previous process will never be delivered.
    with get_connection(db_path) as conn:
        cursor = conn.execute(
            """
            UPDATE alert_events
            SET notify_status = 'failed', error_message = 'interrupted by restart'
            WHERE notify_status = 'queued'
            """
        )
        conn.commit()
        return int(cursor.rowcount or 0)
