from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Engine

from .version import APP_VERSION


@dataclass
class MigrationReport:
    previous_db_version: Optional[str]
    current_db_version: str
    applied_steps: List[str]


# Nullable/defaulted columns added after the first schema. (table, column, DDL type)
_ADDITIVE_COLUMNS: List[Tuple[str, str, str]] = [
    ("users", "timezone", "VARCHAR(64)"),
    ("tasks", "recurrence_week_of_month", "INTEGER"),
    ("tasks", "recurrence_end_date", "DATE"),
    ("tasks", "completion_based", "BOOLEAN NOT NULL DEFAULT 0"),
    ("tasks", "last_generated_date", "DATE"),
]


def _parse_version(v: str) -> Tuple[int, int, int]:
    """Parse a semantic version string like '0.1.0'."""
    try:
        parts = (v or "").strip().split(".")
        major = int(parts[0]) if len(parts) > 0 else 0
        minor = int(parts[1]) if len(parts) > 1 else 0
        patch = int(parts[2]) if len(parts) > 2 else 0
        return major, minor, patch
    except ValueError:
        return 0, 0, 0


def _table_exists(conn, table_name: str) -> bool:
    # SQLite-specific check.
    q = text("SELECT name FROM sqlite_master WHERE type='table' AND name=:t")
    row = conn.execute(q, {"t": table_name}).fetchone()
    return bool(row and row[0] == table_name)


def _column_exists(conn, table_name: str, column_name: str) -> bool:
    rows = conn.execute(text(f"PRAGMA table_info({table_name})")).fetchall()
    # (cid, name, type, notnull, dflt_value, pk)
    return any(len(r) >= 2 and str(r[1]).lower() == column_name.lower() for r in rows)


def _fk_on_delete(conn, table_name: str, column_name: str) -> Optional[str]:
    rows = conn.execute(text(f"PRAGMA foreign_key_list({table_name})")).fetchall()
    # (id, seq, table, from, to, on_update, on_delete, match)
    for r in rows:
        if str(r[3]).lower() == column_name.lower():
            return str(r[6]).upper()
    return None


def _rebuild_task_events(conn) -> None:
    """Recreate task_events so deleting a task no longer deletes its audit rows.

    SQLite cannot alter a foreign key in place.
    """
    conn.execute(
        text(
            "CREATE TABLE task_events_new ("
            "  id INTEGER NOT NULL PRIMARY KEY,"
            "  task_id INTEGER REFERENCES tasks(id) ON DELETE SET NULL,"
            "  user_id INTEGER REFERENCES users(id) ON DELETE SET NULL,"
            "  event_type VARCHAR(64) NOT NULL,"
            "  field_name VARCHAR(64),"
            "  old_value JSON,"
            "  new_value JSON,"
            "  metadata JSON,"
            "  created_at DATETIME NOT NULL"
            ")"
        )
    )
    conn.execute(
        text(
            "INSERT INTO task_events_new "
            "(id, task_id, user_id, event_type, field_name, old_value, new_value, metadata, created_at) "
            "SELECT id, task_id, user_id, event_type, field_name, old_value, new_value, metadata, created_at "
            "FROM task_events"
        )
    )
    conn.execute(text("DROP TABLE task_events"))
    conn.execute(text("ALTER TABLE task_events_new RENAME TO task_events"))
    for column in ("task_id", "event_type", "created_at"):
        conn.execute(text(f"CREATE INDEX IF NOT EXISTS ix_task_events_{column} ON task_events({column})"))


def _get_meta(conn, key: str) -> Optional[str]:
    if not _table_exists(conn, "app_meta"):
        return None
    row = conn.execute(text("SELECT value FROM app_meta WHERE key=:k"), {"k": key}).fetchone()
    return str(row[0]) if row and row[0] is not None else None


def _set_meta(conn, key: str, value: str) -> None:
    conn.execute(
        text(
            "INSERT INTO app_meta(key, value, updated_at) VALUES (:k, :v, :u) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at"
        ),
        {"k": key, "v": value, "u": datetime.now(timezone.utc).replace(tzinfo=None)},
    )


def ensure_db_schema(engine: Engine) -> MigrationReport:
    """Bring an existing SQLite database up to the current schema.

    Additive steps (new columns, indexes, the meta table) plus a rebuild of
    task_events on databases whose audit rows cascaded with their task. New
    tables come from `Base.metadata.create_all`.
    """
    applied: List[str] = []

    with engine.begin() as conn:
        if not _table_exists(conn, "app_meta"):
            conn.execute(
                text(
                    "CREATE TABLE IF NOT EXISTS app_meta ("
                    "  key VARCHAR(64) PRIMARY KEY,"
                    "  value VARCHAR(255) NOT NULL,"
                    "  updated_at DATETIME NOT NULL"
                    ")"
                )
            )
            applied.append("create_table:app_meta")

        prev = _get_meta(conn, "db_version")

        for table, column, ddl in _ADDITIVE_COLUMNS:
            if _table_exists(conn, table) and not _column_exists(conn, table, column):
                conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
                applied.append(f"alter_table:{table}:add_column:{column}")

        # Older databases predate the per-occurrence uniqueness constraint.
        if _table_exists(conn, "tasks"):
            conn.execute(
                text(
                    "CREATE UNIQUE INDEX IF NOT EXISTS ix_tasks_recurring_parent_due "
                    "ON tasks(recurring_parent_id, due_date)"
                )
            )

        # Audit rows used to be deleted along with their task.
        if _table_exists(conn, "task_events") and _fk_on_delete(conn, "task_events", "task_id") == "CASCADE":
            _rebuild_task_events(conn)
            applied.append("rebuild_table:task_events:task_id_set_null")

        _set_meta(conn, "db_version", APP_VERSION)

    return MigrationReport(previous_db_version=prev, current_db_version=APP_VERSION, applied_steps=applied)


def db_needs_upgrade(previous_db_version: Optional[str]) -> bool:
    if previous_db_version is None:
        return True
    return _parse_version(previous_db_version) < _parse_version(APP_VERSION)
