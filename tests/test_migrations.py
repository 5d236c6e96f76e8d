from sqlalchemy import inspect, text
from sqlalchemy.orm import sessionmaker

from taskcadence.crud import create_task, create_user
from taskcadence.db import Base, create_db_engine
from taskcadence.migrations import db_needs_upgrade, ensure_db_schema
from taskcadence.version import APP_VERSION


def _old_schema(engine):
    with engine.begin() as conn:
        conn.execute(
            text(
                "CREATE TABLE users ("
                "  id INTEGER PRIMARY KEY AUTOINCREMENT,"
                "  username VARCHAR(64) NOT NULL,"
                "  created_at DATETIME NOT NULL"
                ")"
            )
        )
        conn.execute(
            text(
                "CREATE TABLE tasks ("
                "  id INTEGER PRIMARY KEY AUTOINCREMENT,"
                "  uid VARCHAR(32) NOT NULL,"
                "  user_id INTEGER NOT NULL,"
                "  name VARCHAR(255) NOT NULL,"
                "  status VARCHAR(11) NOT NULL,"
                "  due_date DATE,"
                "  recurrence_type VARCHAR(16) NOT NULL,"
                "  recurrence_interval INTEGER NOT NULL,"
                "  recurring_parent_id INTEGER"
                ")"
            )
        )


def test_old_database_is_upgraded_in_place(settings_tmp, tmp_path):
    engine = create_db_engine(str(tmp_path / "old.db"))
    _old_schema(engine)

    report = ensure_db_schema(engine)
    assert report.previous_db_version is None
    assert report.current_db_version == APP_VERSION
    assert "create_table:app_meta" in report.applied_steps
    assert "alter_table:tasks:add_column:completion_based" in report.applied_steps
    assert "alter_table:users:add_column:timezone" in report.applied_steps

    insp = inspect(engine)
    cols = {c["name"] for c in insp.get_columns("tasks")}
    assert {"recurrence_end_date", "completion_based", "last_generated_date", "recurrence_week_of_month"} <= cols
    assert "ix_tasks_recurring_parent_due" in {ix["name"] for ix in insp.get_indexes("tasks")}

    # Second run has nothing to do.
    again = ensure_db_schema(engine)
    assert again.previous_db_version == APP_VERSION
    assert again.applied_steps == []
    engine.dispose()


def test_fresh_database_needs_no_column_steps(settings_tmp, tmp_path):
    engine = create_db_engine(str(tmp_path / "fresh.db"))
    Base.metadata.create_all(bind=engine)

    report = ensure_db_schema(engine)
    assert not [s for s in report.applied_steps if s.startswith("alter_table")]

    with engine.connect() as conn:
        v = conn.execute(text("SELECT value FROM app_meta WHERE key='db_version'")).scalar_one()
    assert v == APP_VERSION
    engine.dispose()


def test_db_needs_upgrade():
    assert db_needs_upgrade(None) is True
    assert db_needs_upgrade("0.0.1") is True
    assert db_needs_upgrade(APP_VERSION) is False
    assert db_needs_upgrade("99.0.0") is False


def _cascading_task_events(engine):
    with engine.begin() as conn:
        conn.execute(text("DROP TABLE task_events"))
        conn.execute(
            text(
                "CREATE TABLE task_events ("
                "  id INTEGER NOT NULL PRIMARY KEY,"
                "  task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,"
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


def test_cascading_audit_table_is_rebuilt(settings_tmp, tmp_path):
    engine = create_db_engine(str(tmp_path / "audit.db"))
    Base.metadata.create_all(bind=engine)
    _cascading_task_events(engine)

    with sessionmaker(bind=engine)() as db:
        u = create_user(db, username="alice")
        task_id = create_task(db, owner=u, name="One-off").id

    report = ensure_db_schema(engine)
    assert "rebuild_table:task_events:task_id_set_null" in report.applied_steps
    assert "ix_task_events_task_id" in {ix["name"] for ix in inspect(engine).get_indexes("task_events")}

    with engine.begin() as conn:
        conn.execute(text("DELETE FROM tasks WHERE id = :i"), {"i": task_id})
        rows = conn.execute(text("SELECT task_id, event_type FROM task_events")).fetchall()
    assert [tuple(r) for r in rows] == [(None, "created")]

    assert ensure_db_schema(engine).applied_steps == []
    engine.dispose()
