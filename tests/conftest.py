import os
import tempfile

# Importing the package reads settings and opens the default engine; keep both
# out of /data during the test run.
_TMP = tempfile.mkdtemp(prefix="taskcadence-tests-")
os.environ["TASKCADENCE_SETTINGS"] = os.path.join(_TMP, "settings.yml")
os.environ["TASKCADENCE_DB_PATH"] = os.path.join(_TMP, "taskcadence.db")

import pytest  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from taskcadence import models  # noqa: E402,F401
from taskcadence.config import get_settings  # noqa: E402
from taskcadence.crud import create_user  # noqa: E402
from taskcadence.db import Base, create_db_engine  # noqa: E402
from taskcadence.migrations import ensure_db_schema  # noqa: E402


@pytest.fixture
def settings_tmp(tmp_path, monkeypatch):
    """Isolate settings per test run."""
    path = tmp_path / "settings.yml"
    path.write_text(
        """
app:
  name: "TaskCadence"
  timezone: "UTC"
database:
  path: "{db}"
generation:
  enabled: false
  interval_minutes: 15
  horizon_days: 7
  lock_ttl_seconds: 30
logging:
  level: "INFO"
  directory: "{logs}"
  retention_days: 14
""".format(db=str(tmp_path / "test.db"), logs=str(tmp_path / "logs")).lstrip()
    )
    monkeypatch.setenv("TASKCADENCE_SETTINGS", str(path))
    monkeypatch.setenv("TASKCADENCE_DB_PATH", str(tmp_path / "test.db"))
    monkeypatch.delenv("TASKCADENCE_TIMEZONE", raising=False)
    get_settings.cache_clear()
    yield path
    get_settings.cache_clear()


@pytest.fixture
def engine(settings_tmp, tmp_path):
    eng = create_db_engine(str(tmp_path / "test.db"))
    Base.metadata.create_all(bind=eng)
    ensure_db_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def user(db):
    return create_user(db, username="alice", timezone="UTC")
