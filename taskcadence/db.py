from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from .config import get_settings


class Base(DeclarativeBase):
    pass


def _sqlite_url(db_path: str) -> str:
    if db_path.startswith("sqlite:"):
        return db_path
    return f"sqlite:///{db_path}"


def create_db_engine(url: str) -> Engine:
    """Create an engine with the SQLite settings the generation engine relies on.

    pysqlite's implicit transaction handling breaks SAVEPOINT, so the driver is
    put in autocommit mode and SQLAlchemy emits BEGIN itself. Transactions start
    with BEGIN IMMEDIATE so concurrent writers queue on the busy timeout instead
    of failing with "database is locked" when a read lock would need upgrading.
    """
    eng = create_engine(
        _sqlite_url(url),
        connect_args={"check_same_thread": False, "timeout": 15},
    )

    @event.listens_for(eng, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        # Enforce foreign key actions (CASCADE, SET NULL).
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(eng, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return eng


settings = get_settings()
engine = create_db_engine(settings.database.path)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
