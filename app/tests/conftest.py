import os
import tempfile

_default_test_secret = "test-jwt-secret-for-pytest-only-0000000000000000"
if len(os.environ.get("JWT_SECRET", "")) < 32:
    os.environ["JWT_SECRET"] = _default_test_secret

os.environ.setdefault("ENV", "test")
os.environ.setdefault("TRIGGER_TIMEZONE", "UTC")

import subprocess
from pathlib import Path

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.engine import make_url

_SQLITE_PATH = os.path.join(tempfile.gettempdir(), f"fieldclock_test_{os.getpid()}.db")

TEST_DATABASE_URL = os.getenv("DATABASE_URL") or f"sqlite:///{_SQLITE_PATH}"
os.environ["DATABASE_URL"] = TEST_DATABASE_URL

from app import database
from app.database import Base
from app.models import EventOutbox, ScheduledNotification, SessionBreak, TaskTrigger, TimeClockSession  # noqa: F401


def _is_postgres_url(database_url: str) -> bool:
    return make_url(database_url).drivername.startswith("postgresql")


def _ensure_database_exists(database_url: str) -> None:
    url = make_url(database_url)

    if not url.drivername.startswith("postgresql"):
        return

    db_name = url.database
    admin_url = url.set(database="postgres")
    admin_engine = create_engine(admin_url, isolation_level="AUTOCOMMIT")

    try:
        with admin_engine.connect() as conn:
            exists = conn.execute(
                text("SELECT 1 FROM pg_database WHERE datname = :name"),
                {"name": db_name},
            ).scalar()
            if not exists:
                safe_db_name = db_name.replace('"', '""')
                conn.execute(text(f'CREATE DATABASE "{safe_db_name}"'))
    finally:
        admin_engine.dispose()


@pytest.fixture(scope="session", autouse=True)
def _prepare_test_database():
    database.configure_database()

    if _is_postgres_url(TEST_DATABASE_URL):
        _ensure_database_exists(TEST_DATABASE_URL)

        env = os.environ.copy()
        env["DATABASE_URL"] = TEST_DATABASE_URL

        subprocess.run(
            ["alembic", "upgrade", "head"],
            check=True,
            cwd=Path(__file__).resolve().parents[2],
            env=env,
        )
    else:
        Base.metadata.drop_all(bind=database.engine)
        Base.metadata.create_all(bind=database.engine)

    yield

    database.engine.dispose()
    if not _is_postgres_url(TEST_DATABASE_URL) and os.path.exists(_SQLITE_PATH):
        os.remove(_SQLITE_PATH)


def _empty_tables() -> None:
    with database.engine.begin() as conn:
        if database.is_postgres():
            names = ", ".join(f'"{t.name}"' for t in Base.metadata.sorted_tables)
            conn.execute(text(f"TRUNCATE TABLE {names} RESTART IDENTITY CASCADE"))
            return
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture(scope="function", autouse=True)
def _truncate_tables_between_tests():
    _empty_tables()
    yield
    _empty_tables()
