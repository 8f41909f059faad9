import logging
import os
import sqlite3
import time
from pathlib import Path
from typing import Callable, Optional, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from huddle.config.loader import load_config

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DEFAULT_DATABASE_URL = "sqlite:///./huddle.db"
_SQLITE_DEFAULTS = {
    "journal_mode": "WAL",
    "synchronous": "NORMAL",
    "busy_timeout_ms": 30000,
    "write_retries": 5,
    "retry_backoff_ms": 200,
}
_POOL_DEFAULTS = {
    "pool_size": 20,
    "max_overflow": 40,
    "pool_timeout_seconds": 15,
    "pool_recycle_seconds": 1800,
}

# Connection execution option marking a transaction that will write.
WRITE_TRANSACTION = "huddle_write_transaction"


def _coerce_positive_int(value, fallback):
    try:
        candidate = int(value)
        return candidate if candidate > 0 else fallback
    except Exception:  # noqa: BLE001
        return fallback


def _get_database_url() -> str:
    url = os.getenv("HUDDLE_DATABASE_URL") or load_config().get("database_url")
    return str(url) if url else _DEFAULT_DATABASE_URL


def get_sqlite_settings() -> dict:
    section = load_config().get("sqlite") or {}
    settings = {}
    for name, default in _SQLITE_DEFAULTS.items():
        if isinstance(default, int):
            settings[name] = _coerce_positive_int(section.get(name), default)
        else:
            settings[name] = str(section.get(name) or default)
    return settings


def _get_pool_settings() -> dict:
    section = load_config().get("database_pool") or {}
    return {
        name: _coerce_positive_int(section.get(name), default)
        for name, default in _POOL_DEFAULTS.items()
    }


def _is_file_sqlite(database_url: str) -> bool:
    if not database_url.startswith("sqlite"):
        return False
    database = make_url(database_url).database
    return bool(database) and database != ":memory:"


def _ensure_sqlite_directory(database_url: str) -> None:
    if not _is_file_sqlite(database_url):
        return
    db_path = Path(make_url(database_url).database)
    if not db_path.is_absolute():
        db_path = Path.cwd() / db_path
    db_path.parent.mkdir(parents=True, exist_ok=True)


def configure_sqlite_engine(target: Engine, settings: Optional[dict] = None) -> Engine:
    """Take over transaction control from pysqlite.

    Plain transactions start with a deferred ``BEGIN``. A transaction opened
    through :func:`begin_write` starts with ``BEGIN IMMEDIATE`` and so holds
    the database write lock from its first statement until commit or
    rollback. Writers for different meetings queue on SQLite's busy timeout
    instead of on a process lock.
    """
    settings = settings or get_sqlite_settings()

    @event.listens_for(target, "connect")
    def _on_connect(dbapi_connection, _connection_record) -> None:
        if not isinstance(dbapi_connection, sqlite3.Connection):
            return
        # pysqlite must not emit its own BEGIN; the begin hook below does.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute(f"PRAGMA journal_mode={settings['journal_mode']}")
        cursor.execute(f"PRAGMA synchronous={settings['synchronous']}")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={settings['busy_timeout_ms']}")
        cursor.close()

    @event.listens_for(target, "begin")
    def _on_begin(connection) -> None:
        if connection.get_execution_options().get(WRITE_TRANSACTION):
            connection.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            connection.exec_driver_sql("BEGIN")

    return target


def _build_engine(database_url: str) -> Engine:
    _ensure_sqlite_directory(database_url)
    if not database_url.startswith("sqlite"):
        pool = _get_pool_settings()
        return create_engine(
            database_url,
            pool_size=pool["pool_size"],
            max_overflow=pool["max_overflow"],
            pool_timeout=pool["pool_timeout_seconds"],
            pool_recycle=pool["pool_recycle_seconds"],
            pool_pre_ping=True,
            pool_use_lifo=True,
        )

    settings = get_sqlite_settings()
    options = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": max(1, settings["busy_timeout_ms"] / 1000),
        }
    }
    if _is_file_sqlite(database_url):
        pool = _get_pool_settings()
        options.update(
            pool_size=pool["pool_size"],
            max_overflow=pool["max_overflow"],
            pool_timeout=pool["pool_timeout_seconds"],
        )
    return configure_sqlite_engine(create_engine(database_url, **options), settings)


DATABASE_URL = _get_database_url()
engine = _build_engine(DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def is_database_locked(exc: OperationalError) -> bool:
    message = str(exc).lower()
    return "database is locked" in message or "database table is locked" in message


def begin_write(db: Session) -> None:
    """End the session's current transaction and open a writing one."""
    db.commit()
    db.connection(execution_options={WRITE_TRANSACTION: True})


def run_unit_of_work(
    db: Session,
    work: Callable[[], T],
    retries: Optional[int] = None,
    backoff_seconds: Optional[float] = None,
) -> T:
    """Run ``work`` inside one write transaction and commit it.

    Any error rolls the whole transaction back. When SQLite reports the
    database as locked, ``work`` is run again from the start on a fresh
    transaction, so it must re-read everything it touches.
    """
    if retries is None or backoff_seconds is None:
        settings = get_sqlite_settings()
        retries = settings["write_retries"] if retries is None else retries
        if backoff_seconds is None:
            backoff_seconds = settings["retry_backoff_ms"] / 1000
    attempts = max(1, retries)

    for attempt in range(1, attempts + 1):
        try:
            begin_write(db)
            result = work()
            db.commit()
            return result
        except OperationalError as exc:
            db.rollback()
            if not is_database_locked(exc) or attempt >= attempts:
                raise
            logger.warning(
                "Database locked during unit of work (attempt %s/%s); retrying.",
                attempt,
                attempts,
            )
            time.sleep(backoff_seconds * attempt)
        except Exception:
            db.rollback()
            raise


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
