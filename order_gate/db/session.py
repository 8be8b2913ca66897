import logging
import time
from pathlib import Path
from typing import Callable, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from order_gate.core.config import settings
from order_gate.db.base import Base
from order_gate.errors import StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def build_engine(database_url: str) -> Engine:
    """Engine with per-dialect connection settings (SQLite pragmas, PG pool)."""
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys = ON")
            cursor.execute("PRAGMA busy_timeout = 30000")
            cursor.execute("PRAGMA synchronous = NORMAL")
            cursor.close()

        return engine
    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_recycle=1800,  # recycle connections every 30 min (avoid stale)
        connect_args={"connect_timeout": 5},
    )


engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def get_db():
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(bind: Engine | None = None) -> None:
    """Create all tables. Failure here is fatal for the process."""
    # Register models on Base.metadata
    import order_gate.models  # noqa: F401

    bind = bind or engine
    if bind.url.get_backend_name() == "sqlite" and bind.url.database not in (None, "", ":memory:"):
        Path(bind.url.database).parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(bind=bind)


def is_busy_error(exc: OperationalError) -> bool:
    text = str(exc.orig).lower() if exc.orig is not None else str(exc).lower()
    return "locked" in text or "busy" in text or "deadlock" in text


def run_with_retry(
    db: Session,
    func: Callable[[], T],
    *,
    attempts: int | None = None,
    backoff_base: float | None = None,
) -> T:
    """
    Execute a write (statement + commit) with retry on busy/locked errors.

    Rolls back between attempts; any other database failure, or a busy error
    that survives the retry budget, is raised as StorageError.
    """
    attempts = attempts or settings.db_retry_attempts
    backoff = settings.db_retry_backoff_seconds if backoff_base is None else backoff_base
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except OperationalError as exc:
            db.rollback()
            if is_busy_error(exc) and attempt < attempts:
                logger.warning("db_busy_retry", extra={"attempt": attempt, "error": str(exc.orig)})
                time.sleep(backoff * attempt)
                continue
            raise StorageError(str(exc)) from exc
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageError(str(exc)) from exc
    raise StorageError("retry budget exhausted")
