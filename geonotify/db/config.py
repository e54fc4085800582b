"""Database configuration for the geofence notification engine."""
from contextlib import contextmanager
from typing import Generator
import logging

from sqlmodel import create_engine, Session
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from geonotify.errors import ProcessingError

logger = logging.getLogger(__name__)


def build_engine(database_url: str, store_timeout_seconds: float = 5.0) -> Engine:
    """
    Create the SQLModel engine for a database URL.

    Every connection carries a timeout so a busy or unreachable store fails
    with a retryable error instead of hanging.

    Args:
        database_url: SQLAlchemy URL (sqlite or postgresql)
        store_timeout_seconds: Lock/connect/pool timeout

    Returns:
        Configured Engine
    """
    if database_url.startswith("sqlite"):
        logger.info("[DB CONFIG] Using SQLite database: %s", database_url)
        connect_args = {"check_same_thread": False, "timeout": store_timeout_seconds}
        in_memory = database_url in ("sqlite://", "sqlite:///:memory:")

        if in_memory:
            # A single shared connection, otherwise each session sees an empty database
            engine = create_engine(
                database_url, echo=False, connect_args=connect_args, poolclass=StaticPool
            )
        else:
            engine = create_engine(database_url, echo=False, connect_args=connect_args)

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            if not in_memory:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

        return engine

    logger.info("[DB CONFIG] Using PostgreSQL database")
    timeout_ms = int(store_timeout_seconds * 1000)
    return create_engine(
        database_url,
        echo=False,
        pool_pre_ping=True,
        pool_timeout=store_timeout_seconds,
        connect_args={
            "connect_timeout": max(1, int(store_timeout_seconds)),
            "options": f"-c statement_timeout={timeout_ms}",
        },
    )


@contextmanager
def store_session(engine: Engine) -> Generator[Session, None, None]:
    """
    Open a session whose infrastructure failures surface as ProcessingError.

    The transaction is rolled back on any error, so nothing half-written
    (e.g. an unmarked fingerprint next to a persisted event) survives.
    """
    session = Session(engine)
    try:
        yield session
    except SQLAlchemyError as e:
        session.rollback()
        logger.error("Store operation failed: %s", e)
        raise ProcessingError("Store unavailable", {"cause": type(e).__name__}) from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

