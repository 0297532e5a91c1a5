import logging
import os
import socket
from contextlib import closing

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url

from app.core.config import settings

logger = logging.getLogger(__name__)

_engine = None


def _report_connection_failure(exc: Exception) -> None:
    """Log high-signal diagnostics when the application cannot reach the database."""
    logger.warning(f"Could not connect to database: {exc}")
    logger.warning("The application will start but imports will fail until the connection succeeds.")

    try:
        url = make_url(settings.database_url)
    except Exception as parse_error:  # pragma: no cover
        logger.warning(f"Unable to parse DATABASE_URL ({parse_error}); skipping detailed diagnostics.")
        return

    if url.get_backend_name() == "sqlite":
        logger.warning(f"SQLite database path: {url.database}")
        return

    host = url.host or "localhost"
    port = url.port or 5432
    logger.warning(
        f"Database settings: dialect={url.get_backend_name()} host={host} port={port} "
        f"database={url.database} user={url.username} SKIP_DB_INIT={os.getenv('SKIP_DB_INIT')!r}"
    )

    try:
        with closing(socket.create_connection((host, port), timeout=2)):
            logger.warning(f"Socket check: able to reach {host}:{port}")
    except OSError as socket_err:
        logger.warning(f"Socket check: unable to reach {host}:{port} ({socket_err})")


def _enable_sqlite_savepoints(engine: Engine) -> None:
    # pysqlite's implicit BEGIN handling breaks SAVEPOINT; emit BEGIN ourselves.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(database_url: str) -> Engine:
    """Create an engine for the given URL, allowing SQLite use across worker threads."""
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        engine = create_engine(database_url, connect_args={"check_same_thread": False})
        _enable_sqlite_savepoints(engine)
        return engine
    return create_engine(database_url, pool_pre_ping=True)


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        try:
            _engine = build_engine(settings.database_url)
            # Test connection eagerly so failures surface immediately.
            with _engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            _report_connection_failure(e)
            # Keep the engine so callers can proceed (may still fail later).
            _engine = build_engine(settings.database_url)
    return _engine


def reset_engine() -> None:
    """Dispose the cached engine so the next call reconnects with current settings."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None
