import logging

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import declarative_base, sessionmaker

from event_import.core.config import settings

logger = logging.getLogger(__name__)

_engine = None


def _report_connection_failure(exc: Exception) -> None:
    """Log high-signal diagnostics when the datastore cannot be reached."""
    logger.warning("Could not connect to database: %s", exc)
    try:
        url = make_url(settings.database_url)
    except Exception as parse_error:  # pragma: no cover
        logger.warning("Unable to parse DATABASE_URL (%s); skipping detailed diagnostics.", parse_error)
        return

    logger.warning(
        "Database settings: dialect=%s driver=%s host=%s port=%s database=%s",
        url.get_backend_name(),
        url.get_driver_name() or "default",
        url.host or "localhost",
        url.port or "(default)",
        url.database,
    )


def _configure_sqlite(engine: Engine) -> None:
    """
    Enforce foreign keys and let SQLAlchemy own transaction boundaries so
    SAVEPOINTs (used for schema version and event inserts) nest correctly.
    """
    if engine.dialect.name != "sqlite":
        return

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(database_url: str, **kwargs) -> Engine:
    engine = create_engine(database_url, **kwargs)
    _configure_sqlite(engine)
    return engine


def get_engine():
    global _engine
    if _engine is None:
        _engine = build_engine(settings.database_url)
        try:
            # Test connection eagerly so failures surface immediately.
            with _engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            _report_connection_failure(e)
    return _engine


# Don't create engine at import time
SessionLocal = None

Base = declarative_base()


def get_session_local():
    global SessionLocal
    if SessionLocal is None:
        engine = get_engine()
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return SessionLocal


def init_db(engine=None) -> None:
    """Create every pipeline table that does not exist yet."""
    # Model classes register themselves on Base.metadata at import time
    from event_import.db import models  # noqa: F401

    engine = engine or get_engine()
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ready (%s)", engine.dialect.name)
