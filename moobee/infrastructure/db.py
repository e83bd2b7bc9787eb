"""
Engines and session factories for the questionnaire store.

Both are built from ``DatabaseConfig``. Sessions never autoflush and keep
their attributes after commit, so results can be serialized once the unit
of work has closed.
"""

from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .config import DatabaseConfig, get_settings
from .logging import get_logger

logger = get_logger(__name__)


def _enable_sqlite_foreign_keys(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _set_pragma(dbapi_connection, _record):  # pragma: no cover - driver hook
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_database_engine(config: DatabaseConfig | None = None) -> Engine:
    """
    Build an engine for ``config``, or for the configured database.

    SQLite engines get foreign keys switched on for every connection.
    """
    config = config or get_settings().database
    url = config.get_connection_url()

    logger.info(f"Opening {'sqlite' if config.is_sqlite else config.backend} database")
    logger.debug(f"Database URL: {url.split('@')[-1]}")

    try:
        engine = create_engine(url, **config.get_engine_options())
    except SQLAlchemyError as e:
        logger.error(f"Could not create database engine: {e}")
        raise

    if config.is_sqlite:
        _enable_sqlite_foreign_keys(engine)
    return engine


def create_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    return sessionmaker(
        bind=engine or create_database_engine(),
        autoflush=False,
        expire_on_commit=False,
        future=True,
    )


def make_engine_and_session(connection_url: str | None = None) -> tuple[Engine, sessionmaker[Session]]:
    """
    Engine plus session factory, for scripts that take ``--database-url``.

    Example:
        >>> engine, SessionLocal = make_engine_and_session("sqlite:///./scratch.db")
    """
    config = DatabaseConfig(url=connection_url) if connection_url else None
    engine = create_database_engine(config)
    return engine, create_session_factory(engine)
