"""Database configuration and factory for Pathfinder.

Provides a single SQLAlchemy engine and session factory shared by the crawl
pipeline, the retrieval pipeline and the API. SQLite is the default backend
for development; any SQLAlchemy URL (e.g. PostgreSQL) works in production.
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .settings import get_settings

logger = logging.getLogger(__name__)


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    """Site deletion relies on ON DELETE CASCADE, which SQLite enforces only on request."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()


class DatabaseFactory:
    """Factory for the SQLAlchemy engine and sessions."""

    _instance: Optional['DatabaseFactory'] = None
    _engine: Optional[Engine] = None
    _session_factory: Optional[sessionmaker] = None
    _url: Optional[str] = None

    def __new__(cls) -> 'DatabaseFactory':
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def initialize(self, url: Optional[str] = None) -> Engine:
        """Create the engine for ``url`` (defaults to the configured URL) and ensure the schema."""
        from indexer.models import Base

        url = url or get_settings().database_url
        if self._engine is not None and self._url == url:
            return self._engine
        if self._engine is not None:
            self.close()

        if _is_sqlite(url):
            kwargs = {"connect_args": {"check_same_thread": False}}
            if url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
            else:
                db_file = url.split("///", 1)[-1]
                Path(db_file).parent.mkdir(parents=True, exist_ok=True)
            engine = create_engine(url, **kwargs)
            event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        else:
            engine = create_engine(url, pool_size=10, max_overflow=20, pool_pre_ping=True, pool_recycle=3600)

        Base.metadata.create_all(engine)
        self._engine = engine
        self._url = url
        self._session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        logger.info(f"Database initialized: {engine.url.render_as_string(hide_password=True)}")
        return engine

    def close(self):
        """Dispose of the engine and its pooled connections."""
        if self._engine is not None:
            self._engine.dispose()
            logger.info("Database connections closed")
        self._engine = None
        self._session_factory = None
        self._url = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._engine

    def session(self) -> Session:
        if self._session_factory is None:
            self.initialize()
        return self._session_factory()


# Global database factory instance
db_factory = DatabaseFactory()


def init_db(url: Optional[str] = None) -> Engine:
    """Initialize the database with the given or configured URL."""
    return db_factory.initialize(url)


def close_database():
    """Close database connections."""
    db_factory.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""
    session = db_factory.session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
