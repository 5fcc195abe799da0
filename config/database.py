"""Database configuration and session factory for docwatch.

Provides a unified SQLAlchemy engine/session setup with support for
both SQLite (development, tests) and PostgreSQL (production) backends.
"""

import os
import logging
from contextlib import contextmanager
from enum import Enum
from typing import Iterator, Optional

from pydantic import BaseModel, Field
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from services.shared.models import Base

logger = logging.getLogger(__name__)


class DatabaseType(str, Enum):
    """Supported database types."""
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"


class DatabaseConfig(BaseModel):
    """Database configuration."""
    url: str = Field(default="sqlite:///docwatch.db", description="SQLAlchemy database URL")
    echo: bool = Field(default=False, description="Log emitted SQL")
    pool_size: int = Field(default=10, description="Connection pool size")
    max_overflow: int = Field(default=20, description="Maximum pool overflow")

    @property
    def type(self) -> DatabaseType:
        if self.url.startswith("postgresql"):
            return DatabaseType.POSTGRESQL
        return DatabaseType.SQLITE

    @classmethod
    def from_env(cls) -> 'DatabaseConfig':
        """Create configuration from environment variables."""
        return cls(
            url=os.getenv('DOCWATCH_DATABASE_URL', 'sqlite:///docwatch.db'),
            echo=os.getenv('DOCWATCH_DATABASE_ECHO', '').lower() in ('1', 'true', 'yes'),
            pool_size=int(os.getenv('DB_POOL_SIZE', '10')),
            max_overflow=int(os.getenv('DB_MAX_OVERFLOW', '20')),
        )


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class DatabaseFactory:
    """Owns the engine and hands out sessions."""

    def __init__(self, config: Optional[DatabaseConfig] = None):
        self._config = config
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    def initialize(self, config: Optional[DatabaseConfig] = None) -> None:
        """Create the engine and ensure the schema exists."""
        if config is not None:
            self._config = config
        if self._config is None:
            self._config = DatabaseConfig.from_env()

        if self._config.type == DatabaseType.POSTGRESQL:
            logger.info("Initializing PostgreSQL engine")
            self._engine = create_engine(
                self._config.url,
                echo=self._config.echo,
                pool_size=self._config.pool_size,
                max_overflow=self._config.max_overflow,
                pool_pre_ping=True,
            )
        else:
            logger.info("Initializing SQLite engine")
            kwargs = {"echo": self._config.echo, "connect_args": {"check_same_thread": False}}
            if self._config.url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
            self._engine = create_engine(self._config.url, **kwargs)
            event.listen(self._engine, "connect", _enable_sqlite_foreign_keys)

        Base.metadata.create_all(self._engine)
        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)
        logger.info(f"Database initialized: {self._config.type.value}")

    def close(self) -> None:
        """Dispose of pooled connections."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database engine disposed")

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._engine

    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._session_factory

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Yield a session, rolling back on error."""
        session = self.session_factory()()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


# Global database factory instance
db_factory = DatabaseFactory()


def initialize_database(config: Optional[DatabaseConfig] = None) -> DatabaseFactory:
    """Initialize the global database factory."""
    db_factory.initialize(config)
    return db_factory


def close_database() -> None:
    """Close the global database factory."""
    db_factory.close()
