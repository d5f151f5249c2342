"""Engine and session management for the registry store."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from workspace_registry.store.models import Base

logger = logging.getLogger(__name__)


class Database:
    """
    Thin wrapper around a SQLAlchemy engine and session factory.

    Usage:
        db = Database(settings.database_url_sync)
        db.initialize()

        with db.transaction() as session:
            session.add(row)
    """

    def __init__(self, database_url: str, echo: bool = False) -> None:
        """
        Args:
            database_url: SQLAlchemy URL (sync driver). ``sqlite://`` gives a
                private in-memory database shared by every session.
            echo: Log emitted SQL.
        """
        self.url = database_url
        engine_kwargs: dict = {"echo": echo}
        if database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                engine_kwargs["poolclass"] = StaticPool
        self.engine = create_engine(database_url, **engine_kwargs)
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    def initialize(self) -> None:
        """Create all tables that do not exist yet."""
        Base.metadata.create_all(self.engine)
        logger.info("Registry store initialized: dialect=%s", self.engine.dialect.name)

    def drop_all(self) -> None:
        Base.metadata.drop_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Read-only unit of work; nothing is committed."""
        with self.SessionLocal() as session:
            yield session

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Unit of work committed on success and rolled back on any error."""
        with self.SessionLocal() as session:
            with session.begin():
                yield session

    def dispose(self) -> None:
        self.engine.dispose()


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
