"""Opening SQLite stores and applying their schema.

Every store is an embedded SQLite file opened through SQLAlchemy's async
engine on ``aiosqlite``. Each pooled connection runs in write-ahead-log mode
with foreign keys enforced and a 5 second busy timeout. Opening a store is
idempotent: the base schema is created if missing, additive alterations
ignore columns that already exist and seed rows use ``INSERT OR IGNORE``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar

from sqlalchemy import event
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from litestar_refinery.exceptions import SchemaMigrationError

if TYPE_CHECKING:
    from typing import Self

    from sqlalchemy import MetaData
    from sqlalchemy.ext.asyncio import AsyncEngine

__all__ = ["BUSY_TIMEOUT_MS", "Database", "is_busy_error", "is_duplicate_column_error"]

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_MS = 5000


def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
    cursor.close()


def is_duplicate_column_error(exc: BaseException) -> bool:
    """Whether ``exc`` is SQLite refusing an alteration that was already applied."""
    message = str(exc).lower()
    return "duplicate column" in message or "already exists" in message


def is_busy_error(exc: BaseException) -> bool:
    """Whether ``exc`` is SQLite's transient lock contention (``SQLITE_BUSY``)."""
    message = str(exc).lower()
    return "database is locked" in message or "database is busy" in message or "sqlite_busy" in message


class Database:
    """An opened SQLite store.

    Subclasses declare the schema through class attributes and add the typed
    helpers for their entities. Every helper opens its own session from
    :attr:`session_factory`, so concurrent tasks never share a session.

    Attributes:
        path: Filesystem path of the store.
        engine: The async SQLAlchemy engine.
        session_factory: Factory for per-operation sessions.
    """

    metadata: ClassVar[MetaData]
    """Tables created at open."""

    alterations: ClassVar[tuple[str, ...]] = ()
    """Ordered ``ALTER TABLE ... ADD COLUMN`` statements for stores created by older releases."""

    seeds: ClassVar[tuple[str, ...]] = ()
    """Idempotent ``INSERT OR IGNORE`` statements for lookup tables."""

    def __init__(self, path: str, engine: AsyncEngine) -> None:
        self.path = path
        self.engine = engine
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @classmethod
    async def open(cls, path: str | Path) -> Self:
        """Open or create the store at ``path`` and bring its schema up to date.

        Args:
            path: Filesystem path of the SQLite file.

        Returns:
            The opened store.

        Raises:
            SchemaMigrationError: If the schema cannot be applied. The engine is
                disposed before the error propagates.
        """
        path = str(path)
        engine = create_async_engine(f"sqlite+aiosqlite:///{path}", echo=False)
        event.listen(engine.sync_engine, "connect", _set_sqlite_pragma)
        store = cls(path, engine)
        try:
            await store.migrate()
        except BaseException:
            await engine.dispose()
            raise
        logger.info("opened %s at %s", cls.__name__, path)
        return store

    async def migrate(self) -> None:
        """Apply the base schema, the additive alterations, the seeds and any post-migration."""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(self.metadata.create_all)
        except SQLAlchemyError as exc:
            raise SchemaMigrationError(self.path, "base schema", exc) from exc

        for statement in self.alterations:
            try:
                async with self.engine.begin() as conn:
                    await conn.exec_driver_sql(statement)
            except DBAPIError as exc:
                if is_duplicate_column_error(exc):
                    continue
                raise SchemaMigrationError(self.path, statement, exc) from exc
            logger.info("applied %r to %s", statement, self.path)

        if self.seeds:
            try:
                async with self.engine.begin() as conn:
                    for statement in self.seeds:
                        await conn.exec_driver_sql(statement)
            except SQLAlchemyError as exc:
                raise SchemaMigrationError(self.path, "seed lookup tables", exc) from exc

        await self.post_migrate()

    async def post_migrate(self) -> None:
        """Hook for store-specific migrations that run after the additive ones."""

    def session(self) -> AsyncSession:
        """Return a new session bound to this store."""
        return self.session_factory()

    async def close(self) -> None:
        """Dispose of the engine and its pooled connections."""
        await self.engine.dispose()
        logger.info("closed %s at %s", type(self).__name__, self.path)
