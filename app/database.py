"""Database utilities for the Airdate service."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import MetaData, inspect, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


SCHEMA_MIGRATIONS: tuple[tuple[str, str, str, str | None], ...] = (
    (
        "profiles",
        "tracked_shows",
        "ALTER TABLE profiles ADD COLUMN tracked_shows JSON",
        "UPDATE profiles SET tracked_shows = '[]' WHERE tracked_shows IS NULL",
    ),
    (
        "profiles",
        "trakt_access_token",
        "ALTER TABLE profiles ADD COLUMN trakt_access_token VARCHAR(200)",
        None,
    ),
    (
        "profiles",
        "trakt_synced_at",
        "ALTER TABLE profiles ADD COLUMN trakt_synced_at DATETIME",
        None,
    ),
    (
        "interactions",
        "watched_at",
        "ALTER TABLE interactions ADD COLUMN watched_at DATETIME",
        None,
    ),
)


class Base(DeclarativeBase):
    """Declarative base with consistent naming conventions."""

    metadata = MetaData()


class Database:
    """Thin wrapper managing the SQLAlchemy async engine and sessions."""

    def __init__(self, database_url: str):
        self._engine: AsyncEngine = create_async_engine(database_url, future=True)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine, expire_on_commit=False
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_all(self) -> None:
        """Create database tables if they do not yet exist."""

        async with self._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
            await connection.run_sync(self._apply_schema_migrations)

    @staticmethod
    def _apply_schema_migrations(sync_connection) -> None:
        """Add columns introduced after a table was first created.

        Each entry is ``(table, column, ddl, backfill)``.
        """

        inspector = inspect(sync_connection)
        table_names = set(inspector.get_table_names())
        columns: dict[str, set[str]] = {}

        def _ensure_column(
            table: str, name: str, ddl: str, init_sql: str | None = None
        ) -> None:
            if table not in table_names:
                return
            if table not in columns:
                columns[table] = {column["name"] for column in inspector.get_columns(table)}
            if name in columns[table]:
                return
            sync_connection.execute(text(ddl))
            if init_sql:
                sync_connection.execute(text(init_sql))
            columns[table].add(name)

        for table, name, ddl, init_sql in SCHEMA_MIGRATIONS:
            _ensure_column(table, name, ddl, init_sql)

    async def dispose(self) -> None:
        """Dispose of the underlying database engine."""

        await self._engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Provide a transactional scope around a series of operations."""

        async with self.session_factory() as session:
            yield session
