"""
Key-value storage primitives used to persist credentials.

Two implementations:
- MemoryStorage: synchronous, process-local dict
- SqliteStorage: durable, SQLAlchemy async engine (aiosqlite)

Consumers accept either; methods may return plain values or awaitables.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Protocol, TypeVar

from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from crudclient.datastore.models import Base, KeyValueDB

T = TypeVar("T")


class KeyValueStorage(Protocol):
    """get/set/remove by string key, sync or async."""

    def get(self, key: str) -> str | None | Awaitable[str | None]: ...

    def set(self, key: str, value: str) -> None | Awaitable[None]: ...

    def remove(self, key: str) -> None | Awaitable[None]: ...


async def resolve(value: T | Awaitable[T]) -> T:
    """Await the value if the storage returned an awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value  # type: ignore[return-value]


class MemoryStorage:
    """In-process storage, lost on exit."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class SqliteStorage:
    """
    Durable storage backed by a single SQL table.

    Usage:
        storage = SqliteStorage("sqlite+aiosqlite:///./credentials.db")
        await storage.init()
        await storage.set("accessToken", "...")
        await storage.close()

    init() is also called lazily on first access.
    """

    def __init__(self, database_url: str, echo: bool = False):
        self._database_url = database_url
        self._echo = echo
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None
        self._init_lock = asyncio.Lock()

    async def init(self) -> None:
        """Create the engine and table."""
        async with self._init_lock:
            if self._engine is not None:
                return

            engine = create_async_engine(self._database_url, echo=self._echo)
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

            # Published only once the table exists
            self._engine = engine
            self._session_factory = async_sessionmaker(
                bind=engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )
        logger.debug(f"Credential storage initialized: {self._database_url}")

    async def _sessions(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            await self.init()
        assert self._session_factory is not None
        return self._session_factory

    async def get(self, key: str) -> str | None:
        factory = await self._sessions()
        async with factory() as session:
            result = await session.execute(
                select(KeyValueDB.value).where(KeyValueDB.key == key)
            )
            return result.scalar_one_or_none()

    async def set(self, key: str, value: str) -> None:
        factory = await self._sessions()
        async with factory() as session:
            async with session.begin():
                entry = await session.get(KeyValueDB, key)
                if entry is None:
                    session.add(KeyValueDB(key=key, value=value))
                else:
                    entry.value = value

    async def remove(self, key: str) -> None:
        factory = await self._sessions()
        async with factory() as session:
            async with session.begin():
                await session.execute(delete(KeyValueDB).where(KeyValueDB.key == key))

    async def close(self) -> None:
        """Dispose of the engine."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None


def create_storage(database_url: str | None) -> Any:
    """Durable storage when a database URL is configured, memory otherwise."""
    if database_url:
        return SqliteStorage(database_url)
    return MemoryStorage()
