import asyncio

import pytest

from crudclient.datastore.storage import (
    MemoryStorage,
    SqliteStorage,
    create_storage,
    resolve,
)
from crudclient.services.credentials import (
    ACCESS_TOKEN_KEY,
    REFRESH_TOKEN_KEY,
    CredentialStore,
)


def test_memory_storage():
    storage = MemoryStorage({"a": "1"})
    storage.set("b", "2")
    storage.remove("a")
    storage.remove("missing")

    assert storage.get("a") is None
    assert storage.get("b") == "2"
    assert storage.keys() == ["b"]


@pytest.mark.asyncio
async def test_resolve_handles_plain_and_awaitable_values():
    async def value():
        return "x"

    assert await resolve("x") == "x"
    assert await resolve(value()) == "x"


def test_create_storage_picks_backend():
    assert isinstance(create_storage(None), MemoryStorage)
    assert isinstance(create_storage("sqlite+aiosqlite:///:memory:"), SqliteStorage)


@pytest.mark.asyncio
async def test_sqlite_storage_set_get_remove(tmp_path):
    storage = SqliteStorage(f"sqlite+aiosqlite:///{tmp_path}/credentials.db")
    try:
        assert await storage.get("k") is None

        await storage.set("k", "v1")
        await storage.set("k", "v2")
        assert await storage.get("k") == "v2"

        await storage.remove("k")
        assert await storage.get("k") is None
    finally:
        await storage.close()


@pytest.mark.asyncio
async def test_concurrent_first_use_initializes_table_before_queries(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path}/credentials.db"

    first = SqliteStorage(url)
    store = CredentialStore(first)
    await asyncio.gather(first.get("x"), store.set_credentials("a1", "r1"))
    await first.close()

    second = SqliteStorage(url)
    try:
        assert await second.get(ACCESS_TOKEN_KEY) == "a1"
        assert await second.get(REFRESH_TOKEN_KEY) == "r1"
    finally:
        await second.close()


@pytest.mark.asyncio
async def test_credentials_survive_restart_with_sqlite(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path}/credentials.db"

    first = SqliteStorage(url)
    await CredentialStore(first).set_credentials("a1", "r1")
    await first.close()

    second = SqliteStorage(url)
    try:
        store = CredentialStore(second)
        assert await store.get_access() == "a1"
        assert await store.get_refresh() == "r1"
        assert not await store.is_expired()
        assert await second.get(ACCESS_TOKEN_KEY) == "a1"
    finally:
        await second.close()
