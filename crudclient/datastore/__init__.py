from crudclient.datastore.storage import (
    KeyValueStorage,
    MemoryStorage,
    SqliteStorage,
    create_storage,
)

__all__ = ["KeyValueStorage", "MemoryStorage", "SqliteStorage", "create_storage"]
