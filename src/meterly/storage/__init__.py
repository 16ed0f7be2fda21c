"""Storage backends and tenant key namespaces."""

from meterly.storage.backend import (
    StorageBackend,
    MemoryStorage,
    RedisStorage,
    create_storage,
    get_redis_client,
)
from meterly.storage.namespace import TenantNamespace

__all__ = [
    "StorageBackend",
    "MemoryStorage",
    "RedisStorage",
    "create_storage",
    "get_redis_client",
    "TenantNamespace",
]
