"""
Object store abstraction layer for SourceCore.

Provides pluggable backends for reading Sources and their sink targets:
- Kubernetes (dynamic client, any kind the controller may read)
- Local development (YAML manifests on disk)
- Tests (in-memory)

plus the ``ObjectCache`` that memoizes one list+watch per (kind, namespace).

Example:
    from sourcecore.storage import ObjectCache, get_store, StoreType

    # Auto-detect store backend
    store = get_store()

    # Explicitly use the file store for local dev
    store = get_store(StoreType.FILE, base_dir="./manifests")

    cache = ObjectCache(store)
"""

from sourcecore.contracts.types import StoreType
from sourcecore.storage.base import (
    BaseObjectStore,
    ObjectStore,
    WatchEvent,
    get_store,
    register_backend,
)
from sourcecore.storage.cache import ObjectCache
from sourcecore.storage.file import FileObjectStore
from sourcecore.storage.memory import MemoryObjectStore

__all__ = [
    "BaseObjectStore",
    "FileObjectStore",
    "MemoryObjectStore",
    "ObjectCache",
    "ObjectStore",
    "StoreType",
    "WatchEvent",
    "get_store",
    "register_backend",
]
