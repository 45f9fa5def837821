"""
In-memory object store.

Thread-safe dict-backed store with synchronous watch fan-out. Used for tests,
local runs and as the base of the file store.

Objects of one kind are matched by group and kind only, the way an API server
serves every version of a kind from the same storage.
"""

from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sourcecore.contracts.types import StoreType, WatchEventType
from sourcecore.errors import ObjectNotFoundError
from sourcecore.models.core import GroupVersionKind, LabelSelector, ObjectKey
from sourcecore.storage.base import (
    BaseObjectStore,
    WatchErrorHandler,
    WatchEvent,
    WatchHandler,
    register_backend,
)

logger = logging.getLogger(__name__)

_Index = Tuple[str, str, str, str]


def _index(gvk: GroupVersionKind, namespace: str, name: str) -> _Index:
    return (gvk.group, gvk.kind, namespace, name)


class _MemoryWatch:
    def __init__(
        self,
        store: "MemoryObjectStore",
        gvk: GroupVersionKind,
        namespace: str,
        handler: WatchHandler,
        on_error: Optional[WatchErrorHandler],
    ):
        self._store = store
        self.gvk = gvk
        self.namespace = namespace
        self.handler = handler
        self.on_error = on_error
        self.stopped = False

    def wants(self, key: ObjectKey) -> bool:
        if self.stopped:
            return False
        if (key.gvk.group, key.gvk.kind) != (self.gvk.group, self.gvk.kind):
            return False
        return not self.namespace or self.namespace == key.namespace

    def stop(self) -> None:
        self.stopped = True
        self._store._remove_watch(self)


@register_backend(StoreType.MEMORY)
class MemoryObjectStore(BaseObjectStore):
    """
    Dict-backed object store.

    ``apply`` bumps ``metadata.generation`` whenever ``spec`` changes and
    ``metadata.resourceVersion`` on every write, like an API server.
    """

    def __init__(self, objects: Optional[Iterable[Dict[str, Any]]] = None, **kwargs: Any):
        self._lock = threading.RLock()
        self._objects: Dict[_Index, Dict[str, Any]] = {}
        self._watches: List[_MemoryWatch] = []
        self._resource_version = 0
        for obj in objects or []:
            self.apply(obj)

    # Write helpers

    def _next_resource_version(self) -> str:
        self._resource_version += 1
        return str(self._resource_version)

    def apply(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Create or replace an object and notify watchers."""
        obj = copy.deepcopy(obj)
        key = ObjectKey.for_object(obj)
        if not key.name:
            raise ValueError("object has no metadata.name")
        metadata = obj.setdefault("metadata", {})
        idx = _index(key.gvk, key.namespace, key.name)

        with self._lock:
            existing = self._objects.get(idx)
            if existing is None:
                metadata.setdefault("generation", 1)
                event_type = WatchEventType.ADDED
            else:
                generation = int(existing["metadata"].get("generation") or 1)
                if existing.get("spec") != obj.get("spec"):
                    generation += 1
                metadata["generation"] = generation
                event_type = WatchEventType.MODIFIED
            metadata["resourceVersion"] = self._next_resource_version()
            self._objects[idx] = obj
            stored = copy.deepcopy(obj)

        self._dispatch(WatchEvent(type=event_type, object=stored))
        return copy.deepcopy(stored)

    def delete(self, key: ObjectKey) -> None:
        """Delete an object and notify watchers."""
        idx = _index(key.gvk, key.namespace, key.name)
        with self._lock:
            obj = self._objects.pop(idx, None)
            if obj is None:
                raise ObjectNotFoundError(key)
            self._next_resource_version()
        self._dispatch(WatchEvent(type=WatchEventType.DELETED, object=obj))

    def fail_watches(self, error: Exception) -> None:
        """Terminate every open watch with ``error`` (simulates a dropped connection)."""
        with self._lock:
            watches = list(self._watches)
            self._watches.clear()
        for watch in watches:
            watch.stopped = True
            if watch.on_error is not None:
                watch.on_error(error)

    # ObjectStore interface

    def get(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        name: str,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        with self._lock:
            obj = self._objects.get(_index(gvk, namespace, name))
            if obj is None:
                raise ObjectNotFoundError(ObjectKey(gvk=gvk, namespace=namespace, name=name))
            return copy.deepcopy(obj)

    def list(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        selector: Optional[LabelSelector] = None,
        timeout: Optional[float] = None,
    ) -> Tuple[List[Dict[str, Any]], str]:
        with self._lock:
            items = []
            for (group, kind, ns, name), obj in sorted(self._objects.items()):
                if (group, kind) != (gvk.group, gvk.kind):
                    continue
                if namespace and ns != namespace:
                    continue
                labels = (obj.get("metadata") or {}).get("labels") or {}
                if selector is not None and not selector.matches(labels):
                    continue
                items.append(copy.deepcopy(obj))
            return items, str(self._resource_version)

    def watch(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        handler: WatchHandler,
        on_error: Optional[WatchErrorHandler] = None,
        resource_version: Optional[str] = None,
    ) -> _MemoryWatch:
        watch = _MemoryWatch(self, gvk, namespace, handler, on_error)
        with self._lock:
            self._watches.append(watch)
        return watch

    def update_status(self, key: ObjectKey, status: Dict[str, Any]) -> Dict[str, Any]:
        idx = _index(key.gvk, key.namespace, key.name)
        with self._lock:
            obj = self._objects.get(idx)
            if obj is None:
                raise ObjectNotFoundError(key)
            obj["status"] = copy.deepcopy(status)
            obj.setdefault("metadata", {})["resourceVersion"] = self._next_resource_version()
            stored = copy.deepcopy(obj)
        self._dispatch(WatchEvent(type=WatchEventType.MODIFIED, object=stored))
        return copy.deepcopy(stored)

    def close(self) -> None:
        with self._lock:
            for watch in self._watches:
                watch.stopped = True
            self._watches.clear()

    # Internals

    def _remove_watch(self, watch: _MemoryWatch) -> None:
        with self._lock:
            if watch in self._watches:
                self._watches.remove(watch)

    def _dispatch(self, event: WatchEvent) -> None:
        key = event.key
        with self._lock:
            targets = [w for w in self._watches if w.wants(key)]
        for watch in targets:
            watch.handler(WatchEvent(type=event.type, object=copy.deepcopy(event.object)))
