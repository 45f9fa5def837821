"""
Object cache over a dynamic object store.

One bucket per (kind, namespace): the first lookup against a bucket lists it
and opens a single watch that keeps it current, so API load grows with the
number of distinct kinds in use rather than with the number of reconciles.

Buckets are shared read-only by every reconcile worker. Only the bucket's own
relist and watch handlers mutate it, under the bucket's lock.

A bucket whose watch fails is marked stale and relisted on next access; if
that relist fails the lookup raises ``StaleCacheError``.

Example:
    cache = ObjectCache(store)
    cache.add_listener(lambda event: print(event.type, event.key))
    broker = cache.get(broker_gvk, "default", "my-broker")
"""

from __future__ import annotations

import copy
import logging
import threading
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Tuple

from sourcecore.contracts.types import WatchEventType
from sourcecore.deadline import Deadline
from sourcecore.errors import InfrastructureError, ObjectNotFoundError, StaleCacheError
from sourcecore.models.core import GroupVersionKind, LabelSelector, ObjectKey
from sourcecore.storage.base import BaseObjectStore, WatchEvent, WatchHandle

logger = logging.getLogger(__name__)

CacheListener = Callable[[WatchEvent], None]

_BucketKey = Tuple[str, str, str]


class _Bucket:
    """Cached objects of one kind in one namespace ("" for all)."""

    def __init__(self, gvk: GroupVersionKind, namespace: str):
        self.gvk = gvk
        self.namespace = namespace
        self.lock = threading.RLock()
        self.objects: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.synced = False
        self.stale = False
        self.watch: Optional[WatchHandle] = None
        self.resource_version = ""

    def __repr__(self) -> str:
        return f"_Bucket({self.gvk}, {self.namespace or '*'})"


def _object_index(obj: Dict[str, Any]) -> Tuple[str, str]:
    metadata = obj.get("metadata") or {}
    return (metadata.get("namespace") or "", metadata.get("name") or "")


class ObjectCache:
    """Memoizing, watch-backed view over an ``ObjectStore``."""

    def __init__(self, store: BaseObjectStore, watch: bool = True):
        self._store = store
        self._watch_enabled = watch
        self._buckets: Dict[_BucketKey, _Bucket] = {}
        self._buckets_lock = threading.Lock()
        self._listeners: List[CacheListener] = []

    # Public API

    def add_listener(self, listener: CacheListener) -> None:
        """Call ``listener`` for every change observed in any bucket."""
        self._listeners.append(listener)

    def get(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        name: str,
        deadline: Optional[Deadline] = None,
    ) -> Dict[str, Any]:
        """Return a copy of one object. Raises ``ObjectNotFoundError`` if absent."""
        bucket = self._synced_bucket(gvk, namespace, deadline or Deadline.unbounded())
        with bucket.lock:
            obj = bucket.objects.get((namespace, name))
            if obj is None:
                raise ObjectNotFoundError(ObjectKey(gvk=gvk, namespace=namespace, name=name))
            return copy.deepcopy(obj)

    def list(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        selector: Optional[LabelSelector] = None,
        deadline: Optional[Deadline] = None,
    ) -> List[Dict[str, Any]]:
        """Return copies of the objects matching ``selector``, ordered by namespace/name."""
        bucket = self._synced_bucket(gvk, namespace, deadline or Deadline.unbounded())
        with bucket.lock:
            matches = []
            for index in sorted(bucket.objects):
                obj = bucket.objects[index]
                labels = (obj.get("metadata") or {}).get("labels") or {}
                if selector is None or selector.matches(labels):
                    matches.append(copy.deepcopy(obj))
            return matches

    def invalidate(self, gvk: GroupVersionKind, namespace: str) -> None:
        """Force the bucket to relist on next access."""
        bucket = self._find_bucket(gvk, namespace)
        if bucket is None:
            return
        with bucket.lock:
            bucket.stale = True
            self._stop_watch(bucket)

    def refresh_stale(self) -> int:
        """Relist every stale bucket now. Returns the number refreshed.

        Buckets that still fail stay stale and are retried on next access.
        """
        with self._buckets_lock:
            stale = [b for b in self._buckets.values() if b.stale]
        refreshed = 0
        for bucket in stale:
            try:
                self._sync(bucket, Deadline.unbounded())
                refreshed += 1
            except InfrastructureError as e:
                logger.warning(f"Could not refresh {bucket}: {e}")
        return refreshed

    def bucket_count(self) -> int:
        with self._buckets_lock:
            return len(self._buckets)

    def is_stale(self, gvk: GroupVersionKind, namespace: str) -> bool:
        bucket = self._find_bucket(gvk, namespace)
        return bucket is not None and bucket.stale

    def close(self) -> None:
        with self._buckets_lock:
            buckets = list(self._buckets.values())
            self._buckets.clear()
        for bucket in buckets:
            with bucket.lock:
                self._stop_watch(bucket)

    # Buckets

    @staticmethod
    def _bucket_key(gvk: GroupVersionKind, namespace: str) -> _BucketKey:
        return (gvk.group, gvk.kind, namespace)

    def _find_bucket(self, gvk: GroupVersionKind, namespace: str) -> Optional[_Bucket]:
        with self._buckets_lock:
            return self._buckets.get(self._bucket_key(gvk, namespace))

    def _synced_bucket(self, gvk: GroupVersionKind, namespace: str, deadline: Deadline) -> _Bucket:
        key = self._bucket_key(gvk, namespace)
        with self._buckets_lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = _Bucket(gvk, namespace)
                self._buckets[key] = bucket
        with bucket.lock:
            if not bucket.synced or bucket.stale:
                self._sync(bucket, deadline)
        deadline.check(f"lookup of {gvk}")
        return bucket

    def _sync(self, bucket: _Bucket, deadline: Deadline) -> None:
        """(Re)list a bucket and (re)open its watch. Caller may hold the lock."""
        with bucket.lock:
            deadline.check(f"list of {bucket.gvk}")
            try:
                items, resource_version = self._store.list(
                    bucket.gvk, bucket.namespace, None, timeout=deadline.remaining()
                )
            except Exception as e:
                bucket.stale = bucket.synced
                raise StaleCacheError(f"could not list {bucket}: {e}") from e

            previous = bucket.objects
            bucket.objects = {_object_index(obj): obj for obj in items}
            bucket.resource_version = resource_version
            was_synced = bucket.synced
            bucket.synced = True
            bucket.stale = False
            if self._watch_enabled:
                self._stop_watch(bucket)
                bucket.watch = self._store.watch(
                    bucket.gvk,
                    bucket.namespace,
                    partial(self._on_event, bucket),
                    partial(self._on_watch_error, bucket),
                    resource_version,
                )
            logger.debug(f"Synced {bucket}: {len(items)} objects at resourceVersion {resource_version}")

        if was_synced:
            # Changes missed while the watch was down
            for event in self._diff(previous, bucket.objects):
                self._notify(event)

    @staticmethod
    def _diff(
        before: Dict[Tuple[str, str], Dict[str, Any]],
        after: Dict[Tuple[str, str], Dict[str, Any]],
    ) -> List[WatchEvent]:
        events = []
        for index, obj in after.items():
            old = before.get(index)
            if old is None:
                events.append(WatchEvent(type=WatchEventType.ADDED, object=obj))
            elif old != obj:
                events.append(WatchEvent(type=WatchEventType.MODIFIED, object=obj))
        for index, obj in before.items():
            if index not in after:
                events.append(WatchEvent(type=WatchEventType.DELETED, object=obj))
        return events

    def _stop_watch(self, bucket: _Bucket) -> None:
        if bucket.watch is not None:
            bucket.watch.stop()
            bucket.watch = None

    # Watch handlers

    def _on_event(self, bucket: _Bucket, event: WatchEvent) -> None:
        with bucket.lock:
            index = _object_index(event.object)
            if event.type == WatchEventType.DELETED:
                bucket.objects.pop(index, None)
            else:
                bucket.objects[index] = event.object
            rv = (event.object.get("metadata") or {}).get("resourceVersion")
            if rv:
                bucket.resource_version = rv
        self._notify(event)

    def _on_watch_error(self, bucket: _Bucket, error: Exception) -> None:
        logger.warning(f"Watch for {bucket} failed, marking stale: {error}")
        with bucket.lock:
            bucket.stale = True
            bucket.watch = None

    def _notify(self, event: WatchEvent) -> None:
        for listener in list(self._listeners):
            listener(event)
