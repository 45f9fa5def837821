"""
Reference tracker: which Sources depend on which objects.

Every reconcile pass records the object (by name or by label selector) its
Source's sink points at. When the object cache reports a change to such an
object, every Source tracking it is handed to the enqueue callback, so a sink
becoming addressable triggers a pass without waiting for resync.

A Source's references are replaced on each ``track`` call, so a Source whose
sink moved elsewhere stops being notified about the old target.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set

from sourcecore.models.core import GroupVersionKind, LabelSelector, ObjectKey
from sourcecore.storage.base import WatchEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrackedReference:
    """A named object or a selector over one kind in one namespace."""
    group: str
    kind: str
    namespace: str
    name: Optional[str] = None
    selector: Optional[LabelSelector] = None

    @classmethod
    def for_name(cls, gvk: GroupVersionKind, namespace: str, name: str) -> "TrackedReference":
        return cls(group=gvk.group, kind=gvk.kind, namespace=namespace, name=name)

    @classmethod
    def for_selector(
        cls, gvk: GroupVersionKind, namespace: str, selector: LabelSelector
    ) -> "TrackedReference":
        return cls(group=gvk.group, kind=gvk.kind, namespace=namespace, selector=selector)

    def matches(self, key: ObjectKey, labels: Dict[str, str]) -> bool:
        if (key.gvk.group, key.gvk.kind, key.namespace) != (self.group, self.kind, self.namespace):
            return False
        if self.name is not None:
            return key.name == self.name
        return self.selector is not None and self.selector.matches(labels)


class ReferenceTracker:
    """Thread-safe index from referenced objects to the Sources that use them."""

    def __init__(self, enqueue: Optional[Callable[[ObjectKey], None]] = None):
        self._enqueue = enqueue
        self._lock = threading.Lock()
        self._by_source: Dict[ObjectKey, TrackedReference] = {}

    def set_enqueue(self, enqueue: Callable[[ObjectKey], None]) -> None:
        self._enqueue = enqueue

    def track(self, source: ObjectKey, reference: TrackedReference) -> None:
        """Record that ``source`` depends on ``reference`` (replacing any previous one)."""
        with self._lock:
            self._by_source[source] = reference

    def untrack(self, source: ObjectKey) -> None:
        with self._lock:
            self._by_source.pop(source, None)

    def reference_for(self, source: ObjectKey) -> Optional[TrackedReference]:
        with self._lock:
            return self._by_source.get(source)

    def sources_for(self, key: ObjectKey, labels: Optional[Dict[str, str]] = None) -> List[ObjectKey]:
        labels = labels or {}
        with self._lock:
            matches: Set[ObjectKey] = {
                source for source, ref in self._by_source.items() if ref.matches(key, labels)
            }
        return sorted(matches, key=str)

    def on_object_changed(self, key: ObjectKey, labels: Optional[Dict[str, str]] = None) -> List[ObjectKey]:
        """Dispatch every Source tracking ``key`` to the enqueue callback."""
        sources = self.sources_for(key, labels)
        if sources and self._enqueue is not None:
            for source in sources:
                logger.debug(f"{key} changed, enqueueing {source}")
                self._enqueue(source)
        return sources

    def on_cache_event(self, event: WatchEvent) -> None:
        """``ObjectCache`` listener adapter."""
        labels = (event.object.get("metadata") or {}).get("labels") or {}
        self.on_object_changed(event.key, labels)
