"""
Controller runtime: work queue, worker pool and resync.

Reconcile requests are keyed by (kind, namespace, name):

- a key is never processed by two workers at once; adding a key while it is
  being processed queues exactly one more pass after the current one
- distinct keys run in parallel on ``config.workers`` threads
- infrastructure failures are retried with per-key exponential backoff
- NotAddressable sinks are re-checked every ``not_addressable_requeue_seconds``;
  only those scheduled re-checks count toward escalation
- every Source is re-enqueued every ``resync_interval_seconds`` to catch
  sinks whose change notification was missed

Triggers:
- create/update/delete of a Source (watch on the Source kind)
- change of any object a Source's sink currently points at (tracker)
- periodic resync

Example:
    controller = SourceController(reconciler, cache, source_gvk, namespace="default")
    controller.start()
    ...
    controller.stop()
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from sourcecore.contracts.types import WatchEventType
from sourcecore.deadline import Deadline
from sourcecore.logger import ReconcileLogger
from sourcecore.models.core import GroupVersionKind, ObjectKey
from sourcecore.reconciler import SourceReconciler
from sourcecore.storage.base import WatchEvent, WatchHandle
from sourcecore.storage.cache import ObjectCache
from sourcecore.tracker import ReferenceTracker

logger = logging.getLogger(__name__)


class WorkQueue:
    """
    De-duplicating, per-key serialized work queue with delayed and
    rate-limited adds.

    Keys move through three states: waiting (delayed), queued (dirty) and
    processing. ``get`` hands a key to one worker; ``done`` releases it and
    re-queues it if it was added again in the meantime.
    """

    def __init__(
        self,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._backoff_base = backoff_base_seconds
        self._backoff_max = backoff_max_seconds
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: Deque[ObjectKey] = deque()
        self._dirty: Set[ObjectKey] = set()
        self._processing: Set[ObjectKey] = set()
        self._waiting: List[Tuple[float, int, ObjectKey]] = []
        # Earliest pending ready time per delayed key
        self._ready_at: Dict[ObjectKey, float] = {}
        self._failures: Dict[ObjectKey, int] = {}
        self._seq = itertools.count()
        self._shutting_down = False

    def add(self, key: ObjectKey) -> None:
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: ObjectKey, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            ready_at = self._clock() + delay
            existing = self._ready_at.get(key)
            if existing is not None and existing <= ready_at:
                return
            self._ready_at[key] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._seq), key))
            self._cond.notify_all()

    def add_rate_limited(self, key: ObjectKey) -> float:
        """Re-add ``key`` after its exponential backoff delay. Returns the delay."""
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        delay = min(self._backoff_base * (2 ** failures), self._backoff_max)
        self.add_after(key, delay)
        return delay

    def forget(self, key: ObjectKey) -> None:
        """Reset the backoff of ``key``."""
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: ObjectKey) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def get(self, timeout: Optional[float] = None) -> Optional[ObjectKey]:
        """Block until a key is ready. Returns None on timeout or shutdown."""
        with self._cond:
            end = None if timeout is None else self._clock() + timeout
            while True:
                self._promote_ready()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key
                if self._shutting_down:
                    return None

                wait: Optional[float] = None
                if self._waiting:
                    wait = max(0.0, self._waiting[0][0] - self._clock())
                if end is not None:
                    remaining = end - self._clock()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: ObjectKey) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def is_processing(self, key: ObjectKey) -> bool:
        with self._cond:
            return key in self._processing

    def __len__(self) -> int:
        with self._cond:
            self._promote_ready()
            return len(self._queue)

    def pending_delayed(self) -> int:
        with self._cond:
            return len(self._ready_at)

    def now(self) -> float:
        return self._clock()

    def _add_locked(self, key: ObjectKey) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            # Picked up again by done()
            return
        self._queue.append(key)
        self._cond.notify()

    def _promote_ready(self) -> None:
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            ready_at, _, key = heapq.heappop(self._waiting)
            if self._ready_at.get(key) != ready_at:
                # Superseded by an earlier add_after
                continue
            del self._ready_at[key]
            self._add_locked(key)


class SourceController:
    """
    Drives a ``SourceReconciler`` for one Source kind.

    Args:
        reconciler: The reconciler; its resolver must share ``cache``.
        cache: Object cache used for sink lookups.
        source_gvk: Kind of the Sources to reconcile.
        namespace: Namespace to watch ("" for all).
        config: SourceCoreConfig (workers, resync, timeouts, backoff).
    """

    def __init__(
        self,
        reconciler: SourceReconciler,
        cache: ObjectCache,
        source_gvk: GroupVersionKind,
        namespace: str = "",
        config: Any = None,
        queue: Optional[WorkQueue] = None,
        event_logger: Optional[ReconcileLogger] = None,
    ):
        if config is None:
            from sourcecore.config import get_config
            config = get_config()

        self.reconciler = reconciler
        self.store = reconciler.store
        self.cache = cache
        self.source_gvk = source_gvk
        self.namespace = namespace
        self.config = config
        self.queue = queue or WorkQueue(config.backoff_base_seconds, config.backoff_max_seconds)
        self.event_logger = event_logger or reconciler.event_logger

        if reconciler.resolver.tracker is None:
            reconciler.resolver.tracker = ReferenceTracker()
        self.tracker = reconciler.resolver.tracker
        self.tracker.set_enqueue(self.enqueue)
        cache.add_listener(self.tracker.on_cache_event)

        self._stopping = threading.Event()
        self._threads: List[threading.Thread] = []
        self._source_watch: Optional[WatchHandle] = None
        self._watch_lock = threading.Lock()
        # Queue time at which each pending NotAddressable retry is due
        self._retry_due: Dict[ObjectKey, float] = {}
        self._retry_lock = threading.Lock()

    # Triggers

    def enqueue(self, key: ObjectKey) -> None:
        self.queue.add(key)

    def _on_source_event(self, event: WatchEvent) -> None:
        key = event.key
        if event.type == WatchEventType.DELETED:
            self.reconciler.forget(key)
            self.queue.forget(key)
            self._clear_retry(key)
            return
        self.enqueue(key)

    def _on_source_watch_error(self, error: Exception) -> None:
        logger.warning(f"Source watch for {self.source_gvk} failed, reopening at next resync: {error}")
        with self._watch_lock:
            self._source_watch = None

    def resync(self) -> int:
        """Enqueue every Source and reopen dropped watches. Returns the count enqueued."""
        items, resource_version = self.store.list(self.source_gvk, self.namespace)
        for obj in items:
            self.enqueue(ObjectKey.for_object(obj))
        self._ensure_source_watch(resource_version)
        self.cache.refresh_stale()
        logger.debug(f"Resync enqueued {len(items)} {self.source_gvk.kind} objects")
        return len(items)

    def _ensure_source_watch(self, resource_version: Optional[str]) -> None:
        with self._watch_lock:
            if self._source_watch is not None or self._stopping.is_set():
                return
            self._source_watch = self.store.watch(
                self.source_gvk,
                self.namespace,
                self._on_source_event,
                self._on_source_watch_error,
                resource_version,
            )

    # Processing

    def process_next(self, timeout: Optional[float] = None) -> bool:
        """Process one key. Returns False if none was ready within ``timeout``."""
        key = self.queue.get(timeout)
        if key is None:
            return False
        retry_due = self._take_retry(key)
        try:
            deadline = Deadline(self.config.reconcile_timeout_seconds)
            try:
                result = self.reconciler.reconcile_key(key, deadline, count_attempt=retry_due is not None)
            except Exception as e:
                if retry_due is not None:
                    self._restore_retry(key, retry_due)
                attempts = self.queue.num_requeues(key) + 1
                delay = self.queue.add_rate_limited(key)
                logger.warning(f"Reconcile of {key} failed (attempt {attempts}), retrying in {delay:.2f}s: {e}")
                self.event_logger.log_reconcile_failed(key, e, attempts)
                self.event_logger.log_requeued(key, delay, type(e).__name__)
                return True

            self.queue.forget(key)
            if result is not None and result.requeue_after:
                self._schedule_retry(key, result.requeue_after)
                logger.debug(f"{key} still converging ({result.outcome}), requeued in {result.requeue_after}s")
            else:
                self._clear_retry(key)
            return True
        finally:
            self.queue.done(key)

    def drain(self, timeout: float = 0.0) -> int:
        """Process keys until none is ready within ``timeout``. Returns the count."""
        processed = 0
        while self.process_next(timeout=timeout):
            processed += 1
        return processed

    # Retries

    def _schedule_retry(self, key: ObjectKey, delay: float) -> None:
        with self._retry_lock:
            self._retry_due.setdefault(key, self.queue.now() + delay)
        self.queue.add_after(key, delay)

    def _take_retry(self, key: ObjectKey) -> Optional[float]:
        """Claim the pending retry of ``key`` if it is due. Returns its due time."""
        with self._retry_lock:
            due = self._retry_due.get(key)
            if due is None or self.queue.now() < due:
                return None
            del self._retry_due[key]
            return due

    def _restore_retry(self, key: ObjectKey, due: float) -> None:
        with self._retry_lock:
            self._retry_due.setdefault(key, due)

    def _clear_retry(self, key: ObjectKey) -> None:
        with self._retry_lock:
            self._retry_due.pop(key, None)

    # Lifecycle

    def start(self, workers: Optional[int] = None) -> None:
        """List Sources, open watches and start worker and resync threads."""
        self._stopping.clear()
        self.resync()

        for i in range(workers or self.config.workers):
            self._spawn(self._worker_loop, f"reconcile-worker-{i}")
        self._spawn(self._resync_loop, "resync")
        logger.info(
            f"Started controller for {self.source_gvk} in "
            f"{self.namespace or 'all namespaces'} with {workers or self.config.workers} workers"
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stopping.set()
        self.queue.shutdown()
        with self._watch_lock:
            if self._source_watch is not None:
                self._source_watch.stop()
                self._source_watch = None
        for thread in self._threads:
            thread.join(timeout)
        self._threads.clear()
        logger.info(f"Stopped controller for {self.source_gvk}")

    def _spawn(self, target: Callable[[], None], name: str) -> None:
        thread = threading.Thread(target=target, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def _worker_loop(self) -> None:
        while not self._stopping.is_set():
            self.process_next(timeout=0.5)

    def _resync_loop(self) -> None:
        while not self._stopping.wait(self.config.resync_interval_seconds):
            try:
                self.resync()
            except Exception as e:
                logger.warning(f"Resync of {self.source_gvk} failed: {e}")
