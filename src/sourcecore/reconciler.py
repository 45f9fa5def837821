"""
Generic Source reconciler.

One pass over a Source-shaped object:

    1. read spec.sink and the current status
    2. resolve the sink through the DestinationResolver
    3. success  -> SinkResolved=True, status.sinkUri = resolved URI
       failure  -> SinkResolved=False (terminal kinds) or Unknown
                   (NotAddressable), reason = failure kind; sinkUri keeps its
                   last value so a momentary lookup failure never interrupts
                   event delivery to the last known sink
    4. recompute the happy condition
    5. observedGeneration = metadata.generation, unless the outcome is a
       retryable Unknown (still converging)
    6. write status back only if it changed

Resolution failures end up in ``status.conditions`` and never propagate.
Infrastructure failures (stale cache, deadline) propagate so the controller
can retry with backoff.

Concrete sources subclass ``SourceReconciler`` and override
``reconcile_kind`` to mark their own dependent conditions.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Union

from pydantic import ValidationError

from sourcecore.conditions import Clock, ConditionManager, ConditionSet, utcnow
from sourcecore.contracts.types import ConditionType
from sourcecore.deadline import Deadline
from sourcecore.errors import (
    InvalidDestinationError,
    ObjectNotFoundError,
    ResolutionError,
)
from sourcecore.logger import ReconcileLogger
from sourcecore.models.core import Destination, ObjectKey
from sourcecore.models.status import SourceObject, SourceStatus
from sourcecore.otel import ReconcileMetrics, add_span_event, reconcile_span
from sourcecore.resolver import DestinationResolver
from sourcecore.storage.base import BaseObjectStore

logger = logging.getLogger(__name__)

SINK_RESOLVED = ConditionType.SINK_RESOLVED.value

OUTCOME_RESOLVED = "resolved"


@dataclass
class ReconcileResult:
    """Outcome of one pass."""
    key: ObjectKey
    status: SourceStatus
    outcome: str = OUTCOME_RESOLVED
    changed: bool = False
    # Set when the pass is still converging and should be retried
    requeue_after: Optional[float] = None
    failure: Optional[ResolutionError] = None

    @property
    def converged(self) -> bool:
        return self.requeue_after is None


class SourceReconciler:
    """
    Reconciles Source-shaped objects of any kind.

    Args:
        condition_set: Declared once at startup; must declare ``SinkResolved``
            and every type in ``extra_conditions`` as dependents.
        resolver: Destination resolver (shares the controller's cache).
        store: Object store used to read Sources and write status.
        config: SourceCoreConfig (escalation policy, requeue delay).
        clock: Source of condition transition times.
        extra_conditions: Dependent types a concrete source marks itself.

    Raises:
        ConditionSetError: The condition set does not declare a required type.
    """

    def __init__(
        self,
        condition_set: ConditionSet,
        resolver: DestinationResolver,
        store: BaseObjectStore,
        config: Any = None,
        clock: Clock = utcnow,
        extra_conditions: Iterable[str] = (),
        event_logger: Optional[ReconcileLogger] = None,
        metrics: Optional[ReconcileMetrics] = None,
    ):
        if config is None:
            from sourcecore.config import get_config
            config = get_config()

        condition_set.require(SINK_RESOLVED, *extra_conditions)

        self.condition_set = condition_set
        self.resolver = resolver
        self.store = store
        self.config = config
        self._clock = clock
        self.event_logger = event_logger or ReconcileLogger(service_name=config.service_name)
        self.metrics = metrics or ReconcileMetrics()
        self._not_addressable_attempts: Dict[ObjectKey, int] = {}
        self._attempts_lock = threading.Lock()

    # Hooks

    def reconcile_kind(self, source: SourceObject, manager: ConditionManager, deadline: Deadline) -> None:
        """Mark kind-specific conditions. Runs after the sink is resolved."""

    # Passes

    def reconcile(
        self,
        obj: Union[Dict[str, Any], SourceObject],
        deadline: Optional[Deadline] = None,
        count_attempt: bool = True,
    ) -> ReconcileResult:
        """Run one pass over ``obj`` and return the status it should have.

        Does not write anything; see ``reconcile_key`` for the full pass.

        ``count_attempt=False`` marks a pass that was not a scheduled retry
        (watch event, tracker trigger, resync): a NotAddressable outcome then
        does not advance the escalation counter past its first failure.
        """
        source = obj if isinstance(obj, SourceObject) else SourceObject(obj)
        deadline = deadline or Deadline.unbounded()
        started = time.monotonic()

        previous = source.status
        status = previous.model_copy(deep=True)
        manager = self.condition_set.manage(status, self._clock)
        manager.initialize_conditions()

        with reconcile_span(source.key):
            failure: Optional[ResolutionError] = None
            uri: Optional[str] = None
            try:
                uri = self.resolver.resolve(
                    self._destination(source),
                    source.namespace,
                    parent=source.key,
                    deadline=deadline,
                )
            except ResolutionError as e:
                failure = e

            if failure is None:
                self._reset_attempts(source.key)
                status.sink_uri = uri
                manager.mark_true(SINK_RESOLVED)
                add_span_event("sink.resolved", {"sink.uri": uri or ""})
                terminal = True
                outcome = OUTCOME_RESOLVED
            else:
                terminal = self._mark_failure(source, manager, failure, count_attempt)
                add_span_event("sink.resolution_failed", {
                    "sink.reason": failure.kind.value,
                    "sink.retryable": not terminal,
                })
                self.metrics.record_resolution_failure(source.key, failure.kind.value)
                outcome = failure.kind.value

            self.reconcile_kind(source, manager, deadline)

        if terminal:
            status.observed_generation = source.generation

        stored = source.raw.get("status") or {}
        result = ReconcileResult(
            key=source.key,
            status=status,
            outcome=outcome,
            changed=status.to_dict() != stored,
            requeue_after=None if terminal else self.config.not_addressable_requeue_seconds,
            failure=failure,
        )
        self._log_changes(source.key, previous, status, failure)
        self.metrics.record_pass(source.key, outcome, time.monotonic() - started)
        return result

    def reconcile_key(
        self,
        key: ObjectKey,
        deadline: Optional[Deadline] = None,
        count_attempt: bool = True,
    ) -> Optional[ReconcileResult]:
        """Fetch, reconcile and persist one Source. Returns None if it is gone."""
        deadline = deadline or Deadline.unbounded()
        try:
            raw = self.store.get(key.gvk, key.namespace, key.name, timeout=deadline.remaining())
        except ObjectNotFoundError:
            logger.debug(f"{key} no longer exists, forgetting it")
            self.forget(key)
            return None

        if (raw.get("metadata") or {}).get("deletionTimestamp"):
            logger.debug(f"{key} is being deleted, skipping")
            self.forget(key)
            return None

        result = self.reconcile(raw, deadline, count_attempt)
        deadline.check(f"reconcile of {key}")
        if result.changed:
            self.store.update_status(key, result.status.to_dict())
            logger.debug(f"Updated status of {key}")
        return result

    def forget(self, key: ObjectKey) -> None:
        """Drop per-Source state for a deleted Source."""
        self._reset_attempts(key)
        if self.resolver.tracker is not None:
            self.resolver.tracker.untrack(key)

    # Internals

    @staticmethod
    def _destination(source: SourceObject) -> Optional[Destination]:
        try:
            return source.sink
        except ValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(part) for part in first.get("loc", ()))
            raise InvalidDestinationError(f"spec.sink.{location}: {first.get('msg')}") from e

    def _mark_failure(
        self,
        source: SourceObject,
        manager: ConditionManager,
        failure: ResolutionError,
        count_attempt: bool = True,
    ) -> bool:
        """Record ``failure`` on SinkResolved. Returns True if the outcome is terminal."""
        reason = failure.kind.value
        if not failure.retryable:
            self._reset_attempts(source.key)
            manager.mark_false(SINK_RESOLVED, reason, failure.message)
            return True

        limit = self.config.not_addressable_escalation_attempts
        attempts = self._bump_attempts(source.key, count_attempt)
        if limit is not None and attempts >= limit:
            manager.mark_false(
                SINK_RESOLVED,
                reason,
                f"{failure.message}; gave up after {limit} attempts",
            )
            return True

        manager.mark_unknown(SINK_RESOLVED, reason, failure.message)
        return False

    def _bump_attempts(self, key: ObjectKey, count: bool = True) -> int:
        with self._attempts_lock:
            attempts = self._not_addressable_attempts.get(key, 0)
            # The first failure always counts
            if count or attempts == 0:
                attempts += 1
                self._not_addressable_attempts[key] = attempts
            return attempts

    def _reset_attempts(self, key: ObjectKey) -> None:
        with self._attempts_lock:
            self._not_addressable_attempts.pop(key, None)

    def _log_changes(
        self,
        key: ObjectKey,
        previous: SourceStatus,
        current: SourceStatus,
        failure: Optional[ResolutionError],
    ) -> None:
        for cond in current.conditions:
            before = previous.get_condition(cond.type)
            if before is None or before.status != cond.status:
                self.event_logger.log_condition_transitioned(
                    key,
                    cond.type,
                    before.status.value if before else None,
                    cond.status.value,
                    cond.reason,
                )

        if failure is None:
            if current.sink_uri != previous.sink_uri:
                self.event_logger.log_sink_resolved(key, current.sink_uri or "", previous.sink_uri)
            return

        before = previous.get_condition(SINK_RESOLVED)
        if before is None or before.reason != failure.kind.value:
            self.event_logger.log_resolution_failed(
                key, failure.kind.value, failure.message, retryable=failure.retryable
            )
