"""
Condition set: aggregates named dependent conditions into one happy condition.

A ``ConditionSet`` is declared once per controller (e.g. ``Ready`` depending on
``SinkResolved``) and evaluated fresh on every pass. Only its output, the
conditions list, is persisted on the object.

Aggregation rule for the happy condition:
    - ``True``    every Error-severity dependent is True
    - ``False``   some Error-severity dependent is False; reason and message
                  are copied from the first one in declaration order
    - ``Unknown`` none False, but some Error-severity dependent is Unknown or
                  absent

Warning-severity dependents are reported as their own entries but never
affect the happy condition. A dependent without a recorded severity counts
as Error.

``lastTransitionTime`` moves only when a condition's ``status`` changes.

Usage::

    from sourcecore.conditions import ConditionSet

    conditions = ConditionSet.living("SinkResolved")
    manager = conditions.manage(status)
    manager.initialize_conditions()
    manager.mark_true("SinkResolved")
    manager.is_happy()  # True
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Sequence

from sourcecore.contracts.types import ConditionSeverity, ConditionStatus, ConditionType
from sourcecore.errors import ConditionSetError
from sourcecore.models.status import Condition, SourceStatus

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current UTC time truncated to the second, as persisted."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def apply_transition(
    previous: Optional[Condition],
    candidate: Condition,
    now: datetime,
) -> Condition:
    """Return ``candidate`` with ``lastTransitionTime`` set per the transition rule.

    Identical content returns ``previous`` itself so callers can detect no-ops
    by identity.
    """
    if previous is not None and previous.same_content(candidate) and previous.last_transition_time:
        return previous
    if previous is not None and previous.status == candidate.status and previous.last_transition_time:
        transition = previous.last_transition_time
    else:
        transition = now
    return candidate.model_copy(update={"last_transition_time": transition})


class ConditionSet:
    """Immutable schema: one happy condition type plus its dependents."""

    def __init__(self, happy: str, dependents: Sequence[str] = ()):
        if not happy:
            raise ConditionSetError("happy condition type must not be empty")
        dependents = tuple(str(d) for d in dependents)
        if any(not d for d in dependents):
            raise ConditionSetError("dependent condition types must not be empty")
        if happy in dependents:
            raise ConditionSetError(f"happy condition {happy!r} cannot also be a dependent")
        duplicates = sorted({d for d in dependents if dependents.count(d) > 1})
        if duplicates:
            raise ConditionSetError(f"dependent condition types declared twice: {duplicates}")

        self.happy = str(happy)
        self.dependents = dependents

    @classmethod
    def living(cls, *dependents: str) -> "ConditionSet":
        """Condition set for long-running resources (happy type ``Ready``)."""
        return cls(ConditionType.READY.value, dependents)

    @classmethod
    def batch(cls, *dependents: str) -> "ConditionSet":
        """Condition set for run-to-completion resources (happy type ``Succeeded``)."""
        return cls(ConditionType.SUCCEEDED.value, dependents)

    def declares(self, condition_type: str) -> bool:
        return condition_type == self.happy or condition_type in self.dependents

    def require(self, *condition_types: str) -> None:
        """Fail fast if any of ``condition_types`` is not a declared dependent."""
        missing = [t for t in condition_types if t not in self.dependents]
        if missing:
            raise ConditionSetError(
                f"condition types {missing} are not declared dependents of "
                f"{self.happy!r} (declared: {list(self.dependents)})"
            )

    def default_severity(self, condition_type: str) -> ConditionSeverity:
        if self.declares(condition_type):
            return ConditionSeverity.ERROR
        return ConditionSeverity.WARNING

    def recompute(
        self,
        conditions: Iterable[Condition],
        now: Optional[datetime] = None,
    ) -> tuple[list[Condition], Condition]:
        """Recompute the happy condition from the current dependents.

        Returns the full conditions list (sorted by type) and the happy
        condition within it. Pure: the input conditions are not modified.
        """
        now = now or utcnow()
        by_type = {c.type: c for c in conditions}

        first_false: Optional[Condition] = None
        first_unknown: Optional[Condition] = None
        for dep in self.dependents:
            cond = by_type.get(dep)
            if cond is None:
                if first_unknown is None:
                    first_unknown = Condition(
                        type=dep,
                        status=ConditionStatus.UNKNOWN,
                        message=f"condition {dep} has not been reported",
                    )
                continue
            if cond.effective_severity != ConditionSeverity.ERROR:
                continue
            if cond.is_false():
                first_false = cond
                break
            if cond.is_unknown() and first_unknown is None:
                first_unknown = cond

        if first_false is not None:
            candidate = Condition(
                type=self.happy,
                status=ConditionStatus.FALSE,
                reason=first_false.reason,
                message=first_false.message,
                severity=ConditionSeverity.ERROR,
            )
        elif first_unknown is not None:
            candidate = Condition(
                type=self.happy,
                status=ConditionStatus.UNKNOWN,
                reason=first_unknown.reason,
                message=first_unknown.message,
                severity=ConditionSeverity.ERROR,
            )
        else:
            candidate = Condition(
                type=self.happy,
                status=ConditionStatus.TRUE,
                severity=ConditionSeverity.ERROR,
            )

        happy = apply_transition(by_type.get(self.happy), candidate, now)
        by_type[self.happy] = happy
        return sorted(by_type.values(), key=lambda c: c.type), happy

    def manage(self, status: SourceStatus, clock: Clock = utcnow) -> "ConditionManager":
        return ConditionManager(self, status, clock)

    def __repr__(self) -> str:
        return f"ConditionSet(happy={self.happy!r}, dependents={list(self.dependents)!r})"


class ConditionManager:
    """Mutates the conditions of one status object under a ``ConditionSet``.

    Every mutation re-evaluates the happy condition immediately, so no stale
    happy state survives a pass.
    """

    def __init__(self, condition_set: ConditionSet, status: SourceStatus, clock: Clock = utcnow):
        self.condition_set = condition_set
        self.status = status
        self._clock = clock

    def get_condition(self, condition_type: str) -> Optional[Condition]:
        return self.status.get_condition(condition_type)

    def get_top_level_condition(self) -> Optional[Condition]:
        return self.get_condition(self.condition_set.happy)

    def is_happy(self) -> bool:
        happy = self.get_top_level_condition()
        return happy is not None and happy.is_true()

    def initialize_conditions(self) -> None:
        """Add Unknown entries for the happy type and any absent dependent."""
        now = self._clock()
        conditions = {c.type: c for c in self.status.conditions}
        for condition_type in (self.condition_set.happy, *self.condition_set.dependents):
            if condition_type not in conditions:
                conditions[condition_type] = Condition(
                    type=condition_type,
                    status=ConditionStatus.UNKNOWN,
                    severity=ConditionSeverity.ERROR,
                    last_transition_time=now,
                )
        self._recompute(conditions.values(), now)

    def set_condition(self, condition: Condition) -> Condition:
        """Store ``condition``, keeping the transition time if status is unchanged."""
        now = self._clock()
        if condition.severity is None:
            condition = condition.model_copy(
                update={"severity": self.condition_set.default_severity(condition.type)}
            )
        conditions = {c.type: c for c in self.status.conditions}
        stored = apply_transition(conditions.get(condition.type), condition, now)
        conditions[condition.type] = stored
        if condition.type == self.condition_set.happy:
            self.status.conditions = sorted(conditions.values(), key=lambda c: c.type)
        else:
            self._recompute(conditions.values(), now)
        return stored

    def mark_true(
        self,
        condition_type: str,
        reason: str = "",
        message: str = "",
        severity: Optional[ConditionSeverity] = None,
    ) -> Condition:
        return self.set_condition(Condition(
            type=condition_type,
            status=ConditionStatus.TRUE,
            reason=reason,
            message=message,
            severity=severity,
        ))

    def mark_false(
        self,
        condition_type: str,
        reason: str,
        message: str = "",
        severity: Optional[ConditionSeverity] = None,
    ) -> Condition:
        return self.set_condition(Condition(
            type=condition_type,
            status=ConditionStatus.FALSE,
            reason=reason,
            message=message,
            severity=severity,
        ))

    def mark_unknown(
        self,
        condition_type: str,
        reason: str,
        message: str = "",
        severity: Optional[ConditionSeverity] = None,
    ) -> Condition:
        return self.set_condition(Condition(
            type=condition_type,
            status=ConditionStatus.UNKNOWN,
            reason=reason,
            message=message,
            severity=severity,
        ))

    def clear_condition(self, condition_type: str) -> None:
        """Remove a condition. The happy condition itself cannot be cleared."""
        if condition_type == self.condition_set.happy:
            raise ConditionSetError(f"cannot clear happy condition {condition_type!r}")
        conditions = [c for c in self.status.conditions if c.type != condition_type]
        self._recompute(conditions, self._clock())

    def _recompute(self, conditions: Iterable[Condition], now: datetime) -> None:
        previous = self.get_top_level_condition()
        updated, happy = self.condition_set.recompute(conditions, now)
        self.status.conditions = updated
        if previous is None or previous.status != happy.status:
            logger.debug(
                "Happy condition %s: %s -> %s (%s)",
                self.condition_set.happy,
                previous.status.value if previous else None,
                happy.status.value,
                happy.reason,
            )
