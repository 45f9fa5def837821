"""
Shared contracts for SourceCore.

This module centralizes the values that must stay consistent between the
condition set, the resolver, the reconciler and whatever reads the
persisted status:
- Condition status/severity/type enums
- Resolution failure kinds
- Timeout, resync and backoff defaults

Example:
    from sourcecore.contracts import ConditionStatus, ResolutionFailureKind

    if condition.status == ConditionStatus.UNKNOWN:
        ...
"""

from sourcecore.contracts.types import (
    ConditionSeverity,
    ConditionStatus,
    ConditionType,
    ResolutionFailureKind,
    StoreType,
    WatchEventType,
)

__all__ = [
    "ConditionSeverity",
    "ConditionStatus",
    "ConditionType",
    "ResolutionFailureKind",
    "StoreType",
    "WatchEventType",
]
