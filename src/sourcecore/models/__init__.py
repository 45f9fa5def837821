"""
Data model for SourceCore.

- ``core``: object identity (GVK, keys), label selectors, destinations
- ``status``: conditions, Source status and the Source object view
"""

from sourcecore.models.core import (
    Destination,
    GroupVersionKind,
    KReference,
    LabelSelector,
    LabelSelectorRequirement,
    ObjectKey,
)
from sourcecore.models.status import (
    Condition,
    SourceObject,
    SourceStatus,
    format_timestamp,
    parse_timestamp,
)

__all__ = [
    "Condition",
    "Destination",
    "GroupVersionKind",
    "KReference",
    "LabelSelector",
    "LabelSelectorRequirement",
    "ObjectKey",
    "SourceObject",
    "SourceStatus",
    "format_timestamp",
    "parse_timestamp",
]
