"""
Canonical enums for SourceCore.

Every value here ends up verbatim in ``status.conditions`` or in a log line,
so the enums subclass ``str`` and their values match the persisted form.
"""

from __future__ import annotations

from enum import Enum


class ConditionStatus(str, Enum):
    """Tri-state value of a condition."""
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ConditionSeverity(str, Enum):
    """Whether a failing condition blocks the happy condition."""
    ERROR = "Error"
    WARNING = "Warning"


class ConditionType(str, Enum):
    """Well-known condition types."""
    READY = "Ready"
    SUCCEEDED = "Succeeded"
    SINK_RESOLVED = "SinkResolved"


class ResolutionFailureKind(str, Enum):
    """Why a destination could not be resolved to a URI."""
    INVALID_URI = "InvalidURI"
    AMBIGUOUS_REFERENCE = "AmbiguousReference"
    NOT_FOUND = "NotFound"
    NOT_ADDRESSABLE = "NotAddressable"
    INVALID_DESTINATION = "InvalidDestination"


class StoreType(str, Enum):
    """Available object store backends."""
    KUBERNETES = "kubernetes"
    FILE = "file"
    MEMORY = "memory"


class WatchEventType(str, Enum):
    """Change notification types delivered by a store watch."""
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
