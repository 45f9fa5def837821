"""
Exception hierarchy for SourceCore.

Three families:
- ``ResolutionError``: a destination could not be turned into a URI. These are
  converted to condition state by the reconciler and never escape it.
- ``InfrastructureError``: the object cache could not answer in time or is
  stale. The controller retries these with backoff.
- ``ConditionSetError``: the condition schema is malformed. Raised at startup,
  before any reconciliation begins.
"""

from __future__ import annotations

from typing import Optional

from sourcecore.contracts.types import ResolutionFailureKind


class SourceCoreError(Exception):
    """Base class for all SourceCore errors."""


class ConditionSetError(SourceCoreError):
    """The condition set schema is invalid or references an undeclared type."""


class ObjectNotFoundError(SourceCoreError):
    """Raised by object stores when a named object does not exist."""

    def __init__(self, key: object):
        self.key = key
        super().__init__(f"{key} not found")


# ---------------------------------------------------------------------------
# Resolution failures
# ---------------------------------------------------------------------------


class ResolutionError(SourceCoreError):
    """A destination could not be resolved.

    Attributes:
        kind: Failure kind, used as the condition reason.
        retryable: Whether the failure is expected to clear on its own.
    """

    kind: ResolutionFailureKind
    retryable: bool = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidURIError(ResolutionError):
    kind = ResolutionFailureKind.INVALID_URI


class AmbiguousReferenceError(ResolutionError):
    kind = ResolutionFailureKind.AMBIGUOUS_REFERENCE

    def __init__(self, message: str, matches: Optional[list[str]] = None):
        super().__init__(message)
        self.matches = matches or []


class NotFoundError(ResolutionError):
    kind = ResolutionFailureKind.NOT_FOUND


class NotAddressableError(ResolutionError):
    """The target exists but exposes no address yet."""

    kind = ResolutionFailureKind.NOT_ADDRESSABLE
    retryable = True


class InvalidDestinationError(ResolutionError):
    kind = ResolutionFailureKind.INVALID_DESTINATION


# ---------------------------------------------------------------------------
# Infrastructure failures
# ---------------------------------------------------------------------------


class InfrastructureError(SourceCoreError):
    """The object cache could not serve a request. Always retryable."""

    retryable = True


class StaleCacheError(InfrastructureError):
    """A cache bucket lost its watch and could not be relisted."""


class ReconcileTimeoutError(InfrastructureError):
    """A reconcile pass ran past its deadline."""
