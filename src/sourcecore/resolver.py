"""
Destination resolver: turns a sink reference into a concrete URI.

Resolution rules:
    1. ``uri`` only: must be absolute; returned verbatim.
    2. ``ref`` (+ optional ``selector``): the target is looked up through the
       object cache. Namespace defaults to the parent Source's.
       - selector: exactly one match required (0 -> NotFound, >1 -> Ambiguous)
       - name: the object must exist (NotFound)
       - the object must expose an address (NotAddressable, retryable)
       - ``uri`` on a ref is a suffix resolved against the object's address
    3. Anything else is an invalid destination.

Failures are raised as ``ResolutionError`` subclasses carrying a
``ResolutionFailureKind``; infrastructure errors from the cache
(``StaleCacheError``, ``ReconcileTimeoutError``) pass through untouched.

For a fixed store state the resolver is deterministic.

Usage::

    from sourcecore.resolver import DestinationResolver

    resolver = DestinationResolver(cache, registry, tracker)
    uri = resolver.resolve(source.sink, source.namespace, parent=source.key)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

from sourcecore.deadline import Deadline
from sourcecore.duck import AddressableRegistry
from sourcecore.errors import (
    AmbiguousReferenceError,
    InvalidDestinationError,
    InvalidURIError,
    NotAddressableError,
    NotFoundError,
    ObjectNotFoundError,
)
from sourcecore.models.core import Destination, GroupVersionKind, KReference, ObjectKey
from sourcecore.storage.cache import ObjectCache
from sourcecore.tracker import ReferenceTracker, TrackedReference

logger = logging.getLogger(__name__)


def is_absolute_uri(uri: str) -> bool:
    """True for URIs with both a scheme and a host."""
    try:
        parts = urlsplit(uri)
    except ValueError:
        return False
    return bool(parts.scheme) and bool(parts.netloc)


def compose_uri(base: str, suffix: Optional[str]) -> str:
    """
    Resolve ``suffix`` against ``base``.

    - no suffix: ``base`` unchanged
    - suffix with a scheme: replaces ``base`` entirely
    - absolute-path suffix (``/x``): replaces the path of ``base``
    - relative suffix (``x``, ``x?q``): appended to the path of ``base``

    Raises:
        InvalidURIError: ``suffix`` names a host without a scheme (``//h/x``).
    """
    if not suffix:
        return base
    try:
        suffix_parts = urlsplit(suffix)
    except ValueError as e:
        raise InvalidURIError(f"URI suffix {suffix!r} is malformed: {e}") from e
    if suffix_parts.scheme:
        return suffix
    if suffix_parts.netloc:
        # Only the path of the address may change
        raise InvalidURIError(f"URI suffix {suffix!r} must not name a host without a scheme")
    if suffix.startswith("/") or suffix.startswith("?") or suffix.startswith("#"):
        return urljoin(base, suffix)
    base_parts = urlsplit(base)
    path = base_parts.path if base_parts.path.endswith("/") else base_parts.path + "/"
    directory = urlunsplit((base_parts.scheme, base_parts.netloc, path, "", ""))
    return urljoin(directory, suffix)


class DestinationResolver:
    """Resolves ``Destination`` values through an ``ObjectCache``.

    Holds no state of its own beyond its collaborators.
    """

    def __init__(
        self,
        cache: ObjectCache,
        registry: AddressableRegistry,
        tracker: Optional[ReferenceTracker] = None,
    ):
        self.cache = cache
        self.registry = registry
        self.tracker = tracker

    def resolve(
        self,
        destination: Optional[Destination],
        namespace: str,
        parent: Optional[ObjectKey] = None,
        deadline: Optional[Deadline] = None,
    ) -> str:
        """Return the concrete URI for ``destination``.

        Args:
            destination: Sink reference from the Source spec.
            namespace: Namespace used when the reference omits one.
            parent: The Source being reconciled; tracked against the target.
            deadline: Deadline of the current pass.

        Raises:
            ResolutionError: The destination cannot be resolved.
            InfrastructureError: The cache could not answer.
        """
        deadline = deadline or Deadline.unbounded()
        if destination is None or destination.ref is None:
            # Nothing to watch on behalf of this parent any more
            if self.tracker is not None and parent is not None:
                self.tracker.untrack(parent)

        if destination is None:
            raise InvalidDestinationError("sink is not set")

        if destination.ref is None:
            if destination.selector is not None:
                raise InvalidDestinationError("selector requires ref with apiVersion and kind")
            if not destination.uri:
                raise InvalidDestinationError("expected exactly one of uri or ref, got neither")
            return self._resolve_uri(destination.uri)

        return self._resolve_ref(destination, namespace, parent, deadline)

    def _resolve_uri(self, uri: str) -> str:
        if not is_absolute_uri(uri):
            raise InvalidURIError(f"URI {uri!r} is not absolute")
        return uri

    def _resolve_ref(
        self,
        destination: Destination,
        namespace: str,
        parent: Optional[ObjectKey],
        deadline: Deadline,
    ) -> str:
        ref: KReference = destination.ref
        gvk = ref.gvk
        ref_namespace = ref.namespace or namespace
        selector = destination.selector

        if not ref.kind or not ref.api_version:
            raise InvalidDestinationError("ref requires apiVersion and kind")
        if ref.name and selector is not None:
            raise InvalidDestinationError("ref cannot set both name and selector")
        if not ref.name and selector is None:
            raise InvalidDestinationError("ref requires a name or a selector")

        adapter = self.registry.adapter_for(gvk)
        if adapter is None:
            raise InvalidDestinationError(f"kind {gvk.kind}.{gvk.group or 'core'} is not registered as addressable")

        # Track before looking up so a missing target still triggers a pass when created
        if self.tracker is not None and parent is not None:
            if ref.name:
                self.tracker.track(parent, TrackedReference.for_name(gvk, ref_namespace, ref.name))
            else:
                self.tracker.track(parent, TrackedReference.for_selector(gvk, ref_namespace, selector))

        if ref.name:
            target = self._get(gvk, ref_namespace, ref.name, deadline)
        else:
            target = self._select(destination, ref_namespace, deadline)

        target_name = (target.get("metadata") or {}).get("name", ref.name)
        base = adapter.address_url(target)
        if not base:
            raise NotAddressableError(
                f"{gvk.kind} {ref_namespace}/{target_name} does not have an address yet"
            )
        if not is_absolute_uri(base):
            raise NotAddressableError(
                f"{gvk.kind} {ref_namespace}/{target_name} has an invalid address {base!r}"
            )

        uri = compose_uri(base, destination.uri)
        if not is_absolute_uri(uri):
            raise InvalidURIError(f"URI {destination.uri!r} does not compose with {base!r}")
        logger.debug(f"Resolved {destination.describe()} to {uri}")
        return uri

    def _get(self, gvk: GroupVersionKind, namespace: str, name: str, deadline: Deadline) -> Dict[str, Any]:
        try:
            return self.cache.get(gvk, namespace, name, deadline=deadline)
        except ObjectNotFoundError:
            raise NotFoundError(f"{gvk.kind} {namespace}/{name} not found")

    def _select(self, destination: Destination, namespace: str, deadline: Deadline) -> Dict[str, Any]:
        gvk = destination.ref.gvk
        selector = destination.selector
        matches = self.cache.list(gvk, namespace, selector, deadline=deadline)
        rendered = selector.to_label_selector() or "<everything>"
        if not matches:
            raise NotFoundError(f"no {gvk.kind} in {namespace} matches selector {rendered}")
        if len(matches) > 1:
            names = [(m.get("metadata") or {}).get("name", "") for m in matches]
            raise AmbiguousReferenceError(
                f"{len(matches)} {gvk.kind} objects in {namespace} match selector {rendered}: {names}",
                matches=names,
            )
        return matches[0]
