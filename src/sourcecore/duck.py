"""
Addressable capability adapters.

An object is *addressable* when it can tell us where to send events. No
schema is assumed beyond that: each kind is mapped to an adapter that knows
how to read an address out of the raw object.

The mapping is an explicit registry populated once at startup from
configuration. Kinds that were not registered fall back to the generic duck
adapter unless the registry is strict.

Example:
    from sourcecore.duck import default_registry

    registry = default_registry(config)
    adapter = registry.adapter_for(gvk)
    url = adapter.address_url(obj)  # None while the object is not ready
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from sourcecore.contracts.timeouts import DEFAULT_CLUSTER_DOMAIN
from sourcecore.models.core import GroupVersionKind

logger = logging.getLogger(__name__)


@runtime_checkable
class AddressableAdapter(Protocol):
    """Reads the address of one kind of object."""

    def address_url(self, obj: Dict[str, Any]) -> Optional[str]:
        """Return the object's address URL, or None if it has none yet."""
        ...


class DuckAddressableAdapter:
    """
    Reads the Addressable duck type from ``status``.

    Checked in order:
    - ``status.address.url``
    - ``status.address.hostname`` (legacy, rendered as ``http://<hostname>``)
    - ``status.addresses[0].url``
    """

    def address_url(self, obj: Dict[str, Any]) -> Optional[str]:
        status = obj.get("status") or {}
        address = status.get("address") or {}
        if address.get("url"):
            return str(address["url"])
        if address.get("hostname"):
            return f"http://{address['hostname']}"
        for entry in status.get("addresses") or []:
            if isinstance(entry, dict) and entry.get("url"):
                return str(entry["url"])
        return None


class KubernetesServiceAdapter:
    """Core ``v1/Service`` objects are addressable by their cluster DNS name."""

    def __init__(self, cluster_domain: str = DEFAULT_CLUSTER_DOMAIN):
        self.cluster_domain = cluster_domain

    def address_url(self, obj: Dict[str, Any]) -> Optional[str]:
        metadata = obj.get("metadata") or {}
        name = metadata.get("name")
        namespace = metadata.get("namespace")
        if not name or not namespace:
            return None
        return f"http://{name}.{namespace}.svc.{self.cluster_domain}"


SERVICE_GVK = GroupVersionKind(group="", version="v1", kind="Service")


class AddressableRegistry:
    """Explicit mapping from kind to addressable adapter."""

    def __init__(self, strict: bool = False, fallback: Optional[AddressableAdapter] = None):
        self.strict = strict
        self._fallback = fallback or DuckAddressableAdapter()
        self._adapters: Dict[tuple[str, str], AddressableAdapter] = {}

    @staticmethod
    def _key(gvk: GroupVersionKind) -> tuple[str, str]:
        # Versions of one kind share an address shape
        return (gvk.group, gvk.kind)

    def register(self, gvk: GroupVersionKind, adapter: Optional[AddressableAdapter] = None) -> None:
        self._adapters[self._key(gvk)] = adapter or self._fallback
        logger.debug(f"Registered addressable kind {gvk.kind}.{gvk.group or 'core'}")

    def is_registered(self, gvk: GroupVersionKind) -> bool:
        return self._key(gvk) in self._adapters

    def adapter_for(self, gvk: GroupVersionKind) -> Optional[AddressableAdapter]:
        """Adapter for ``gvk``; None if unregistered and the registry is strict."""
        adapter = self._adapters.get(self._key(gvk))
        if adapter is not None:
            return adapter
        if self.strict:
            return None
        return self._fallback

    def kinds(self) -> list[tuple[str, str]]:
        return sorted(self._adapters)


def default_registry(config: Any = None) -> AddressableRegistry:
    """
    Build the registry from configuration.

    Registers the duck adapter for every ``config.addressable_kinds`` entry
    (``kind.group`` or ``kind`` for core kinds) and the Service adapter.
    """
    if config is None:
        from sourcecore.config import get_config
        config = get_config()

    registry = AddressableRegistry(strict=config.strict_addressable_kinds)
    registry.register(SERVICE_GVK, KubernetesServiceAdapter(config.cluster_domain))
    for entry in config.addressable_kinds:
        kind, _, group = entry.partition(".")
        registry.register(GroupVersionKind(group=group, version="", kind=kind))
    return registry
