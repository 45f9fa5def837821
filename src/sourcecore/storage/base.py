"""
Base object store protocol and factory.

Defines the collaborator interface every backend must honor:

    get(gvk, namespace, name)         -> object | ObjectNotFoundError
    list(gvk, namespace, selector)    -> ([object], resourceVersion)
    watch(gvk, namespace, handler)    -> WatchHandle
    update_status(key, status)        -> None

Objects are plain dicts in their API form; no kind is known in advance.
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, Type, runtime_checkable

from sourcecore.contracts.types import StoreType, WatchEventType
from sourcecore.models.core import GroupVersionKind, LabelSelector, ObjectKey

logger = logging.getLogger(__name__)


@dataclass
class WatchEvent:
    """One change notification from a store watch."""
    type: WatchEventType
    object: Dict[str, Any]

    @property
    def key(self) -> ObjectKey:
        return ObjectKey.for_object(self.object)


WatchHandler = Callable[[WatchEvent], None]
WatchErrorHandler = Callable[[Exception], None]


class WatchHandle(Protocol):
    """Returned by ``watch``; stops delivering events once stopped."""

    def stop(self) -> None:
        ...


@runtime_checkable
class ObjectStore(Protocol):
    """
    Protocol defining the object store interface.

    All store implementations must provide these methods.
    """

    def get(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        name: str,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Fetch one object. Raises ObjectNotFoundError if absent."""
        ...

    def list(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        selector: Optional[LabelSelector] = None,
        timeout: Optional[float] = None,
    ) -> Tuple[List[Dict[str, Any]], str]:
        """List objects of a kind in a namespace and the list's resourceVersion."""
        ...

    def watch(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        handler: WatchHandler,
        on_error: Optional[WatchErrorHandler] = None,
        resource_version: Optional[str] = None,
    ) -> WatchHandle:
        """Deliver change notifications for a kind in a namespace."""
        ...

    def update_status(self, key: ObjectKey, status: Dict[str, Any]) -> Dict[str, Any]:
        """Replace an object's status. Returns the updated object."""
        ...


class BaseObjectStore(ABC):
    """
    Abstract base class for object stores.

    An empty ``namespace`` means all namespaces for ``list`` and ``watch``.
    """

    @abstractmethod
    def get(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        name: str,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Fetch one object. Raises ObjectNotFoundError if absent."""
        pass

    @abstractmethod
    def list(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        selector: Optional[LabelSelector] = None,
        timeout: Optional[float] = None,
    ) -> Tuple[List[Dict[str, Any]], str]:
        """List objects of a kind in a namespace and the list's resourceVersion."""
        pass

    @abstractmethod
    def watch(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        handler: WatchHandler,
        on_error: Optional[WatchErrorHandler] = None,
        resource_version: Optional[str] = None,
    ) -> WatchHandle:
        """Deliver change notifications for a kind in a namespace."""
        pass

    @abstractmethod
    def update_status(self, key: ObjectKey, status: Dict[str, Any]) -> Dict[str, Any]:
        """Replace an object's status. Returns the updated object."""
        pass

    def close(self) -> None:
        """Release background resources (watches, connections)."""


# Store backend registry
_BACKENDS: Dict[StoreType, Type[BaseObjectStore]] = {}


def register_backend(store_type: StoreType):
    """Decorator to register a store backend."""
    def decorator(cls: Type[BaseObjectStore]) -> Type[BaseObjectStore]:
        _BACKENDS[store_type] = cls
        return cls
    return decorator


def get_store(
    store_type: Optional[StoreType] = None,
    **kwargs: Any,
) -> BaseObjectStore:
    """
    Get an object store instance.

    Auto-detects the appropriate backend if not specified:
    - Uses Kubernetes if running in-cluster or KUBECONFIG is set
    - Falls back to the file store otherwise

    Args:
        store_type: Explicit store type to use
        **kwargs: Additional backend-specific options

    Returns:
        Object store instance
    """
    # Import backends to register them
    from sourcecore.storage import file, kubernetes, memory  # noqa: F401

    if store_type is None:
        store_type = _detect_store_type()

    if store_type not in _BACKENDS:
        raise ValueError(f"Unknown store type: {store_type}")

    backend_class = _BACKENDS[store_type]
    return backend_class(**kwargs)


def _detect_store_type() -> StoreType:
    """Auto-detect the appropriate store type."""
    if os.path.exists("/var/run/secrets/kubernetes.io/serviceaccount"):
        logger.info("Detected in-cluster Kubernetes environment")
        return StoreType.KUBERNETES

    if os.environ.get("KUBECONFIG"):
        logger.info("Detected KUBECONFIG environment variable")
        return StoreType.KUBERNETES

    if os.path.exists(os.path.expanduser("~/.kube/config")):
        logger.info("Detected local kubeconfig file")
        return StoreType.KUBERNETES

    logger.info("No Kubernetes detected, using file store")
    return StoreType.FILE
