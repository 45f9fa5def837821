"""
Wiring for a SourceCore process.

Builds the pieces declared once at startup (condition set, addressable
registry, object cache, tracker, resolver, reconciler) from configuration,
so every schema error surfaces before the first reconcile.

Example:
    from sourcecore.runtime import build_controller

    controller = build_controller(
        GroupVersionKind.from_api_version("sources.knative.dev/v1", "PingSource"),
    )
    controller.start()
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional, Type

from sourcecore.conditions import ConditionSet
from sourcecore.contracts.types import StoreType
from sourcecore.controller import SourceController
from sourcecore.duck import default_registry
from sourcecore.models.core import GroupVersionKind
from sourcecore.reconciler import SINK_RESOLVED, SourceReconciler
from sourcecore.resolver import DestinationResolver
from sourcecore.storage.base import BaseObjectStore, get_store
from sourcecore.storage.cache import ObjectCache
from sourcecore.tracker import ReferenceTracker

logger = logging.getLogger(__name__)


def store_from_config(config: Any) -> BaseObjectStore:
    """Create the object store named by ``config.store_type``."""
    if config.store_type == "auto":
        return get_store(
            None,
            kubeconfig=config.kubeconfig,
            base_dir=config.manifest_dir,
            watch_timeout_seconds=config.watch_timeout_seconds,
        )
    store_type = StoreType(config.store_type)
    if store_type == StoreType.KUBERNETES:
        return get_store(
            store_type,
            kubeconfig=config.kubeconfig,
            watch_timeout_seconds=config.watch_timeout_seconds,
        )
    if store_type == StoreType.FILE:
        return get_store(store_type, base_dir=config.manifest_dir)
    return get_store(store_type)


def build_reconciler(
    store: BaseObjectStore,
    config: Any = None,
    extra_conditions: Iterable[str] = (),
    reconciler_class: Type[SourceReconciler] = SourceReconciler,
    cache: Optional[ObjectCache] = None,
    **kwargs: Any,
) -> SourceReconciler:
    """Build a reconciler and its collaborators over ``store``.

    Raises:
        ConditionSetError: The declared conditions are inconsistent.
    """
    if config is None:
        from sourcecore.config import get_config
        config = get_config()

    extra_conditions = tuple(extra_conditions)
    condition_set = ConditionSet(config.happy_condition, (SINK_RESOLVED, *extra_conditions))
    resolver = DestinationResolver(
        cache or ObjectCache(store),
        default_registry(config),
        ReferenceTracker(),
    )
    return reconciler_class(
        condition_set,
        resolver,
        store,
        config=config,
        extra_conditions=extra_conditions,
        **kwargs,
    )


def build_controller(
    source_gvk: GroupVersionKind,
    config: Any = None,
    store: Optional[BaseObjectStore] = None,
    extra_conditions: Iterable[str] = (),
    reconciler_class: Type[SourceReconciler] = SourceReconciler,
) -> SourceController:
    """Build a ready-to-start controller for one Source kind."""
    if config is None:
        from sourcecore.config import get_config
        config = get_config()

    store = store or store_from_config(config)
    reconciler = build_reconciler(
        store,
        config,
        extra_conditions=extra_conditions,
        reconciler_class=reconciler_class,
    )
    logger.debug(
        f"Built controller for {source_gvk} with {reconciler.condition_set!r}, "
        f"addressable kinds {reconciler.resolver.registry.kinds()}"
    )
    return SourceController(
        reconciler,
        reconciler.resolver.cache,
        source_gvk,
        namespace=config.namespace,
        config=config,
    )
