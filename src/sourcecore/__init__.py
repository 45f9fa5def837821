"""
SourceCore - generic sink resolution and readiness for Source resources.

Any custom resource that carries ``spec.sink`` can be reconciled without
compile-time knowledge of its schema:

- The DestinationResolver turns ``spec.sink`` (a URI, an object reference, or
  a reference with a label selector, plus an optional URI suffix) into a
  concrete URI, reading targets through a watch-backed object cache.
- The ConditionSet aggregates named conditions such as ``SinkResolved`` into
  a single ``Ready`` (or ``Succeeded``) condition.
- The SourceReconciler writes both back as ``status.sinkUri`` and
  ``status.conditions``.

Example usage:
    from sourcecore import ConditionSet, DestinationResolver, SourceReconciler
    from sourcecore.runtime import build_reconciler
    from sourcecore.storage import MemoryObjectStore

    store = MemoryObjectStore([broker, source])
    reconciler = build_reconciler(store)
    result = reconciler.reconcile_key(source_key)
    result.status.sink_uri  # "http://broker-ingress.default.svc.cluster.local"
"""

__version__ = "0.1.0"
__all__ = [
    "ConditionSet",
    "DestinationResolver",
    "ObjectCache",
    "SourceController",
    "SourceReconciler",
    "__version__",
]


# Lazy imports to avoid loading heavy dependencies at import time
def __getattr__(name: str):
    if name == "ConditionSet":
        from sourcecore.conditions import ConditionSet
        return ConditionSet
    if name == "DestinationResolver":
        from sourcecore.resolver import DestinationResolver
        return DestinationResolver
    if name == "ObjectCache":
        from sourcecore.storage.cache import ObjectCache
        return ObjectCache
    if name == "SourceController":
        from sourcecore.controller import SourceController
        return SourceController
    if name == "SourceReconciler":
        from sourcecore.reconciler import SourceReconciler
        return SourceReconciler
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
