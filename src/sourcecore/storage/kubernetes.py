"""
Kubernetes object store backed by the dynamic client.

Kinds are discovered at runtime from their apiVersion/kind, so any CRD the
controller is authorized to read can be a Source or a sink target.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from kubernetes import client, config, watch
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import NotFoundError as K8sNotFoundError

from sourcecore.contracts.timeouts import (
    K8S_API_CONNECT_TIMEOUT_S,
    K8S_API_READ_TIMEOUT_S,
    K8S_WATCH_TIMEOUT_S,
)
from sourcecore.contracts.types import StoreType, WatchEventType
from sourcecore.errors import ObjectNotFoundError
from sourcecore.models.core import GroupVersionKind, LabelSelector, ObjectKey
from sourcecore.storage.base import (
    BaseObjectStore,
    WatchErrorHandler,
    WatchEvent,
    WatchHandler,
    register_backend,
)

logger = logging.getLogger(__name__)


class WatchExpiredError(Exception):
    """The API server ended a watch with an ERROR event (e.g. 410 Gone)."""


def _with_kind(obj: Dict[str, Any], gvk: GroupVersionKind) -> Dict[str, Any]:
    # List and watch items omit apiVersion/kind
    obj.setdefault("apiVersion", gvk.api_version)
    obj.setdefault("kind", gvk.kind)
    return obj


class _KubernetesWatch:
    """Background thread streaming one (kind, namespace) watch.

    The thread reopens the watch after a server-side timeout and exits on
    any error after reporting it, leaving recovery (relist) to the caller.
    """

    def __init__(
        self,
        resource: Any,
        gvk: GroupVersionKind,
        namespace: str,
        handler: WatchHandler,
        on_error: Optional[WatchErrorHandler],
        resource_version: Optional[str],
        timeout_seconds: int,
        on_exit: Optional[Callable[["_KubernetesWatch"], None]] = None,
    ):
        self._resource = resource
        self.gvk = gvk
        self.namespace = namespace
        self._handler = handler
        self._on_error = on_error
        self._resource_version = resource_version
        self._timeout_seconds = timeout_seconds
        self._on_exit = on_exit
        self._watcher = watch.Watch()
        self._stopped = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name=f"watch-{gvk.kind}-{namespace or 'all'}",
            daemon=True,
        )

    def start(self) -> "_KubernetesWatch":
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stopped.set()
        self._watcher.stop()
        self._exited()

    def join(self, timeout: Optional[float] = None) -> None:
        self._thread.join(timeout)

    def _exited(self) -> None:
        if self._on_exit is not None:
            self._on_exit(self)

    def _run(self) -> None:
        try:
            self._stream()
        finally:
            self._exited()

    def _stream(self) -> None:
        while not self._stopped.is_set():
            try:
                for event in self._resource.watch(
                    namespace=self.namespace or None,
                    resource_version=self._resource_version,
                    timeout=self._timeout_seconds,
                    watcher=self._watcher,
                ):
                    if self._stopped.is_set():
                        return
                    self._handle(event)
            except Exception as e:
                if self._stopped.is_set():
                    return
                logger.warning(f"Watch on {self.gvk} in {self.namespace or 'all namespaces'} failed: {e}")
                if self._on_error is not None:
                    self._on_error(e)
                return

    def _handle(self, event: Dict[str, Any]) -> None:
        event_type = event.get("type")
        raw = event.get("raw_object") or {}
        if event_type == "ERROR":
            raise WatchExpiredError(raw.get("message") or str(raw))
        metadata = raw.get("metadata") or {}
        if metadata.get("resourceVersion"):
            self._resource_version = metadata["resourceVersion"]
        if event_type == "BOOKMARK":
            return
        self._handler(WatchEvent(type=WatchEventType(event_type), object=_with_kind(raw, self.gvk)))


@register_backend(StoreType.KUBERNETES)
class KubernetesObjectStore(BaseObjectStore):
    """
    Dynamic-client object store.

    Reads any kind by apiVersion/kind, writes Source status through the
    status subresource with a JSON merge patch, and runs one background
    thread per open watch.

    Requires RBAC to get/list/watch the Source kinds and sink kinds, and
    to patch the Source kinds' status.
    """

    def __init__(
        self,
        kubeconfig: Optional[str] = None,
        dynamic_client: Optional[Any] = None,
        watch_timeout_seconds: int = K8S_WATCH_TIMEOUT_S,
        **kwargs: Any,
    ):
        if dynamic_client is None:
            if kubeconfig:
                config.load_kube_config(config_file=kubeconfig)
            else:
                try:
                    config.load_incluster_config()
                except config.ConfigException:
                    config.load_kube_config()
            dynamic_client = DynamicClient(client.ApiClient())

        self._client = dynamic_client
        self._watch_timeout_seconds = watch_timeout_seconds
        self._resources: Dict[GroupVersionKind, Any] = {}
        self._lock = threading.Lock()
        self._watches: List[_KubernetesWatch] = []
        logger.debug("KubernetesObjectStore initialized")

    def _resource(self, gvk: GroupVersionKind) -> Any:
        """Discover (once) the API resource serving ``gvk``."""
        with self._lock:
            resource = self._resources.get(gvk)
        if resource is None:
            resource = self._client.resources.get(api_version=gvk.api_version, kind=gvk.kind)
            with self._lock:
                self._resources[gvk] = resource
        return resource

    @staticmethod
    def _request_timeout(timeout: Optional[float]) -> Tuple[float, float]:
        if timeout is None:
            return (K8S_API_CONNECT_TIMEOUT_S, K8S_API_READ_TIMEOUT_S)
        return (min(K8S_API_CONNECT_TIMEOUT_S, timeout), timeout)

    def get(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        name: str,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        resource = self._resource(gvk)
        try:
            obj = resource.get(
                name=name,
                namespace=namespace,
                _request_timeout=self._request_timeout(timeout),
            )
        except K8sNotFoundError:
            raise ObjectNotFoundError(ObjectKey(gvk=gvk, namespace=namespace, name=name))
        return _with_kind(obj.to_dict(), gvk)

    def list(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        selector: Optional[LabelSelector] = None,
        timeout: Optional[float] = None,
    ) -> Tuple[List[Dict[str, Any]], str]:
        resource = self._resource(gvk)
        kwargs: Dict[str, Any] = {"_request_timeout": self._request_timeout(timeout)}
        if namespace:
            kwargs["namespace"] = namespace
        if selector is not None and selector.to_label_selector():
            kwargs["label_selector"] = selector.to_label_selector()
        data = resource.get(**kwargs).to_dict()
        items = [_with_kind(item, gvk) for item in data.get("items") or []]
        resource_version = (data.get("metadata") or {}).get("resourceVersion", "")
        return items, resource_version

    def watch(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        handler: WatchHandler,
        on_error: Optional[WatchErrorHandler] = None,
        resource_version: Optional[str] = None,
    ) -> _KubernetesWatch:
        w = _KubernetesWatch(
            self._resource(gvk),
            gvk,
            namespace,
            handler,
            on_error,
            resource_version,
            self._watch_timeout_seconds,
            on_exit=self._remove_watch,
        )
        with self._lock:
            self._watches.append(w)
        return w.start()

    def update_status(self, key: ObjectKey, status: Dict[str, Any]) -> Dict[str, Any]:
        resource = self._resource(key.gvk)
        try:
            obj = resource.status.patch(
                body={"status": status},
                name=key.name,
                namespace=key.namespace,
                content_type="application/merge-patch+json",
                _request_timeout=self._request_timeout(None),
            )
        except K8sNotFoundError:
            raise ObjectNotFoundError(key)
        logger.debug(f"Patched status of {key}")
        return _with_kind(obj.to_dict(), key.gvk)

    def close(self) -> None:
        with self._lock:
            watches = list(self._watches)
            self._watches.clear()
        for w in watches:
            w.stop()

    @property
    def open_watches(self) -> int:
        with self._lock:
            return len(self._watches)

    def _remove_watch(self, w: _KubernetesWatch) -> None:
        with self._lock:
            if w in self._watches:
                self._watches.remove(w)
