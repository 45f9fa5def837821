"""
Tests for KubernetesObjectStore using a mocked dynamic client.
"""

import threading
from unittest.mock import MagicMock

import pytest
from kubernetes.dynamic.exceptions import NotFoundError as K8sNotFoundError

from sourcecore.contracts.types import WatchEventType
from sourcecore.errors import ObjectNotFoundError
from sourcecore.models.core import GroupVersionKind, LabelSelector, ObjectKey
from sourcecore.storage.kubernetes import KubernetesObjectStore, WatchExpiredError

BROKER = GroupVersionKind.from_api_version("eventing.knative.dev/v1", "Broker")
PING = GroupVersionKind.from_api_version("sources.knative.dev/v1", "PingSource")


def _result(data):
    result = MagicMock()
    result.to_dict.return_value = data
    return result


def _not_found():
    api_exception = MagicMock(status=404, reason="Not Found", body="{}", headers={})
    return K8sNotFoundError(api_exception)


@pytest.fixture
def resource():
    return MagicMock()


@pytest.fixture
def dynamic_client(resource):
    client = MagicMock()
    client.resources.get.return_value = resource
    return client


@pytest.fixture
def k8s_store(dynamic_client):
    store = KubernetesObjectStore(dynamic_client=dynamic_client, watch_timeout_seconds=10)
    yield store
    store.close()


class TestReads:
    def test_get_fills_kind(self, k8s_store, resource, dynamic_client):
        resource.get.return_value = _result({"metadata": {"name": "b", "namespace": "ns"}})
        obj = k8s_store.get(BROKER, "ns", "b", timeout=2.0)
        assert obj["apiVersion"] == "eventing.knative.dev/v1"
        assert obj["kind"] == "Broker"
        dynamic_client.resources.get.assert_called_once_with(api_version="eventing.knative.dev/v1", kind="Broker")
        kwargs = resource.get.call_args.kwargs
        assert kwargs["name"] == "b"
        assert kwargs["namespace"] == "ns"
        assert kwargs["_request_timeout"] == (2.0, 2.0)

    def test_discovery_cached(self, k8s_store, resource, dynamic_client):
        resource.get.return_value = _result({"metadata": {"name": "b"}})
        k8s_store.get(BROKER, "ns", "b")
        k8s_store.get(BROKER, "ns", "b")
        assert dynamic_client.resources.get.call_count == 1

    def test_get_not_found(self, k8s_store, resource):
        resource.get.side_effect = _not_found()
        with pytest.raises(ObjectNotFoundError):
            k8s_store.get(BROKER, "ns", "missing")

    def test_list_with_selector(self, k8s_store, resource):
        resource.get.return_value = _result({
            "metadata": {"resourceVersion": "42"},
            "items": [{"metadata": {"name": "a", "namespace": "ns"}}],
        })
        selector = LabelSelector.model_validate({"matchLabels": {"team": "x"}})
        items, rv = k8s_store.list(BROKER, "ns", selector)
        assert rv == "42"
        assert items[0]["kind"] == "Broker"
        kwargs = resource.get.call_args.kwargs
        assert kwargs["namespace"] == "ns"
        assert kwargs["label_selector"] == "team=x"

    def test_list_all_namespaces(self, k8s_store, resource):
        resource.get.return_value = _result({"metadata": {}, "items": []})
        items, rv = k8s_store.list(BROKER, "")
        assert items == []
        assert rv == ""
        assert "namespace" not in resource.get.call_args.kwargs


class TestStatusWrites:
    def test_merge_patch_status_subresource(self, k8s_store, resource):
        resource.status.patch.return_value = _result({"metadata": {"name": "p"}, "status": {"observedGeneration": 1}})
        key = ObjectKey(gvk=PING, namespace="ns", name="p")
        obj = k8s_store.update_status(key, {"observedGeneration": 1})
        assert obj["kind"] == "PingSource"
        kwargs = resource.status.patch.call_args.kwargs
        assert kwargs["body"] == {"status": {"observedGeneration": 1}}
        assert kwargs["content_type"] == "application/merge-patch+json"
        assert kwargs["name"] == "p"
        assert kwargs["namespace"] == "ns"

    def test_patch_missing(self, k8s_store, resource):
        resource.status.patch.side_effect = _not_found()
        with pytest.raises(ObjectNotFoundError):
            k8s_store.update_status(ObjectKey(gvk=PING, namespace="ns", name="p"), {})


class TestWatch:
    def test_events_delivered_and_bookmarks_skipped(self, k8s_store, resource):
        done = threading.Event()
        events = []

        def stream(**kwargs):
            yield {"type": "ADDED", "raw_object": {"metadata": {"name": "a", "resourceVersion": "5"}}}
            yield {"type": "BOOKMARK", "raw_object": {"metadata": {"resourceVersion": "6"}}}
            yield {"type": "DELETED", "raw_object": {"metadata": {"name": "a", "resourceVersion": "7"}}}
            done.set()
            # End the thread via an error so it does not reopen the watch
            raise ConnectionError("closed")

        resource.watch.side_effect = stream
        k8s_store.watch(BROKER, "ns", events.append, on_error=lambda e: None)
        assert done.wait(2.0)

        assert [e.type for e in events] == [WatchEventType.ADDED, WatchEventType.DELETED]
        assert events[0].object["kind"] == "Broker"
        assert resource.watch.call_args.kwargs["namespace"] == "ns"
        assert resource.watch.call_args.kwargs["timeout"] == 10

    def test_error_event_reported(self, k8s_store, resource):
        errors = []
        reported = threading.Event()

        def on_error(error):
            errors.append(error)
            reported.set()

        resource.watch.return_value = iter([
            {"type": "ERROR", "raw_object": {"code": 410, "message": "too old resource version"}},
        ])
        k8s_store.watch(BROKER, "", lambda e: None, on_error=on_error, resource_version="1")
        assert reported.wait(2.0)
        assert isinstance(errors[0], WatchExpiredError)
        assert "too old" in str(errors[0])
        assert resource.watch.call_args.kwargs["namespace"] is None

    def test_failed_watch_is_released(self, k8s_store, resource):
        reported = threading.Event()
        resource.watch.return_value = iter([
            {"type": "ERROR", "raw_object": {"code": 410, "message": "too old resource version"}},
        ])
        w = k8s_store.watch(BROKER, "ns", lambda e: None, on_error=lambda e: reported.set())
        assert reported.wait(2.0)
        w.join(2.0)
        assert k8s_store.open_watches == 0

    def test_stopped_watches_are_released(self, k8s_store, resource):
        release = threading.Event()

        def stream(**kwargs):
            release.wait(2.0)
            return iter(())

        resource.watch.side_effect = stream
        watches = [k8s_store.watch(BROKER, "ns", lambda e: None) for _ in range(50)]
        assert k8s_store.open_watches == 50

        for w in watches:
            w.stop()
        assert k8s_store.open_watches == 0

        release.set()
        for w in watches:
            w.join(2.0)
        assert k8s_store.open_watches == 0
