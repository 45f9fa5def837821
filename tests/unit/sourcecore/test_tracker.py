"""Tests for ReferenceTracker."""

from sourcecore.contracts.types import WatchEventType
from sourcecore.models.core import GroupVersionKind, LabelSelector, ObjectKey
from sourcecore.storage.base import WatchEvent
from sourcecore.tracker import ReferenceTracker, TrackedReference

BROKER = GroupVersionKind.from_api_version("eventing.knative.dev/v1", "Broker")
PING = GroupVersionKind.from_api_version("sources.knative.dev/v1", "PingSource")


def source_key(name):
    return ObjectKey(gvk=PING, namespace="default", name=name)


def broker_key(name, namespace="default", version="v1"):
    return ObjectKey(
        gvk=GroupVersionKind(group=BROKER.group, version=version, kind="Broker"),
        namespace=namespace,
        name=name,
    )


class TestTrackedReference:
    def test_name_match(self):
        ref = TrackedReference.for_name(BROKER, "default", "b")
        assert ref.matches(broker_key("b"), {})
        assert ref.matches(broker_key("b", version="v1beta1"), {})
        assert not ref.matches(broker_key("other"), {})
        assert not ref.matches(broker_key("b", namespace="other"), {})

    def test_selector_match(self):
        selector = LabelSelector.model_validate({"matchLabels": {"team": "x"}})
        ref = TrackedReference.for_selector(BROKER, "default", selector)
        assert ref.matches(broker_key("any"), {"team": "x"})
        assert not ref.matches(broker_key("any"), {"team": "y"})


class TestReferenceTracker:
    def test_change_enqueues_dependents(self):
        enqueued = []
        tracker = ReferenceTracker(enqueued.append)
        tracker.track(source_key("a"), TrackedReference.for_name(BROKER, "default", "b"))
        tracker.track(source_key("c"), TrackedReference.for_name(BROKER, "default", "b"))
        tracker.track(source_key("z"), TrackedReference.for_name(BROKER, "default", "other"))

        sources = tracker.on_object_changed(broker_key("b"))
        assert [s.name for s in sources] == ["a", "c"]
        assert [s.name for s in enqueued] == ["a", "c"]

    def test_track_replaces_previous_reference(self):
        enqueued = []
        tracker = ReferenceTracker(enqueued.append)
        tracker.track(source_key("a"), TrackedReference.for_name(BROKER, "default", "old"))
        tracker.track(source_key("a"), TrackedReference.for_name(BROKER, "default", "new"))
        assert tracker.on_object_changed(broker_key("old")) == []
        assert tracker.on_object_changed(broker_key("new")) == [source_key("a")]

    def test_untrack(self):
        tracker = ReferenceTracker()
        tracker.track(source_key("a"), TrackedReference.for_name(BROKER, "default", "b"))
        tracker.untrack(source_key("a"))
        assert tracker.reference_for(source_key("a")) is None
        assert tracker.sources_for(broker_key("b")) == []

    def test_no_enqueue_callback(self):
        tracker = ReferenceTracker()
        tracker.track(source_key("a"), TrackedReference.for_name(BROKER, "default", "b"))
        assert tracker.on_object_changed(broker_key("b")) == [source_key("a")]

    def test_cache_event_uses_labels(self):
        enqueued = []
        tracker = ReferenceTracker()
        tracker.set_enqueue(enqueued.append)
        selector = LabelSelector.model_validate({"matchLabels": {"team": "x"}})
        tracker.track(source_key("a"), TrackedReference.for_selector(BROKER, "default", selector))

        event = WatchEvent(
            type=WatchEventType.ADDED,
            object={
                "apiVersion": "eventing.knative.dev/v1",
                "kind": "Broker",
                "metadata": {"name": "new", "namespace": "default", "labels": {"team": "x"}},
            },
        )
        tracker.on_cache_event(event)
        assert enqueued == [source_key("a")]
