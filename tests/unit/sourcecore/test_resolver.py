"""
Tests for DestinationResolver and URI composition.
"""

from unittest.mock import MagicMock

import pytest

from sourcecore.deadline import Deadline
from sourcecore.duck import AddressableRegistry, default_registry
from sourcecore.errors import (
    AmbiguousReferenceError,
    InvalidDestinationError,
    InvalidURIError,
    NotAddressableError,
    NotFoundError,
    ReconcileTimeoutError,
    StaleCacheError,
)
from sourcecore.models.core import Destination, GroupVersionKind, ObjectKey
from sourcecore.resolver import DestinationResolver, compose_uri, is_absolute_uri
from sourcecore.storage.cache import ObjectCache
from sourcecore.tracker import ReferenceTracker

BROKER_URL = "http://broker-ingress.knative-eventing.svc.cluster.local/default/default"
PARENT = ObjectKey(
    gvk=GroupVersionKind.from_api_version("sources.knative.dev/v1", "PingSource"),
    namespace="default",
    name="ping",
)


def broker_ref(name="default", **extra):
    ref = {"apiVersion": "eventing.knative.dev/v1", "kind": "Broker"}
    if name is not None:
        ref["name"] = name
    ref.update(extra)
    return ref


def dest(**data):
    return Destination.model_validate(data)


@pytest.fixture
def tracker():
    return ReferenceTracker()


@pytest.fixture
def resolver(store, config, tracker):
    return DestinationResolver(ObjectCache(store), default_registry(config), tracker)


# ---------------------------------------------------------------------------
# URI helpers
# ---------------------------------------------------------------------------


class TestComposeUri:
    @pytest.mark.parametrize(
        "base,suffix,expected",
        [
            ("http://h/a/b", None, "http://h/a/b"),
            ("http://h/a/b", "", "http://h/a/b"),
            ("http://h/a/b", "/x", "http://h/x"),
            ("http://h/a/b", "x", "http://h/a/b/x"),
            ("http://h/a/b/", "x/y", "http://h/a/b/x/y"),
            ("http://h", "x", "http://h/x"),
            ("http://h/a", "?q=1", "http://h/a?q=1"),
            ("http://h/a", "https://other.example/y", "https://other.example/y"),
        ],
    )
    def test_compose(self, base, suffix, expected):
        assert compose_uri(base, suffix) == expected

    def test_network_path_suffix_cannot_change_host(self):
        with pytest.raises(InvalidURIError, match="must not name a host"):
            compose_uri("http://broker.ns.svc/default", "//evil.example/x")

    @pytest.mark.parametrize(
        "uri,expected",
        [
            ("http://example.com", True),
            ("https://example.com/path?q=1", True),
            ("/relative/path", False),
            ("example.com", False),
            ("mailto:someone", False),
            ("", False),
        ],
    )
    def test_is_absolute(self, uri, expected):
        assert is_absolute_uri(uri) is expected


# ---------------------------------------------------------------------------
# Direct URIs
# ---------------------------------------------------------------------------


class TestDirectUri:
    def test_absolute_uri_returned_verbatim(self, resolver):
        assert resolver.resolve(dest(uri="https://example.com/events"), "default") == "https://example.com/events"

    def test_relative_uri_is_invalid(self, resolver):
        with pytest.raises(InvalidURIError):
            resolver.resolve(dest(uri="/events"), "default")

    def test_switching_to_uri_untracks_parent(self, resolver, tracker, store, make_broker):
        store.apply(make_broker())
        resolver.resolve(dest(ref=broker_ref()), "default", parent=PARENT)
        assert tracker.reference_for(PARENT) is not None

        resolver.resolve(dest(uri="http://elsewhere"), "default", parent=PARENT)
        assert tracker.reference_for(PARENT) is None


# ---------------------------------------------------------------------------
# References by name
# ---------------------------------------------------------------------------


class TestRefByName:
    def test_resolves_address(self, resolver, store, make_broker):
        store.apply(make_broker())
        assert resolver.resolve(dest(ref=broker_ref()), "default") == BROKER_URL

    def test_namespace_defaults_to_parent(self, resolver, store, make_broker):
        store.apply(make_broker(namespace="other", url="http://other-broker"))
        with pytest.raises(NotFoundError):
            resolver.resolve(dest(ref=broker_ref()), "default")
        assert resolver.resolve(dest(ref=broker_ref()), "other") == "http://other-broker"

    def test_explicit_ref_namespace(self, resolver, store, make_broker):
        store.apply(make_broker(namespace="other", url="http://other-broker"))
        assert resolver.resolve(dest(ref=broker_ref(namespace="other")), "default") == "http://other-broker"

    def test_absolute_path_suffix_replaces_path(self, resolver, store, make_broker):
        store.apply(make_broker())
        uri = resolver.resolve(dest(ref=broker_ref(), uri="/extra/path"), "default")
        assert uri == "http://broker-ingress.knative-eventing.svc.cluster.local/extra/path"

    def test_relative_suffix_appends(self, resolver, store, make_broker):
        store.apply(make_broker())
        uri = resolver.resolve(dest(ref=broker_ref(), uri="extra"), "default")
        assert uri == BROKER_URL + "/extra"

    def test_host_suffix_is_invalid_uri(self, resolver, store, make_broker):
        store.apply(make_broker())
        with pytest.raises(InvalidURIError) as exc_info:
            resolver.resolve(dest(ref=broker_ref(), uri="//evil.example/x"), "default")
        assert exc_info.value.kind.value == "InvalidURI"
        assert not exc_info.value.retryable

    def test_not_found(self, resolver):
        with pytest.raises(NotFoundError, match="Broker default/default not found"):
            resolver.resolve(dest(ref=broker_ref()), "default")

    def test_not_addressable_is_retryable(self, resolver, store, make_broker):
        store.apply(make_broker(url=None))
        with pytest.raises(NotAddressableError) as exc_info:
            resolver.resolve(dest(ref=broker_ref()), "default")
        assert exc_info.value.retryable

    def test_relative_address_is_not_addressable(self, resolver, store, make_broker):
        store.apply(make_broker(url="/just/a/path"))
        with pytest.raises(NotAddressableError, match="invalid address"):
            resolver.resolve(dest(ref=broker_ref()), "default")

    def test_legacy_hostname(self, resolver, store, make_broker):
        broker = make_broker(url=None)
        broker["status"] = {"address": {"hostname": "broker.default.svc.cluster.local"}}
        store.apply(broker)
        assert resolver.resolve(dest(ref=broker_ref()), "default") == "http://broker.default.svc.cluster.local"

    def test_kubernetes_service(self, resolver, store):
        store.apply({
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {"name": "event-display", "namespace": "default"},
            "spec": {"ports": [{"port": 80}]},
        })
        ref = {"apiVersion": "v1", "kind": "Service", "name": "event-display"}
        assert resolver.resolve(dest(ref=ref), "default") == "http://event-display.default.svc.cluster.local"

    def test_tracks_missing_target(self, resolver, tracker):
        with pytest.raises(NotFoundError):
            resolver.resolve(dest(ref=broker_ref()), "default", parent=PARENT)
        tracked = tracker.reference_for(PARENT)
        assert tracked.kind == "Broker"
        assert tracked.name == "default"
        assert tracked.namespace == "default"

    def test_deterministic(self, resolver, store, make_broker):
        store.apply(make_broker())
        results = {resolver.resolve(dest(ref=broker_ref(), uri="x"), "default") for _ in range(5)}
        assert len(results) == 1


# ---------------------------------------------------------------------------
# References by selector
# ---------------------------------------------------------------------------


class TestRefBySelector:
    def test_single_match(self, resolver, store, make_broker):
        store.apply(make_broker(name="a", url="http://a", labels={"team": "x"}))
        store.apply(make_broker(name="b", url="http://b", labels={"team": "y"}))
        uri = resolver.resolve(
            dest(ref=broker_ref(name=None), selector={"matchLabels": {"team": "x"}}),
            "default",
        )
        assert uri == "http://a"

    def test_no_match(self, resolver, store, make_broker):
        store.apply(make_broker(name="a", labels={"team": "y"}))
        with pytest.raises(NotFoundError, match="team=x"):
            resolver.resolve(
                dest(ref=broker_ref(name=None), selector={"matchLabels": {"team": "x"}}),
                "default",
            )

    def test_ambiguous(self, resolver, store, make_broker):
        store.apply(make_broker(name="a", labels={"team": "x"}))
        store.apply(make_broker(name="b", labels={"team": "x"}))
        with pytest.raises(AmbiguousReferenceError) as exc_info:
            resolver.resolve(
                dest(ref=broker_ref(name=None), selector={"matchLabels": {"team": "x"}}),
                "default",
            )
        assert exc_info.value.matches == ["a", "b"]

    def test_tracks_selector(self, resolver, tracker, store, make_broker):
        store.apply(make_broker(name="a", labels={"team": "x"}))
        resolver.resolve(
            dest(ref=broker_ref(name=None), selector={"matchLabels": {"team": "x"}}),
            "default",
            parent=PARENT,
        )
        tracked = tracker.reference_for(PARENT)
        assert tracked.name is None
        assert tracked.selector.match_labels == {"team": "x"}


# ---------------------------------------------------------------------------
# Invalid destinations
# ---------------------------------------------------------------------------


class TestInvalidDestination:
    @pytest.mark.parametrize(
        "destination",
        [
            None,
            Destination(),
            Destination.model_validate({"selector": {"matchLabels": {"a": "b"}}}),
            Destination.model_validate({"ref": {"apiVersion": "eventing.knative.dev/v1", "kind": ""}}),
            Destination.model_validate({"ref": broker_ref(name=None)}),
            Destination.model_validate(
                {"ref": broker_ref(), "selector": {"matchLabels": {"a": "b"}}}
            ),
        ],
        ids=["unset", "empty", "selector-without-ref", "no-kind", "no-name-or-selector", "name-and-selector"],
    )
    def test_invalid(self, resolver, destination):
        with pytest.raises(InvalidDestinationError):
            resolver.resolve(destination, "default")

    def test_strict_registry_rejects_unregistered_kind(self, store, make_broker):
        store.apply(make_broker())
        resolver = DestinationResolver(ObjectCache(store), AddressableRegistry(strict=True))
        with pytest.raises(InvalidDestinationError, match="not registered"):
            resolver.resolve(dest(ref=broker_ref()), "default")


# ---------------------------------------------------------------------------
# Infrastructure failures
# ---------------------------------------------------------------------------


class TestInfrastructureFailures:
    def test_list_failure_is_stale_cache(self, config):
        store = MagicMock()
        store.list.side_effect = ConnectionError("apiserver unreachable")
        resolver = DestinationResolver(ObjectCache(store), default_registry(config))
        with pytest.raises(StaleCacheError):
            resolver.resolve(dest(ref=broker_ref()), "default")

    def test_expired_deadline(self, resolver, store, make_broker):
        store.apply(make_broker())
        with pytest.raises(ReconcileTimeoutError):
            resolver.resolve(dest(ref=broker_ref()), "default", deadline=Deadline(0))
