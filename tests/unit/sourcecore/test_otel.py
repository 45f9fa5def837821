"""
Tests for reconcile spans, span events and metrics using the OTel SDK.
"""

import pytest
from opentelemetry import trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from sourcecore.models.core import GroupVersionKind, ObjectKey
from sourcecore.otel import ReconcileMetrics, add_span_event, reconcile_span, source_attributes

KEY = ObjectKey(
    gvk=GroupVersionKind.from_api_version("sources.knative.dev/v1", "PingSource"),
    namespace="default",
    name="ping",
)


@pytest.fixture
def exporter():
    return InMemorySpanExporter()


@pytest.fixture
def tracer_provider(exporter):
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return provider


def test_source_attributes():
    assert source_attributes(KEY) == {
        "source.kind": "PingSource",
        "source.group": "sources.knative.dev",
        "source.namespace": "default",
        "source.name": "ping",
    }


def test_reconcile_span_records_events(tracer_provider, exporter):
    with reconcile_span(KEY, tracer_provider=tracer_provider):
        add_span_event("sink.resolved", {"sink.uri": "http://sink"})

    spans = exporter.get_finished_spans()
    assert len(spans) == 1
    span = spans[0]
    assert span.name == "sourcecore.reconcile"
    assert span.attributes["source.name"] == "ping"
    assert [e.name for e in span.events] == ["sink.resolved"]
    assert span.events[0].attributes["sink.uri"] == "http://sink"


def test_add_span_event_without_span_is_noop():
    assert not trace.get_current_span().is_recording()
    add_span_event("sink.resolved", {"sink.uri": "http://sink"})


def _points(reader):
    points = {}
    data = reader.get_metrics_data()
    for resource_metrics in data.resource_metrics:
        for scope_metrics in resource_metrics.scope_metrics:
            for metric in scope_metrics.metrics:
                points[metric.name] = list(metric.data.data_points)
    return points


def test_metrics():
    reader = InMemoryMetricReader()
    metrics = ReconcileMetrics(meter_provider=MeterProvider(metric_readers=[reader]))

    metrics.record_pass(KEY, "resolved", 0.25)
    metrics.record_pass(KEY, "resolved", 0.5)
    metrics.record_resolution_failure(KEY, "NotFound")

    points = _points(reader)
    passes = points["sourcecore.reconcile.count"]
    assert passes[0].value == 2
    assert dict(passes[0].attributes) == {"source.kind": "PingSource", "outcome": "resolved"}

    failures = points["sourcecore.resolution.failures"]
    assert failures[0].attributes["reason"] == "NotFound"

    durations = points["sourcecore.reconcile.duration"]
    assert durations[0].count == 2
    assert durations[0].sum == pytest.approx(0.75)
