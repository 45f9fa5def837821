"""
OpenTelemetry helpers for reconcile passes.

- ``reconcile_span``: one span per pass, named ``sourcecore.reconcile``
- ``add_span_event``: resolution outcomes as events on the current span
- ``ReconcileMetrics``: pass/failure counters and a duration histogram

Everything goes through the OTel API, so without a configured SDK provider
these are no-ops.

Usage::

    from sourcecore.otel import ReconcileMetrics, add_span_event, reconcile_span

    with reconcile_span(source.key) as span:
        add_span_event("sink.resolved", {"sink.uri": uri})
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from opentelemetry import metrics, trace

from sourcecore.models.core import ObjectKey

logger = logging.getLogger(__name__)

TRACER_NAME = "sourcecore"
METER_NAME = "sourcecore"


def source_attributes(key: ObjectKey) -> dict[str, str]:
    return {
        "source.kind": key.gvk.kind,
        "source.group": key.gvk.group,
        "source.namespace": key.namespace,
        "source.name": key.name,
    }


def add_span_event(name: str, attributes: dict[str, str | int | float | bool]) -> None:
    """Add an event to the current OTel span if it is recording.

    Args:
        name: Event name (e.g. ``"sink.resolved"``).
        attributes: Flat dict of span event attributes.
    """
    span = trace.get_current_span()
    if span and span.is_recording():
        span.add_event(name=name, attributes=attributes)


@contextmanager
def reconcile_span(key: ObjectKey, tracer_provider: Optional[Any] = None) -> Iterator[Any]:
    """Run the body inside a ``sourcecore.reconcile`` span for ``key``."""
    tracer = trace.get_tracer(TRACER_NAME, tracer_provider=tracer_provider)
    with tracer.start_as_current_span("sourcecore.reconcile", attributes=source_attributes(key)) as span:
        yield span


class ReconcileMetrics:
    """
    Counters for reconcile outcomes.

    Instruments:
    - ``sourcecore.reconcile.count``     passes, by outcome
    - ``sourcecore.resolution.failures`` resolution failures, by reason
    - ``sourcecore.reconcile.duration``  pass duration in seconds
    """

    def __init__(self, meter_provider: Optional[Any] = None):
        meter = metrics.get_meter(METER_NAME, meter_provider=meter_provider)
        self._passes = meter.create_counter(
            "sourcecore.reconcile.count",
            unit="1",
            description="Reconcile passes by outcome",
        )
        self._failures = meter.create_counter(
            "sourcecore.resolution.failures",
            unit="1",
            description="Destination resolution failures by reason",
        )
        self._duration = meter.create_histogram(
            "sourcecore.reconcile.duration",
            unit="s",
            description="Duration of a reconcile pass",
        )

    def record_pass(self, key: ObjectKey, outcome: str, duration_seconds: float) -> None:
        attrs = {"source.kind": key.gvk.kind, "outcome": outcome}
        self._passes.add(1, attrs)
        self._duration.record(duration_seconds, attrs)

    def record_resolution_failure(self, key: ObjectKey, reason: str) -> None:
        self._failures.add(1, {"source.kind": key.gvk.kind, "reason": reason})
