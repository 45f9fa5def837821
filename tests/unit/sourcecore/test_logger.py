"""
Tests for ReconcileLogger - structured logging for Loki.
"""

import json
import logging
from io import StringIO

import pytest

from sourcecore.config import SourceCoreConfig
from sourcecore.logger import JsonFormatter, ReconcileLogger, configure_logging
from sourcecore.models.core import GroupVersionKind, ObjectKey

KEY = ObjectKey(
    gvk=GroupVersionKind.from_api_version("sources.knative.dev/v1", "PingSource"),
    namespace="default",
    name="ping",
)


@pytest.fixture
def captured_logs():
    """Capture log output for testing."""
    return StringIO()


@pytest.fixture
def event_logger(captured_logs):
    """Create a ReconcileLogger that writes to captured output."""
    event_logger = ReconcileLogger(service_name="test-service", extra_labels={"cluster": "kind"})
    loki_logger = logging.getLogger("sourcecore.reconcile")
    saved = list(loki_logger.handlers)
    loki_logger.handlers.clear()
    handler = logging.StreamHandler(captured_logs)
    handler.setFormatter(logging.Formatter("%(message)s"))
    loki_logger.addHandler(handler)
    yield event_logger
    loki_logger.handlers[:] = saved


def parse_log_line(captured_logs) -> dict:
    """Parse the last JSON log line."""
    captured_logs.seek(0)
    lines = captured_logs.read().strip().split("\n")
    if lines and lines[-1]:
        return json.loads(lines[-1])
    return {}


class TestReconcileEvents:
    def test_sink_resolved(self, event_logger, captured_logs):
        event_logger.log_sink_resolved(KEY, uri="http://new", previous_uri="http://old")
        log = parse_log_line(captured_logs)
        assert log["event"] == "sink.resolved"
        assert log["service"] == "test-service"
        assert log["source_kind"] == "PingSource"
        assert log["source_group"] == "sources.knative.dev"
        assert log["namespace"] == "default"
        assert log["name"] == "ping"
        assert log["sink_uri"] == "http://new"
        assert log["previous_sink_uri"] == "http://old"
        assert log["labels"] == {"cluster": "kind"}
        assert "timestamp" in log

    def test_terminal_resolution_failure_is_warning(self, event_logger, captured_logs):
        event_logger.log_resolution_failed(KEY, "NotFound", "Broker default/x not found")
        log = parse_log_line(captured_logs)
        assert log["event"] == "sink.resolution_failed"
        assert log["level"] == "warn"
        assert log["reason"] == "NotFound"
        assert log["retryable"] is False

    def test_retryable_resolution_failure_is_info(self, event_logger, captured_logs):
        event_logger.log_resolution_failed(KEY, "NotAddressable", "no address", retryable=True)
        assert parse_log_line(captured_logs)["level"] == "info"

    def test_condition_transitioned(self, event_logger, captured_logs):
        event_logger.log_condition_transitioned(KEY, "Ready", "Unknown", "True")
        log = parse_log_line(captured_logs)
        assert log["event"] == "condition.transitioned"
        assert log["condition_type"] == "Ready"
        assert log["from_status"] == "Unknown"
        assert log["to_status"] == "True"

    def test_requeued(self, event_logger, captured_logs):
        event_logger.log_requeued(KEY, 0.12345, "StaleCacheError")
        log = parse_log_line(captured_logs)
        assert log["event"] == "reconcile.requeued"
        assert log["delay_seconds"] == 0.123

    def test_reconcile_failed(self, event_logger, captured_logs):
        event_logger.log_reconcile_failed(KEY, TimeoutError("deadline"), attempts=3)
        log = parse_log_line(captured_logs)
        assert log["level"] == "error"
        assert log["error_type"] == "TimeoutError"
        assert log["attempts"] == 3


class TestConfigureLogging:
    def teardown_method(self):
        logging.getLogger("sourcecore").handlers.clear()

    def test_json_format(self):
        configure_logging(SourceCoreConfig(_env_file=None, log_level="debug", log_format="json"))
        root = logging.getLogger("sourcecore")
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, JsonFormatter)

    def test_text_format(self):
        configure_logging(SourceCoreConfig(_env_file=None, log_level="warning", log_format="text"))
        root = logging.getLogger("sourcecore")
        assert root.level == logging.WARNING
        assert not isinstance(root.handlers[0].formatter, JsonFormatter)

    def test_json_formatter_output(self):
        record = logging.LogRecord("sourcecore.resolver", logging.INFO, __file__, 1, "resolved %s", ("x",), None)
        entry = json.loads(JsonFormatter().format(record))
        assert entry["level"] == "info"
        assert entry["logger"] == "sourcecore.resolver"
        assert entry["message"] == "resolved x"
