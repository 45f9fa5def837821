"""
Structured logging for reconcile events.

Outputs JSON-formatted logs for Loki ingestion. Only status-changing events
are logged; a pass that leaves the status untouched logs nothing here.

Logged events:
- sink.resolved
- sink.resolution_failed
- condition.transitioned
- reconcile.requeued
- reconcile.failed

Usage:
    from sourcecore.logger import ReconcileLogger

    logger = ReconcileLogger(service_name="sourcecore")
    logger.log_sink_resolved(key, uri="http://broker.ns.svc.cluster.local")
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Configure structured logger for Loki
_loki_logger = logging.getLogger("sourcecore.reconcile")
_loki_logger.setLevel(logging.INFO)

# Default handler outputs JSON to stdout (for container/Loki pickup)
if not _loki_logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))
    _loki_logger.addHandler(handler)
    _loki_logger.propagate = False


class JsonFormatter(logging.Formatter):
    """One JSON object per record, for module loggers in json mode."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(config: Any = None) -> None:
    """Apply ``log_level``/``log_format`` from config to the ``sourcecore`` loggers."""
    if config is None:
        from sourcecore.config import get_config
        config = get_config()

    root = logging.getLogger("sourcecore")
    root.setLevel(config.log_level.upper())
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    if config.log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root.addHandler(handler)


class ReconcileLogger:
    """
    Structured logger for reconcile events.

    Each log entry includes standard fields for filtering:
    - source kind, namespace and name
    - event type and event-specific attributes
    """

    def __init__(
        self,
        service_name: str = "sourcecore",
        extra_labels: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize reconcile logger.

        Args:
            service_name: Service name for log attribution
            extra_labels: Additional labels for Loki filtering
        """
        self.service_name = service_name
        self.extra_labels = extra_labels or {}
        self._logger = _loki_logger

    def _emit(
        self,
        event: str,
        source: Any,
        level: str = "info",
        **extra_fields: Any,
    ) -> None:
        """
        Emit a structured log entry.

        Args:
            event: Event type (e.g., "sink.resolved")
            source: ObjectKey of the Source
            level: Log level (info, warn, error)
            **extra_fields: Event-specific fields
        """
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "event": event,
            "service": self.service_name,
            "source_kind": source.gvk.kind,
            "source_group": source.gvk.group,
            "namespace": source.namespace,
            "name": source.name,
        }
        entry.update(extra_fields)

        if self.extra_labels:
            entry["labels"] = self.extra_labels

        log_line = json.dumps(entry, default=str)

        if level == "error":
            self._logger.error(log_line)
        elif level == "warn":
            self._logger.warning(log_line)
        else:
            self._logger.info(log_line)

    def log_sink_resolved(self, source: Any, uri: str, previous_uri: Optional[str] = None) -> None:
        """Log a sink URI that differs from the last one recorded."""
        self._emit("sink.resolved", source, sink_uri=uri, previous_sink_uri=previous_uri)

    def log_resolution_failed(
        self,
        source: Any,
        kind: str,
        message: str,
        retryable: bool = False,
    ) -> None:
        """Log a resolution failure (first occurrence of a given reason)."""
        self._emit(
            "sink.resolution_failed",
            source,
            level="info" if retryable else "warn",
            reason=kind,
            message=message,
            retryable=retryable,
        )

    def log_condition_transitioned(
        self,
        source: Any,
        condition_type: str,
        from_status: Optional[str],
        to_status: str,
        reason: str = "",
    ) -> None:
        self._emit(
            "condition.transitioned",
            source,
            condition_type=condition_type,
            from_status=from_status,
            to_status=to_status,
            reason=reason,
        )

    def log_requeued(self, source: Any, delay_seconds: float, reason: str) -> None:
        self._emit("reconcile.requeued", source, delay_seconds=round(delay_seconds, 3), reason=reason)

    def log_reconcile_failed(self, source: Any, error: Exception, attempts: int) -> None:
        self._emit(
            "reconcile.failed",
            source,
            level="error",
            error_type=type(error).__name__,
            error=str(error),
            attempts=attempts,
        )
