"""
Pytest configuration and fixtures for SourceCore tests.
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Generator, Optional

import pytest

from sourcecore.config import SourceCoreConfig, reset_config
from sourcecore.models.core import GroupVersionKind
from sourcecore.runtime import build_reconciler
from sourcecore.storage.memory import MemoryObjectStore

BROKER_API_VERSION = "eventing.knative.dev/v1"
SOURCE_API_VERSION = "sources.knative.dev/v1"

BROKER_GVK = GroupVersionKind.from_api_version(BROKER_API_VERSION, "Broker")
SOURCE_GVK = GroupVersionKind.from_api_version(SOURCE_API_VERSION, "PingSource")


# ============================================================================
# Environment Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Isolate each test from SOURCECORE_* variables and the config singleton."""
    for key in list(os.environ):
        if key.startswith("SOURCECORE_"):
            monkeypatch.delenv(key, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def config() -> SourceCoreConfig:
    """Config with short, deterministic timings."""
    return SourceCoreConfig(
        _env_file=None,
        workers=2,
        reconcile_timeout_seconds=5.0,
        resync_interval_seconds=60.0,
        backoff_base_seconds=0.01,
        backoff_max_seconds=0.1,
        not_addressable_requeue_seconds=15.0,
    )


class FixedClock:
    """Deterministic wall clock for condition transition times."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


# ============================================================================
# Object Fixtures
# ============================================================================


@pytest.fixture
def make_broker() -> Callable[..., Dict[str, Any]]:
    """Factory for Broker objects; ``url=None`` means not addressable yet."""

    def _make(
        name: str = "default",
        namespace: str = "default",
        url: Optional[str] = "http://broker-ingress.knative-eventing.svc.cluster.local/default/default",
        labels: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        obj: Dict[str, Any] = {
            "apiVersion": BROKER_API_VERSION,
            "kind": "Broker",
            "metadata": {"name": name, "namespace": namespace, "labels": labels or {}},
            "spec": {},
        }
        if url is not None:
            obj["status"] = {"address": {"url": url}}
        return obj

    return _make


@pytest.fixture
def make_source() -> Callable[..., Dict[str, Any]]:
    """Factory for PingSource objects pointing at ``sink``."""

    def _make(
        name: str = "ping",
        namespace: str = "default",
        sink: Optional[Dict[str, Any]] = None,
        status: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if sink is None:
            sink = {"ref": {"apiVersion": BROKER_API_VERSION, "kind": "Broker", "name": "default"}}
        obj: Dict[str, Any] = {
            "apiVersion": SOURCE_API_VERSION,
            "kind": "PingSource",
            "metadata": {"name": name, "namespace": namespace},
            "spec": {"schedule": "*/1 * * * *", "sink": sink},
        }
        if status is not None:
            obj["status"] = status
        return obj

    return _make


@pytest.fixture
def store() -> MemoryObjectStore:
    return MemoryObjectStore()


@pytest.fixture
def reconciler(store, config, clock):
    """Reconciler wired over the memory store with a fixed clock."""
    return build_reconciler(store, config, clock=clock)
