"""
Centralized configuration for SourceCore.

Uses Pydantic BaseSettings for environment variable integration
and validation. All configurable values should be defined here.

Configuration sources (in order of precedence):
1. Explicit constructor arguments
2. Environment variables (SOURCECORE_*)
3. .env file
4. Default values

Example:
    from sourcecore.config import get_config

    config = get_config()
    print(config.resync_interval_seconds)  # From SOURCECORE_RESYNC_INTERVAL_SECONDS

    # Override at runtime
    config = get_config(workers=8)
"""

from __future__ import annotations

import os
from typing import Annotated, Any, List, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from sourcecore.contracts.timeouts import (
    BACKOFF_BASE_S,
    BACKOFF_MAX_S,
    DEFAULT_CLUSTER_DOMAIN,
    DEFAULT_WORKERS,
    K8S_WATCH_TIMEOUT_S,
    NOT_ADDRESSABLE_REQUEUE_S,
    RECONCILE_TIMEOUT_S,
    RESYNC_INTERVAL_S,
)


class SourceCoreConfig(BaseSettings):
    """
    Central configuration for SourceCore.

    All settings can be overridden via environment variables
    prefixed with SOURCECORE_.

    Example:
        export SOURCECORE_WORKERS=8
        export SOURCECORE_LOG_LEVEL=debug
        export SOURCECORE_ADDRESSABLE_KINDS=Broker.eventing.knative.dev,Service.serving.knative.dev
    """

    model_config = SettingsConfigDict(
        env_prefix="SOURCECORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Service identification
    service_name: str = Field(
        default="sourcecore",
        description="Service name for telemetry and log attribution",
    )

    # Logging
    log_level: Literal["debug", "info", "warning", "error"] = Field(
        default="info",
        description="Logging level for SourceCore",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format (json for Loki, text for console)",
    )

    # Object store
    store_type: Literal["auto", "kubernetes", "file", "memory"] = Field(
        default="auto",
        description="Object store backend (auto-detects if not set)",
    )
    manifest_dir: str = Field(
        default="./manifests",
        description="Directory of YAML manifests for the file store",
    )
    kubeconfig: Optional[str] = Field(
        default=None,
        description="Path to kubeconfig file (auto-detected if not set)",
    )
    namespace: str = Field(
        default="",
        description="Namespace to watch for Sources (empty for all namespaces)",
    )

    # Conditions
    happy_condition: Literal["Ready", "Succeeded"] = Field(
        default="Ready",
        description="Top-level condition type computed from the dependents",
    )

    # Addressing
    addressable_kinds: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: [
            "Broker.eventing.knative.dev",
            "Channel.messaging.knative.dev",
            "InMemoryChannel.messaging.knative.dev",
            "Service.serving.knative.dev",
        ],
        description="Kinds (kind.group) registered as addressable at startup",
    )
    strict_addressable_kinds: bool = Field(
        default=False,
        description="Reject references to kinds that were not registered",
    )
    cluster_domain: str = Field(
        default=DEFAULT_CLUSTER_DOMAIN,
        description="Cluster DNS domain for Service addresses",
    )

    # Controller
    workers: int = Field(
        default=DEFAULT_WORKERS,
        ge=1,
        description="Number of reconcile worker threads",
    )
    resync_interval_seconds: float = Field(
        default=RESYNC_INTERVAL_S,
        gt=0,
        description="Every Source is re-reconciled at least this often",
    )
    reconcile_timeout_seconds: float = Field(
        default=RECONCILE_TIMEOUT_S,
        gt=0,
        description="Deadline for a single reconcile pass",
    )
    backoff_base_seconds: float = Field(
        default=BACKOFF_BASE_S,
        gt=0,
        description="First retry delay after an infrastructure failure",
    )
    backoff_max_seconds: float = Field(
        default=BACKOFF_MAX_S,
        gt=0,
        description="Cap on the per-object exponential backoff",
    )
    not_addressable_requeue_seconds: float = Field(
        default=NOT_ADDRESSABLE_REQUEUE_S,
        ge=0,
        description="Delay before re-checking a sink that is not addressable yet",
    )
    not_addressable_escalation_attempts: Optional[int] = Field(
        default=None,
        ge=1,
        description=(
            "Consecutive NotAddressable passes after which SinkResolved is "
            "reported False instead of Unknown (unset: never escalate)"
        ),
    )
    watch_timeout_seconds: int = Field(
        default=K8S_WATCH_TIMEOUT_S,
        ge=1,
        description="Server-side timeout of one watch request before it is reopened",
    )

    @field_validator("addressable_kinds", mode="before")
    @classmethod
    def split_kinds(cls, v: Any) -> Any:
        """Accept a comma-separated string as well as a list."""
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("manifest_dir")
    @classmethod
    def expand_path(cls, v: str) -> str:
        """Expand ~ and environment variables in paths."""
        return os.path.expanduser(os.path.expandvars(v))


# Global singleton
_config: Optional[SourceCoreConfig] = None


def get_config(**overrides) -> SourceCoreConfig:
    """
    Get the global configuration instance.

    Creates a singleton on first call. Subsequent calls return
    the same instance unless overrides are provided.

    Args:
        **overrides: Override any config values

    Returns:
        SourceCoreConfig instance
    """
    global _config

    if overrides or _config is None:
        _config = SourceCoreConfig(**overrides)

    return _config


def reset_config() -> None:
    """Reset the global configuration (for testing)."""
    global _config
    _config = None
