"""
Timeout, resync and retry constants for SourceCore.

Centralizes the values the config layer uses as defaults so the
controller, the cache and the Kubernetes backend agree on them.
"""

from __future__ import annotations

# =============================================================================
# Reconciliation
# =============================================================================

# Deadline for a single reconcile pass
RECONCILE_TIMEOUT_S = 30.0

# Every Source is re-reconciled at least this often
RESYNC_INTERVAL_S = 600.0

# Default number of reconcile workers
DEFAULT_WORKERS = 4

# Delay before re-checking a sink that exists but is not addressable yet
NOT_ADDRESSABLE_REQUEUE_S = 15.0

# =============================================================================
# Backoff
# =============================================================================

# First retry delay after an infrastructure failure
BACKOFF_BASE_S = 0.5

# Upper bound for the per-key exponential backoff
BACKOFF_MAX_S = 300.0

# =============================================================================
# Kubernetes API Timeouts
# =============================================================================

# Connect timeout for K8s API calls
K8S_API_CONNECT_TIMEOUT_S = 3

# Read timeout for K8s API calls
K8S_API_READ_TIMEOUT_S = 5

# Server-side timeout for a single watch request before it is reopened
K8S_WATCH_TIMEOUT_S = 300

# =============================================================================
# Addressing
# =============================================================================

# Cluster domain used to build Service hostnames
DEFAULT_CLUSTER_DOMAIN = "cluster.local"
