"""
File-based object store for local development.

Seeds an in-memory store from YAML manifests under a directory:

    ./manifests/
    ├── broker.yaml          # one or more documents per file
    ├── sources.yaml
    └── nested/
        └── services.yml

Status writes stay in memory; ``reload()`` re-reads the manifests, keeping
the status of objects that are still present.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from sourcecore.contracts.types import StoreType
from sourcecore.errors import ObjectNotFoundError
from sourcecore.models.core import ObjectKey
from sourcecore.storage.base import register_backend
from sourcecore.storage.memory import MemoryObjectStore

logger = logging.getLogger(__name__)


def load_manifests(base_dir: Path) -> List[Dict[str, Any]]:
    """Read every object from ``*.yaml``/``*.yml`` files under ``base_dir``."""
    objects: List[Dict[str, Any]] = []
    paths = sorted(list(base_dir.rglob("*.yaml")) + list(base_dir.rglob("*.yml")))
    for path in paths:
        with open(path) as f:
            for doc in yaml.safe_load_all(f):
                if not doc:
                    continue
                if not isinstance(doc, dict) or "kind" not in doc or "apiVersion" not in doc:
                    logger.warning(f"Skipping non-object document in {path}")
                    continue
                if doc["kind"].endswith("List") and isinstance(doc.get("items"), list):
                    objects.extend(item for item in doc["items"] if isinstance(item, dict))
                    continue
                objects.append(doc)
    return objects


@register_backend(StoreType.FILE)
class FileObjectStore(MemoryObjectStore):
    """
    Manifest-directory object store.

    Ideal for:
    - Local development
    - Dry-running resolution against a set of manifests
    - Testing
    """

    def __init__(
        self,
        base_dir: Optional[str] = None,
        default_namespace: str = "default",
        **kwargs: Any,
    ):
        super().__init__()
        self.base_dir = Path(
            base_dir or os.environ.get("SOURCECORE_MANIFEST_DIR", "./manifests")
        ).expanduser()
        self.default_namespace = default_namespace
        self.reload()

    def reload(self) -> int:
        """Re-read the manifest directory. Returns the number of objects loaded."""
        if not self.base_dir.is_dir():
            raise FileNotFoundError(f"Manifest directory not found: {self.base_dir}")

        seen = set()
        for obj in load_manifests(self.base_dir):
            metadata = obj.setdefault("metadata", {})
            metadata.setdefault("namespace", self.default_namespace)
            key = ObjectKey.for_object(obj)
            seen.add(key)
            if "status" not in obj:
                try:
                    current = self.get(key.gvk, key.namespace, key.name)
                except ObjectNotFoundError:
                    current = None
                if current is not None and "status" in current:
                    obj["status"] = current["status"]
            self.apply(obj)

        stale = [
            ObjectKey.for_object(obj)
            for obj in self._all_objects()
            if ObjectKey.for_object(obj) not in seen
        ]
        for key in stale:
            self.delete(key)

        logger.debug(f"FileObjectStore loaded {len(seen)} objects from {self.base_dir}")
        return len(seen)

    def _all_objects(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._objects.values())
