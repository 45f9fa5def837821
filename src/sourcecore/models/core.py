"""
Pydantic v2 models for object identity and destinations.

These models describe *where* a Source sends events. They carry no behavior
beyond parsing, identity and label matching; resolution lives in
``sourcecore.resolver``.

Usage::

    from sourcecore.models import Destination

    dest = Destination.model_validate(
        {"ref": {"apiVersion": "eventing.knative.dev/v1", "kind": "Broker",
                 "name": "default"}, "uri": "/extra"}
    )
    dest.ref.gvk  # GroupVersionKind(group='eventing.knative.dev', ...)
"""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


class GroupVersionKind(BaseModel):
    """Dynamic kind identifier. Hashable so it can key cache buckets."""

    model_config = ConfigDict(frozen=True)

    group: str = ""
    version: str
    kind: str

    @classmethod
    def from_api_version(cls, api_version: str, kind: str) -> "GroupVersionKind":
        """Split ``group/version`` (or a bare core ``version``)."""
        if "/" in api_version:
            group, version = api_version.split("/", 1)
        else:
            group, version = "", api_version
        return cls(group=group, version=version, kind=kind)

    @property
    def api_version(self) -> str:
        if self.group:
            return f"{self.group}/{self.version}"
        return self.version

    def __str__(self) -> str:
        if self.group:
            return f"{self.kind}.{self.version}.{self.group}"
        return f"{self.kind}.{self.version}"


class ObjectKey(BaseModel):
    """Identifies one namespaced object of a dynamic kind."""

    model_config = ConfigDict(frozen=True)

    gvk: GroupVersionKind
    namespace: str
    name: str

    @classmethod
    def for_object(cls, obj: dict[str, Any]) -> "ObjectKey":
        metadata = obj.get("metadata") or {}
        return cls(
            gvk=GroupVersionKind.from_api_version(obj.get("apiVersion", ""), obj.get("kind", "")),
            namespace=metadata.get("namespace") or "",
            name=metadata.get("name") or "",
        )

    def __str__(self) -> str:
        return f"{self.gvk}/{self.namespace}/{self.name}"


# ---------------------------------------------------------------------------
# Label selectors
# ---------------------------------------------------------------------------


class LabelSelectorRequirement(BaseModel):
    """One ``matchExpressions`` entry."""

    model_config = ConfigDict(extra="forbid")

    key: str = Field(..., min_length=1)
    operator: Literal["In", "NotIn", "Exists", "DoesNotExist"]
    values: list[str] = Field(default_factory=list)

    def matches(self, labels: dict[str, str]) -> bool:
        if self.operator == "Exists":
            return self.key in labels
        if self.operator == "DoesNotExist":
            return self.key not in labels
        if self.operator == "In":
            return self.key in labels and labels[self.key] in self.values
        # NotIn also matches objects that lack the key entirely
        return self.key not in labels or labels[self.key] not in self.values

    def to_selector_term(self) -> str:
        if self.operator == "Exists":
            return self.key
        if self.operator == "DoesNotExist":
            return f"!{self.key}"
        values = ",".join(sorted(self.values))
        op = "in" if self.operator == "In" else "notin"
        return f"{self.key} {op} ({values})"


class LabelSelector(BaseModel):
    """Kubernetes-style label selector. All terms must match."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    match_labels: dict[str, str] = Field(default_factory=dict, alias="matchLabels")
    match_expressions: tuple[LabelSelectorRequirement, ...] = Field(
        default_factory=tuple, alias="matchExpressions"
    )

    def matches(self, labels: Optional[dict[str, str]]) -> bool:
        labels = labels or {}
        for key, value in self.match_labels.items():
            if labels.get(key) != value:
                return False
        return all(expr.matches(labels) for expr in self.match_expressions)

    def to_label_selector(self) -> str:
        """Render as the string form accepted by the Kubernetes API."""
        terms = [f"{k}={v}" for k, v in sorted(self.match_labels.items())]
        terms.extend(expr.to_selector_term() for expr in self.match_expressions)
        return ",".join(terms)

    def __hash__(self) -> int:
        return hash((tuple(sorted(self.match_labels.items())), self.to_label_selector()))


# ---------------------------------------------------------------------------
# Destinations
# ---------------------------------------------------------------------------


class KReference(BaseModel):
    """Reference to an addressable object by kind and, usually, name."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    api_version: str = Field(..., alias="apiVersion")
    kind: str
    namespace: Optional[str] = None
    name: Optional[str] = None

    @property
    def gvk(self) -> GroupVersionKind:
        return GroupVersionKind.from_api_version(self.api_version, self.kind)


class Destination(BaseModel):
    """Where a Source delivers events: a URI, or a reference plus optional suffix.

    Shape validation (exactly one of ``uri``/``ref``) is done by the resolver
    so that an invalid destination is reported through the object's
    conditions instead of failing to parse.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    ref: Optional[KReference] = None
    selector: Optional[LabelSelector] = None
    uri: Optional[str] = None

    @property
    def has_ref(self) -> bool:
        return self.ref is not None

    @property
    def is_direct_uri(self) -> bool:
        return self.ref is None and self.selector is None and bool(self.uri)

    def describe(self) -> str:
        """Short human-readable form for logs and condition messages."""
        if self.is_direct_uri:
            return self.uri or ""
        if self.ref is None:
            return "<empty destination>"
        target = self.ref.name
        if target is None and self.selector is not None:
            target = f"selector({self.selector.to_label_selector()})"
        parts = [f"{self.ref.kind}.{self.ref.api_version}", str(target)]
        if self.uri:
            parts.append(self.uri)
        return "/".join(parts)
