"""
Pydantic v2 models for conditions and Source status.

The persisted layout on every Source-shaped object is::

    status:
      observedGeneration: 3
      conditions:
        - type: Ready
          status: "True"
          reason: ""
          message: ""
          severity: Error
          lastTransitionTime: "2024-05-01T10:00:00Z"
      sinkUri: http://broker.ns.svc.cluster.local

``SourceStatus.to_dict()`` always renders that layout deterministically
(conditions sorted by type, ``sinkUri`` omitted until first resolved) so that
unchanged inputs produce byte-identical status.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from sourcecore.contracts.types import ConditionSeverity, ConditionStatus
from sourcecore.models.core import Destination, GroupVersionKind, ObjectKey


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an RFC3339 timestamp, accepting a trailing ``Z``."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).replace(microsecond=0)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class Condition(BaseModel):
    """One named health signal. At most one condition exists per ``type``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: str = Field(..., min_length=1)
    status: ConditionStatus = ConditionStatus.UNKNOWN
    reason: str = ""
    message: str = ""
    # None means "not recorded"; the condition set treats it as Error.
    severity: Optional[ConditionSeverity] = None
    last_transition_time: Optional[datetime] = Field(None, alias="lastTransitionTime")

    @field_validator("last_transition_time", mode="before")
    @classmethod
    def _parse_time(cls, v: Any) -> Optional[datetime]:
        return parse_timestamp(v)

    @field_validator("reason", "message", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> str:
        return "" if v is None else v

    @field_serializer("last_transition_time")
    def _serialize_time(self, v: Optional[datetime]) -> Optional[str]:
        return format_timestamp(v) if v is not None else None

    @property
    def effective_severity(self) -> ConditionSeverity:
        return self.severity or ConditionSeverity.ERROR

    def is_true(self) -> bool:
        return self.status == ConditionStatus.TRUE

    def is_false(self) -> bool:
        return self.status == ConditionStatus.FALSE

    def is_unknown(self) -> bool:
        return self.status == ConditionStatus.UNKNOWN

    def same_content(self, other: "Condition") -> bool:
        """Equal in everything except the transition timestamp."""
        return (
            self.type == other.type
            and self.status == other.status
            and self.reason == other.reason
            and self.message == other.message
            and self.effective_severity == other.effective_severity
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type,
            "status": self.status.value,
            "reason": self.reason,
            "message": self.message,
            "severity": self.effective_severity.value,
        }
        if self.last_transition_time is not None:
            data["lastTransitionTime"] = format_timestamp(self.last_transition_time)
        return data


class SourceStatus(BaseModel):
    """Aggregate status produced by the reconciler.

    Unknown status fields written by a concrete source are kept on round-trip.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    observed_generation: int = Field(0, alias="observedGeneration")
    conditions: list[Condition] = Field(default_factory=list)
    sink_uri: Optional[str] = Field(None, alias="sinkUri")

    @field_validator("conditions", mode="before")
    @classmethod
    def _none_to_list(cls, v: Any) -> Any:
        return [] if v is None else v

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "SourceStatus":
        return cls.model_validate(data or {})

    def get_condition(self, condition_type: str) -> Optional[Condition]:
        for cond in self.conditions:
            if cond.type == condition_type:
                return cond
        return None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.model_extra:
            data.update(self.model_extra)
        data["observedGeneration"] = self.observed_generation
        data["conditions"] = [
            c.to_dict() for c in sorted(self.conditions, key=lambda c: c.type)
        ]
        if self.sink_uri:
            data["sinkUri"] = self.sink_uri
        return data


class SourceObject:
    """Read-only view over a raw Source-shaped object.

    Any kind qualifies as long as it carries ``spec.sink``; nothing else about
    its schema is assumed.
    """

    def __init__(self, raw: dict[str, Any]):
        self.raw = raw
        self.key = ObjectKey.for_object(raw)

    @property
    def gvk(self) -> GroupVersionKind:
        return self.key.gvk

    @property
    def namespace(self) -> str:
        return self.key.namespace

    @property
    def name(self) -> str:
        return self.key.name

    @property
    def generation(self) -> int:
        return int((self.raw.get("metadata") or {}).get("generation") or 0)

    @property
    def spec(self) -> dict[str, Any]:
        return self.raw.get("spec") or {}

    @property
    def sink(self) -> Optional[Destination]:
        sink = self.spec.get("sink")
        if sink is None:
            return None
        return Destination.model_validate(sink)

    @property
    def status(self) -> SourceStatus:
        return SourceStatus.from_dict(self.raw.get("status"))

    def __repr__(self) -> str:
        return f"SourceObject({self.key})"
