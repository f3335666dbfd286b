"""
Regulation Engine - In-Process Value Types

Plain dataclasses passed between services. ORM rows never cross the
rule boundary: rules see EventSnapshot only, which keeps them pure.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .db_models import BehaviorEventType, CandidateSignalDB


@dataclass(frozen=True)
class TimeRange:
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError(f"time range start {self.start} is after end {self.end}")

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end

    @property
    def minutes(self) -> float:
        return (self.end - self.start).total_seconds() / 60.0


@dataclass(frozen=True)
class EventSnapshot:
    """Immutable view of a behavior event as a rule sees it."""
    event_id: str
    user_id: str
    event_type: BehaviorEventType
    occurred_at: datetime
    severity: int = 1
    scope_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    revision: int = 1

    @classmethod
    def from_row(cls, row) -> "EventSnapshot":
        return cls(
            event_id=row.id,
            user_id=row.user_id,
            event_type=BehaviorEventType(row.event_type),
            occurred_at=row.occurred_at,
            severity=row.severity or 1,
            scope_id=row.scope_id,
            metadata=dict(row.event_metadata or {}),
            revision=row.revision or 1,
        )

    def canonical(self) -> Dict[str, Any]:
        """Stable representation used for provenance hashing."""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "occurred_at": self.occurred_at.isoformat(),
            "severity": self.severity,
            "scope_id": self.scope_id,
            "metadata": self.metadata,
            "revision": self.revision,
        }


@dataclass
class RuleOutput:
    """What a candidate signal rule produces before persistence."""
    value: Dict[str, Any]
    confidence: float
    provenance_event_ids: List[str]


@dataclass
class ComputeResult:
    """Summary of a batch computation for one user."""
    computed: int = 0
    reused: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)
    signals: List[CandidateSignalDB] = field(default_factory=list)


@dataclass(frozen=True)
class ParameterChange:
    parameter: str
    old: Any
    new: Any
    was_set: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"old": self.old, "new": self.new, "was_set": self.was_set}


@dataclass
class PresetPreview:
    preset_id: str
    changes: List[ParameterChange]
    preview_token: str

    @property
    def is_noop(self) -> bool:
        return not self.changes
