"""Regulation Engine - Data Models"""
from .db_models import (
    # Enums
    ConsentCategory, CandidateSignalKey, SignalStatus, AuditAction,
    BehaviorEventType, ActiveSignalKey, SignalIntensity,
    RegulationEventType, PresetId, ParameterSource,
)
from .engine_types import (
    TimeRange, EventSnapshot, RuleOutput, ComputeResult,
    ParameterChange, PresetPreview,
)

__all__ = [
    "ConsentCategory", "CandidateSignalKey", "SignalStatus", "AuditAction",
    "BehaviorEventType", "ActiveSignalKey", "SignalIntensity",
    "RegulationEventType", "PresetId", "ParameterSource",
    "TimeRange", "EventSnapshot", "RuleOutput", "ComputeResult",
    "ParameterChange", "PresetPreview",
]
