"""
Regulation Engine - SQLAlchemy ORM Models
PostgreSQL database models for persistent storage
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, Float, DateTime, Text, JSON, ForeignKey, Enum as SQLEnum,
    Boolean, UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship
from ..database import Base


# =============================================================================
# ENUMS - CLOSED SETS
# =============================================================================
# Adding a member is a deploy-time decision. Lookups by raw string go through
# Enum(value) and unknown values are rejected, never guessed.
# =============================================================================

class ConsentCategory(str, Enum):
    """Classifications of behavioral data a user may opt into."""
    SESSION_STRUCTURES = "session_structures"
    TIME_PATTERNS = "time_patterns"
    ACTIVITY_DURATIONS = "activity_durations"
    DATA_QUALITY_BASIC = "data_quality_basic"


class CandidateSignalKey(str, Enum):
    """Versioned computation rules for durable candidate signals."""
    SESSION_BOUNDARIES = "session_boundaries"
    TIME_BINS_ACTIVITY_COUNT = "time_bins_activity_count"
    ACTIVITY_INTERVALS = "activity_intervals"
    CAPTURE_COVERAGE = "capture_coverage"


class SignalStatus(str, Enum):
    CANDIDATE = "candidate"
    INVALIDATED = "invalidated"
    DELETED = "deleted"


class AuditAction(str, Enum):
    COMPUTED = "computed"
    INVALIDATED = "invalidated"
    DELETED = "deleted"
    CONSENT_GRANTED = "consent_granted"
    CONSENT_REVOKED = "consent_revoked"


class BehaviorEventType(str, Enum):
    """User actions emitted by the CRUD domains."""
    CONTEXT_SWITCH = "context_switch"
    TASK_CREATED = "task_created"
    TASK_COMPLETED = "task_completed"
    FOCUS_SESSION_STARTED = "focus_session_started"
    FOCUS_SESSION_ENDED = "focus_session_ended"
    SCOPE_EXPANSION = "scope_expansion"
    RULE_VIOLATION = "rule_violation"
    APP_OPENED = "app_opened"


class ActiveSignalKey(str, Enum):
    """Ephemeral, user-visible pattern explanations."""
    RAPID_CONTEXT_SWITCHING = "rapid_context_switching"
    RUNAWAY_SCOPE_EXPANSION = "runaway_scope_expansion"
    FRAGMENTED_FOCUS_SESSION = "fragmented_focus_session"
    PROLONGED_INACTIVITY_GAP = "prolonged_inactivity_gap"
    HIGH_TASK_INTAKE_WITHOUT_COMPLETION = "high_task_intake_without_completion"


class SignalIntensity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RegulationEventType(str, Enum):
    """Inputs to the trust/strictness state machine."""
    # Positive
    TASK_COMPLETED = "task_completed"
    FOCUS_COMPLETED = "focus_completed"
    MILESTONE_HIT = "milestone_hit"
    CONSISTENCY_WIN = "consistency_win"
    RETURNING_AFTER_INACTIVITY = "returning_after_inactivity"
    # Negative
    TASK_IGNORED = "task_ignored"
    SESSION_DRIFT = "session_drift"
    DEADLINE_MISSED = "deadline_missed"
    SESSION_ABANDONED = "session_abandoned"
    OFFSHOOT_OVERUSE = "offshoot_overuse"
    SIDE_PROJECT_OVERUSE = "side_project_overuse"
    RULE_VIOLATION = "rule_violation"
    # Derivative (written by the state machine only)
    LEVEL_ESCALATED = "level_escalated"
    LEVEL_DEESCALATED = "level_deescalated"


class PresetId(str, Enum):
    GENTLE_START = "gentle_start"
    DEEP_FOCUS = "deep_focus"
    QUIET_SIGNALS = "quiet_signals"
    STEADY_ACCOUNTABILITY = "steady_accountability"


class ParameterSource(str, Enum):
    MANUAL = "manual"
    PRESET = "preset"


# =============================================================================
# CONSENT REGISTRY
# =============================================================================

class ConsentFlagDB(Base):
    """
    Per-user, per-category consent gate.
    No row = never touched = no consent. Rows are never deleted.
    """
    __tablename__ = "consent_flags"
    __table_args__ = (
        UniqueConstraint("user_id", "category", name="uq_consent_user_category"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), nullable=False, index=True)
    category = Column(SQLEnum(ConsentCategory), nullable=False)
    is_enabled = Column(Boolean, nullable=False, default=False)

    # Exactly one of these is set once the flag has changed
    granted_at = Column(DateTime, nullable=True)
    revoked_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SafeModeStateDB(Base):
    """
    Emergency brake: while enabled, nothing is surfaced to the user.
    Toggling never deletes data.
    """
    __tablename__ = "safe_mode_state"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), nullable=False, unique=True, index=True)
    is_enabled = Column(Boolean, nullable=False, default=False)
    enabled_at = Column(DateTime, nullable=True)
    disabled_at = Column(DateTime, nullable=True)
    activation_reason = Column(Text, nullable=True)
    activation_count = Column(Integer, nullable=False, default=0)
    last_toggled_at = Column(DateTime, nullable=True)


# =============================================================================
# BEHAVIOR EVENT LOG (INGESTION STORE)
# =============================================================================

class BehaviorEventDB(Base):
    """
    Upstream user actions as received from the CRUD domains.
    Edits bump `revision`; removal is a soft delete. Both invalidate
    any candidate signal whose provenance includes the event.
    """
    __tablename__ = "behavior_events"
    __table_args__ = (
        Index("idx_behavior_events_user_time", "user_id", "occurred_at"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), nullable=False, index=True)
    scope_id = Column(String(36), nullable=True)

    event_type = Column(SQLEnum(BehaviorEventType), nullable=False)
    severity = Column(Integer, nullable=False, default=1)  # 1-5
    occurred_at = Column(DateTime, nullable=False)
    received_at = Column(DateTime, nullable=False)

    # Renamed from 'metadata' which is reserved in SQLAlchemy
    event_metadata = Column(JSON, nullable=True, default=dict)

    # Arrived outside the lateness window - never surfaced
    is_late = Column(Boolean, nullable=False, default=False)

    revision = Column(Integer, nullable=False, default=1)
    removed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# =============================================================================
# CANDIDATE SIGNALS (DURABLE, AUDITED)
# =============================================================================

class CandidateSignalDB(Base):
    """
    Computed behavioral observation with full provenance.

    Created only by the computation engine. Only `status` and the
    invalidation/deletion columns ever change afterwards; recomputation
    creates a new row.
    """
    __tablename__ = "candidate_signals"
    __table_args__ = (
        Index("idx_candidate_signals_user_key_time", "user_id", "signal_key", "computed_at"),
        Index("idx_candidate_signals_provenance_hash", "user_id", "signal_key", "provenance_hash"),
    )

    signal_id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), nullable=False, index=True)
    signal_key = Column(SQLEnum(CandidateSignalKey), nullable=False)
    signal_version = Column(String(20), nullable=False)

    # Window this signal covers (start <= end)
    time_range_start = Column(DateTime, nullable=False)
    time_range_end = Column(DateTime, nullable=False)

    # Neutral output - structure depends on signal_key
    value_json = Column(JSON, nullable=False)

    confidence = Column(Float, nullable=False)  # 0..1
    provenance_event_ids = Column(JSON, nullable=False)  # sorted, non-empty
    provenance_hash = Column(String(64), nullable=False)  # SHA-256
    parameters_json = Column(JSON, nullable=False, default=dict)

    computed_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    # Lifecycle
    status = Column(SQLEnum(SignalStatus), nullable=False, default=SignalStatus.CANDIDATE)
    invalidated_at = Column(DateTime, nullable=True)
    invalidated_reason = Column(Text, nullable=True)  # required iff INVALIDATED
    deleted_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    provenance_links = relationship(
        "SignalProvenanceDB", back_populates="signal", cascade="all, delete-orphan"
    )


class SignalProvenanceDB(Base):
    """
    One row per (signal, source event).
    Lets invalidation find affected signals with an indexed lookup.
    """
    __tablename__ = "candidate_signal_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    signal_id = Column(
        String(36), ForeignKey("candidate_signals.signal_id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id = Column(String(36), nullable=False)
    event_id = Column(String(36), nullable=False)

    signal = relationship("CandidateSignalDB", back_populates="provenance_links")

    __table_args__ = (
        Index("idx_candidate_signal_events_user_event", "user_id", "event_id"),
    )


class SignalAuditLogDB(Base):
    """
    Immutable audit trail of compute/invalidate/delete/consent actions.
    Append-only - one entry per state-changing action.
    """
    __tablename__ = "signal_audit_log"

    audit_id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), nullable=False, index=True)
    signal_id = Column(
        String(36), ForeignKey("candidate_signals.signal_id", ondelete="SET NULL"), nullable=True, index=True
    )

    action = Column(SQLEnum(AuditAction), nullable=False)
    actor = Column(String(64), nullable=False)  # user id or "system"
    reason = Column(Text, nullable=True)
    audit_metadata = Column(JSON, nullable=True, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow)


# =============================================================================
# ACTIVE SIGNALS (EPHEMERAL, USER-VISIBLE)
# =============================================================================

class SignalDefinitionDB(Base):
    """
    Registry of surfaced signal rules.
    Seeded once; only `is_active` is toggled administratively.
    """
    __tablename__ = "signal_definitions"

    signal_key = Column(SQLEnum(ActiveSignalKey), primary_key=True)
    version = Column(String(20), nullable=False, default="1.0.0")
    human_label = Column(String(255), nullable=False)
    short_description = Column(Text, nullable=False)
    explanation_text = Column(Text, nullable=False)
    consent_category = Column(SQLEnum(ConsentCategory), nullable=False)
    rule_parameters = Column(JSON, nullable=False, default=dict)
    expires_in_minutes = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    display_order = Column(Integer, nullable=False, default=0)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ActiveSignalDB(Base):
    """
    Short-lived explanation of a detected pattern.
    Read-only to the user except for dismissal. Garbage-collected once
    expired or dismissed; never aggregated into a profile.
    """
    __tablename__ = "active_signals"
    __table_args__ = (
        Index("idx_active_signals_user_key", "user_id", "signal_key"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), nullable=False, index=True)
    session_id = Column(String(64), nullable=True)
    signal_key = Column(SQLEnum(ActiveSignalKey), nullable=False)

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    explanation_why = Column(Text, nullable=False)
    context_data = Column(JSON, nullable=True, default=dict)
    intensity = Column(SQLEnum(SignalIntensity), nullable=False, default=SignalIntensity.MEDIUM)

    detected_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)  # > detected_at
    dismissed_at = Column(DateTime, nullable=True)  # terminal


# =============================================================================
# TRUST / STRICTNESS STATE MACHINE
# =============================================================================

class RegulationStateDB(Base):
    """
    One row per (user, scope). `current_level` is always derived from
    `trust_score`; nothing writes it directly.
    """
    __tablename__ = "regulation_state"
    __table_args__ = (
        UniqueConstraint("user_id", "scope_key", name="uq_regulation_state_user_scope"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), nullable=False, index=True)
    scope_id = Column(String(36), nullable=True)
    scope_key = Column(String(36), nullable=False, default="")  # "" = global scope

    current_level = Column(Integer, nullable=False, default=2)  # 1-5
    trust_score = Column(Integer, nullable=False, default=75)  # 0-100

    rule_break_count = Column(Integer, nullable=False, default=0)
    consecutive_wins = Column(Integer, nullable=False, default=0)
    consecutive_losses = Column(Integer, nullable=False, default=0)

    # Rolling 7-day counters, recomputed from the event log
    drift_events_7d = Column(Integer, nullable=False, default=0)
    focus_interruptions_7d = Column(Integer, nullable=False, default=0)
    missed_deadlines_7d = Column(Integer, nullable=False, default=0)
    offshoot_creations_7d = Column(Integer, nullable=False, default=0)
    side_project_switches_7d = Column(Integer, nullable=False, default=0)
    tasks_completed_7d = Column(Integer, nullable=False, default=0)
    focus_sessions_completed_7d = Column(Integer, nullable=False, default=0)

    event_count = Column(Integer, nullable=False, default=0)

    last_level_change_at = Column(DateTime, nullable=True)
    last_calculated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Optimistic concurrency check
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class RegulationEventDB(Base):
    """
    Append-only log. The sole input that moves trust_score.
    `sequence` orders events within a (user, scope).
    """
    __tablename__ = "regulation_events"
    __table_args__ = (
        Index("idx_regulation_events_user_scope_seq", "user_id", "scope_key", "sequence"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), nullable=False, index=True)
    scope_id = Column(String(36), nullable=True)
    scope_key = Column(String(36), nullable=False, default="")
    sequence = Column(Integer, nullable=False)

    event_type = Column(SQLEnum(RegulationEventType), nullable=False)
    severity = Column(Integer, nullable=False, default=1)  # 1-5
    impact_on_trust = Column(Integer, nullable=False, default=0)
    trust_score_after = Column(Integer, nullable=False)

    event_metadata = Column(JSON, nullable=True, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow)


# =============================================================================
# TUNABLE PARAMETERS & PRESETS
# =============================================================================

class RegulationParameterDB(Base):
    """
    User override of a tunable parameter. Absent row = built-in default.
    """
    __tablename__ = "regulation_parameters"
    __table_args__ = (
        UniqueConstraint("user_id", "key", name="uq_regulation_parameter_user_key"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), nullable=False, index=True)
    key = Column(String(100), nullable=False)
    value = Column(JSON, nullable=False)
    source = Column(SQLEnum(ParameterSource), nullable=False, default=ParameterSource.MANUAL)
    preset_application_id = Column(String(36), nullable=True)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class PresetApplicationDB(Base):
    """
    Record of a preset applied over existing parameters.

    changes_made: {"<key>": {"old": x, "new": y, "was_set": bool}}
    edited_manually flips to True (one way) when any touched key is changed
    outside the preset mechanism.
    """
    __tablename__ = "preset_applications"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), nullable=False, index=True)
    preset_id = Column(SQLEnum(PresetId), nullable=False)

    applied_at = Column(DateTime, nullable=False)
    changes_made = Column(JSON, nullable=False)
    reverted_at = Column(DateTime, nullable=True)

    edited_manually = Column(Boolean, nullable=False, default=False)
    manually_edited_parameters = Column(JSON, nullable=False, default=list)

    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
