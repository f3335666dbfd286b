"""
Regulation - trust score, derived strictness level and tunable parameters.
"""
from .levels import (
    DEFAULT_LEVEL_THRESHOLDS,
    DEFAULT_TRUST_IMPACT,
    DERIVATIVE_EVENT_TYPES,
    INITIAL_LEVEL,
    INITIAL_TRUST_SCORE,
    LEVEL_CONFIG,
    RECORDABLE_EVENT_TYPES,
    clamp_score,
    level_config,
    level_for_score,
)
from .parameters import (
    PARAMETER_DEFAULTS,
    ParameterStore,
    is_threshold_key,
    threshold_conflicts,
    validate_parameter,
    validate_thresholds,
)
from .state_machine import TrustStateMachine, ScopeResolver, parse_regulation_event_type

__all__ = [
    "DEFAULT_LEVEL_THRESHOLDS",
    "DEFAULT_TRUST_IMPACT",
    "DERIVATIVE_EVENT_TYPES",
    "INITIAL_LEVEL",
    "INITIAL_TRUST_SCORE",
    "LEVEL_CONFIG",
    "RECORDABLE_EVENT_TYPES",
    "clamp_score",
    "level_config",
    "level_for_score",
    "PARAMETER_DEFAULTS",
    "ParameterStore",
    "is_threshold_key",
    "threshold_conflicts",
    "validate_parameter",
    "validate_thresholds",
    "TrustStateMachine",
    "ScopeResolver",
    "parse_regulation_event_type",
]
