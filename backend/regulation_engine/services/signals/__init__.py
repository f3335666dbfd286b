"""
Candidate Signals - versioned pure rules and the consent-gated engine.
"""
from .rules import (
    SIGNAL_RULES,
    SignalRule,
    get_rule,
    provenance_hash,
    resolve_parameters,
)
from .computation import SignalComputationEngine

__all__ = [
    "SIGNAL_RULES",
    "SignalRule",
    "get_rule",
    "provenance_hash",
    "resolve_parameters",
    "SignalComputationEngine",
]
