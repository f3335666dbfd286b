"""
Consent - per-category opt-in gates and the Safe Mode brake.
"""
from .registry import (
    ConsentRegistry,
    CANDIDATE_SIGNAL_CONSENT,
    ACTIVE_SIGNAL_CONSENT,
    candidate_keys_for,
    parse_category,
)
from .safe_mode import SafeModeService

__all__ = [
    "ConsentRegistry",
    "SafeModeService",
    "CANDIDATE_SIGNAL_CONSENT",
    "ACTIVE_SIGNAL_CONSENT",
    "candidate_keys_for",
    "parse_category",
]
