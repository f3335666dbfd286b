"""
Strictness Levels

Level is a pure function of trust score. The table below is the built-in
default; users (or presets) may move the lower bounds through the
`level_threshold.<n>` parameters, but the shape stays the same:
five levels, 1 most permissive, 5 most restrictive.

| trust_score | level |
|-------------|-------|
| 80-100      | 1     |
| 60-79       | 2     |
| 40-59       | 3     |
| 20-39       | 4     |
| 0-19        | 5     |
"""
from typing import Dict, Optional

from ...models.db_models import RegulationEventType


MIN_TRUST_SCORE = 0
MAX_TRUST_SCORE = 100
INITIAL_TRUST_SCORE = 75
INITIAL_LEVEL = 2

# Lower bound (inclusive) of each level; level 5 is everything below level 4's bound
DEFAULT_LEVEL_THRESHOLDS: Dict[int, int] = {1: 80, 2: 60, 3: 40, 4: 20}


# =============================================================================
# TRUST IMPACT DEFAULTS
# =============================================================================

DEFAULT_TRUST_IMPACT: Dict[RegulationEventType, int] = {
    # Positive
    RegulationEventType.TASK_COMPLETED: 3,
    RegulationEventType.FOCUS_COMPLETED: 5,
    RegulationEventType.MILESTONE_HIT: 10,
    RegulationEventType.CONSISTENCY_WIN: 7,
    RegulationEventType.RETURNING_AFTER_INACTIVITY: 2,
    # Negative
    RegulationEventType.TASK_IGNORED: -2,
    RegulationEventType.SESSION_DRIFT: -3,
    RegulationEventType.DEADLINE_MISSED: -5,
    RegulationEventType.SESSION_ABANDONED: -4,
    RegulationEventType.OFFSHOOT_OVERUSE: -2,
    RegulationEventType.SIDE_PROJECT_OVERUSE: -3,
    RegulationEventType.RULE_VIOLATION: -3,
}

# Written by the state machine only, never accepted from callers
DERIVATIVE_EVENT_TYPES = frozenset({
    RegulationEventType.LEVEL_ESCALATED,
    RegulationEventType.LEVEL_DEESCALATED,
})

RECORDABLE_EVENT_TYPES = tuple(t for t in RegulationEventType if t not in DERIVATIVE_EVENT_TYPES)


# =============================================================================
# LEVEL CONFIGURATION
# =============================================================================

LEVEL_CONFIG = {
    1: {
        "name": "Chill Mode",
        "description": "Everything is open. Keep doing what you're doing.",
        "main_message": "Everything is unlocked. Keep this momentum going.",
        "escalation_message": "",
        "deescalation_message": "Welcome back to Chill Mode.",
    },
    2: {
        "name": "Helpful but Firm",
        "description": "Light structure with gentle reminders.",
        "main_message": "Things are organized. Reminders are on.",
        "escalation_message": "Adding a little structure to help things stay organized.",
        "deescalation_message": "Back on track.",
    },
    3: {
        "name": "Serious Mode",
        "description": "More structure, same support.",
        "main_message": "Structure is tightened. One thing at a time.",
        "escalation_message": "Stepping up the structure a bit.",
        "deescalation_message": "Things are coming back together.",
    },
    4: {
        "name": "Strict Mode",
        "description": "Rebuilding momentum step by step.",
        "main_message": "Rebuild mode. One step at a time.",
        "escalation_message": "Simplifying the view to rebuild momentum.",
        "deescalation_message": "Things are looking much better.",
    },
    5: {
        "name": "Guardian Mode",
        "description": "Full support. Reset together.",
        "main_message": "Everything is simplified to one clear path.",
        "escalation_message": "Guardian Mode is on. We rebuild from here.",
        "deescalation_message": "",
    },
}


def clamp_score(score: int) -> int:
    return max(MIN_TRUST_SCORE, min(MAX_TRUST_SCORE, int(score)))


def level_for_score(trust_score: int, thresholds: Optional[Dict[int, int]] = None) -> int:
    """Map a clamped score to a level using the given lower bounds."""
    bounds = thresholds or DEFAULT_LEVEL_THRESHOLDS
    score = clamp_score(trust_score)
    for level in (1, 2, 3, 4):
        if score >= bounds[level]:
            return level
    return 5


def level_config(level: int) -> dict:
    return {"level": level, **LEVEL_CONFIG[level]}
