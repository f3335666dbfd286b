"""
Signal Definition Registry

Seed data for the surfaced (ephemeral) signals plus read/admin access.
Definitions are effectively immutable once seeded; only `is_active` is
toggled administratively. Per-user opt-outs live in the parameter store
(`signal_enabled.<key>`), not here.

Explanation texts describe what was observed and why it is shown. They
never tell the user what to do and never label the behavior.
"""
import logging
from typing import Any, Dict, List, Union

from sqlalchemy.orm import Session

from ...models.db_models import ActiveSignalKey, SignalDefinitionDB
from ..consent import ACTIVE_SIGNAL_CONSENT
from ..exceptions import NotFound, UnknownSignalKey


logger = logging.getLogger(__name__)


DEFAULT_SIGNAL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "signal_key": ActiveSignalKey.RAPID_CONTEXT_SWITCHING,
        "human_label": "You've moved between several things quickly",
        "short_description": (
            "In the last {window_minutes} minutes you moved between contexts "
            "{switches} times without settling on one for long."
        ),
        "explanation_text": (
            "This signal appears when you move between different contexts (projects, tracks, "
            "or focus areas) without settling on one for long. This pattern is common during "
            "exploration, idea capture, or when a lot is going on. It is not a problem to fix, "
            "just something you might want to be aware of."
        ),
        "rule_parameters": {"min_switches": 5, "window_minutes": 20},
        "expires_in_minutes": 60,
        "display_order": 1,
    },
    {
        "signal_key": ActiveSignalKey.RUNAWAY_SCOPE_EXPANSION,
        "human_label": "Your project grew quickly in one session",
        "short_description": (
            "{additions} new ideas or project elements were added in the last {window_minutes} minutes."
        ),
        "explanation_text": (
            "This signal appears when many new elements (side projects, offshoot ideas, tracks "
            "or roadmap items) are added in a short time. Expansion is sometimes intentional. "
            "Nothing is blocked or undone; this is visibility only."
        ),
        "rule_parameters": {"min_additions": 5, "window_minutes": 60},
        "expires_in_minutes": 120,
        "display_order": 2,
    },
    {
        "signal_key": ActiveSignalKey.FRAGMENTED_FOCUS_SESSION,
        "human_label": "Focus was started, but interrupted",
        "short_description": (
            "{fragmented_sessions} focus session(s) in the last {window_minutes} minutes ended "
            "within {min_duration_minutes} minutes of starting."
        ),
        "explanation_text": (
            "This signal appears when a focus session is started and then ended shortly after. "
            "Focus mode is optional and early exits are normal. Context or priorities may have "
            "changed. This is a reflection of what happened."
        ),
        "rule_parameters": {"min_duration_minutes": 5, "window_minutes": 30},
        "expires_in_minutes": 60,
        "display_order": 3,
    },
    {
        "signal_key": ActiveSignalKey.PROLONGED_INACTIVITY_GAP,
        "human_label": "There was a long pause in activity",
        "short_description": "There were {gap_days} days between your recent activity and the previous session.",
        "explanation_text": (
            "This signal appears when you return after several days without activity. "
            "Interruptions are normal and this is not treated as abandonment, just an "
            "acknowledgment that time passed."
        ),
        "rule_parameters": {"min_gap_days": 3, "window_minutes": 60},
        "expires_in_minutes": 240,
        "display_order": 4,
    },
    {
        "signal_key": ActiveSignalKey.HIGH_TASK_INTAKE_WITHOUT_COMPLETION,
        "human_label": "Many tasks added, few finished",
        "short_description": (
            "{tasks_created} tasks were added and {tasks_completed} marked complete "
            "in the last {window_minutes} minutes."
        ),
        "explanation_text": (
            "This signal appears when several tasks are created while few are marked complete. "
            "Capturing tasks is often helpful; completion may happen later or elsewhere. "
            "This is about visibility, not judgment."
        ),
        "rule_parameters": {"min_tasks_created": 5, "max_tasks_completed": 1, "window_minutes": 1440},
        "expires_in_minutes": 240,
        "display_order": 5,
    },
]


def parse_active_key(signal_key: Union[str, ActiveSignalKey]) -> ActiveSignalKey:
    try:
        return ActiveSignalKey(signal_key)
    except ValueError:
        raise UnknownSignalKey(signal_key)


class SignalDefinitionRegistry:
    def __init__(self, db: Session):
        self.db = db

    def seed_defaults(self) -> int:
        """Insert any missing definition. Existing rows are left alone."""
        existing = {row.signal_key for row in self.db.query(SignalDefinitionDB).all()}
        created = 0
        for entry in DEFAULT_SIGNAL_DEFINITIONS:
            if entry["signal_key"] in existing:
                continue
            self.db.add(SignalDefinitionDB(
                signal_key=entry["signal_key"],
                version="1.0.0",
                human_label=entry["human_label"],
                short_description=entry["short_description"],
                explanation_text=entry["explanation_text"],
                consent_category=ACTIVE_SIGNAL_CONSENT[entry["signal_key"]],
                rule_parameters=dict(entry["rule_parameters"]),
                expires_in_minutes=entry["expires_in_minutes"],
                is_active=True,
                display_order=entry["display_order"],
            ))
            created += 1
        if created:
            self.db.flush()
            logger.info(f"Seeded {created} signal definitions")
        return created

    def list_definitions(self, active_only: bool = True) -> List[SignalDefinitionDB]:
        query = self.db.query(SignalDefinitionDB)
        if active_only:
            query = query.filter(SignalDefinitionDB.is_active.is_(True))
        return query.order_by(SignalDefinitionDB.display_order).all()

    def get_definition(self, signal_key: Union[str, ActiveSignalKey]) -> SignalDefinitionDB:
        key = parse_active_key(signal_key)
        definition = self.db.query(SignalDefinitionDB).filter(SignalDefinitionDB.signal_key == key).first()
        if definition is None:
            raise NotFound("Signal definition", key.value)
        return definition

    def set_active(self, signal_key: Union[str, ActiveSignalKey], is_active: bool) -> SignalDefinitionDB:
        definition = self.get_definition(signal_key)
        if definition.is_active != is_active:
            definition.is_active = is_active
            self.db.flush()
            logger.info(f"Signal definition {definition.signal_key.value} set active={is_active}")
        return definition
