"""
Tunable Parameter Store

Per-user overrides for the knobs presets are allowed to turn:

    trust_impact.<event_type>      int in -100..100
    level_threshold.<1..4>         int in 1..100, strictly decreasing
    signal_enabled.<signal_key>    bool

Effective value = user override if present, else the built-in default.
A missing override and an override equal to the default are different
states; revert relies on the distinction.

Manual edits (set_parameter / reset_parameter) mark every non-reverted
preset application that touched the key as edited_manually. Preset writes
go through write_override / clear_override, which do not.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import (
    ActiveSignalKey,
    ParameterSource,
    PresetApplicationDB,
    RegulationEventType,
    RegulationParameterDB,
)
from ...models.engine_types import ParameterChange
from ..exceptions import InvalidParameter
from .levels import DEFAULT_LEVEL_THRESHOLDS, DEFAULT_TRUST_IMPACT, RECORDABLE_EVENT_TYPES


logger = logging.getLogger(__name__)

TRUST_IMPACT_PREFIX = "trust_impact."
LEVEL_THRESHOLD_PREFIX = "level_threshold."
SIGNAL_ENABLED_PREFIX = "signal_enabled."


def _build_defaults() -> Dict[str, Any]:
    defaults: Dict[str, Any] = {}
    for event_type in RECORDABLE_EVENT_TYPES:
        defaults[f"{TRUST_IMPACT_PREFIX}{event_type.value}"] = DEFAULT_TRUST_IMPACT[event_type]
    for level, bound in DEFAULT_LEVEL_THRESHOLDS.items():
        defaults[f"{LEVEL_THRESHOLD_PREFIX}{level}"] = bound
    for signal_key in ActiveSignalKey:
        defaults[f"{SIGNAL_ENABLED_PREFIX}{signal_key.value}"] = True
    return defaults


PARAMETER_DEFAULTS: Dict[str, Any] = _build_defaults()


def is_threshold_key(key: str) -> bool:
    return key.startswith(LEVEL_THRESHOLD_PREFIX)


def validate_parameter(key: str, value: Any) -> Any:
    """Type/range check for a single key. Returns the value unchanged."""
    if key not in PARAMETER_DEFAULTS:
        raise InvalidParameter(key, value, "known parameter key")

    if key.startswith(SIGNAL_ENABLED_PREFIX):
        if not isinstance(value, bool):
            raise InvalidParameter(key, value, "boolean")
        return value

    if not isinstance(value, int) or isinstance(value, bool):
        raise InvalidParameter(key, value, "integer")

    if key.startswith(TRUST_IMPACT_PREFIX) and not -100 <= value <= 100:
        raise InvalidParameter(key, value, "integer in -100..100")
    if is_threshold_key(key) and not 1 <= value <= 100:
        raise InvalidParameter(key, value, "integer in 1..100")
    return value


def validate_thresholds(thresholds: Dict[int, int]) -> None:
    """Lower bounds must strictly decrease from level 1 to level 4."""
    ordered = [thresholds[level] for level in (1, 2, 3, 4)]
    for upper, lower in zip(ordered, ordered[1:]):
        if not upper > lower:
            raise InvalidParameter(
                LEVEL_THRESHOLD_PREFIX + "*",
                ordered,
                "strictly decreasing from level 1 to level 4",
            )


def threshold_conflicts(thresholds: Dict[int, int]) -> List[str]:
    """Threshold keys taking part in an out-of-order pair, in level order."""
    conflicting = set()
    for level in (1, 2, 3):
        if not thresholds[level] > thresholds[level + 1]:
            conflicting.update((level, level + 1))
    return [f"{LEVEL_THRESHOLD_PREFIX}{level}" for level in sorted(conflicting)]


class ParameterStore:
    """
    Usage:
        store = ParameterStore(db)
        store.trust_impact(user_id, RegulationEventType.DEADLINE_MISSED)  # -5
        store.set_parameter(user_id, "trust_impact.deadline_missed", -12)
        db.commit()
    """

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # Reads
    # =========================================================================

    def get_override(self, user_id: str, key: str) -> Optional[RegulationParameterDB]:
        return (
            self.db.query(RegulationParameterDB)
            .filter(RegulationParameterDB.user_id == user_id, RegulationParameterDB.key == key)
            .first()
        )

    def overrides(self, user_id: str) -> Dict[str, RegulationParameterDB]:
        rows = self.db.query(RegulationParameterDB).filter(RegulationParameterDB.user_id == user_id).all()
        return {row.key: row for row in rows}

    def get_effective(self, user_id: str, key: str) -> Any:
        if key not in PARAMETER_DEFAULTS:
            raise InvalidParameter(key, None, "known parameter key")
        row = self.get_override(user_id, key)
        return row.value if row is not None else PARAMETER_DEFAULTS[key]

    def effective_all(self, user_id: str) -> Dict[str, Dict[str, Any]]:
        overrides = self.overrides(user_id)
        result = {}
        for key, default in PARAMETER_DEFAULTS.items():
            row = overrides.get(key)
            result[key] = {
                "value": row.value if row is not None else default,
                "default": default,
                "is_set": row is not None,
                "source": row.source.value if row is not None else None,
            }
        return result

    def trust_impact(self, user_id: str, event_type: RegulationEventType) -> int:
        return int(self.get_effective(user_id, f"{TRUST_IMPACT_PREFIX}{event_type.value}"))

    def thresholds(self, user_id: str) -> Dict[int, int]:
        overrides = self.overrides(user_id)
        result = {}
        for level, default in DEFAULT_LEVEL_THRESHOLDS.items():
            row = overrides.get(f"{LEVEL_THRESHOLD_PREFIX}{level}")
            result[level] = int(row.value) if row is not None else default
        return result

    def signal_enabled(self, user_id: str, signal_key: ActiveSignalKey) -> bool:
        return bool(self.get_effective(user_id, f"{SIGNAL_ENABLED_PREFIX}{signal_key.value}"))

    # =========================================================================
    # Raw writes (preset mechanism)
    # =========================================================================

    def write_override(
        self,
        user_id: str,
        key: str,
        value: Any,
        source: ParameterSource = ParameterSource.MANUAL,
        preset_application_id: Optional[str] = None,
    ) -> RegulationParameterDB:
        row = self.get_override(user_id, key)
        if row is None:
            row = RegulationParameterDB(id=str(uuid4()), user_id=user_id, key=key)
            self.db.add(row)
        row.value = value
        row.source = source
        row.preset_application_id = preset_application_id
        row.updated_at = datetime.utcnow()
        self.db.flush()
        return row

    def clear_override(self, user_id: str, key: str) -> bool:
        row = self.get_override(user_id, key)
        if row is None:
            return False
        self.db.delete(row)
        self.db.flush()
        return True

    # =========================================================================
    # Manual edits
    # =========================================================================

    def set_parameter(self, user_id: str, key: str, value: Any) -> ParameterChange:
        """
        Validate and store a manual override.

        Raises:
            InvalidParameter: unknown key, wrong type/range, or a threshold
                change that would break the ordering
        """
        validate_parameter(key, value)
        if is_threshold_key(key):
            candidate = self.thresholds(user_id)
            candidate[int(key[len(LEVEL_THRESHOLD_PREFIX):])] = value
            validate_thresholds(candidate)

        existing = self.get_override(user_id, key)
        change = ParameterChange(
            parameter=key,
            old=existing.value if existing is not None else PARAMETER_DEFAULTS[key],
            new=value,
            was_set=existing is not None,
        )
        self.write_override(user_id, key, value, source=ParameterSource.MANUAL)
        self._mark_manual_edit(user_id, key)

        logger.info(f"Parameter {key} manually set for user {user_id}")
        return change

    def reset_parameter(self, user_id: str, key: str) -> ParameterChange:
        """Drop the override so the default applies again."""
        if key not in PARAMETER_DEFAULTS:
            raise InvalidParameter(key, None, "known parameter key")
        if is_threshold_key(key):
            candidate = self.thresholds(user_id)
            candidate[int(key[len(LEVEL_THRESHOLD_PREFIX):])] = PARAMETER_DEFAULTS[key]
            validate_thresholds(candidate)

        existing = self.get_override(user_id, key)
        change = ParameterChange(
            parameter=key,
            old=existing.value if existing is not None else PARAMETER_DEFAULTS[key],
            new=PARAMETER_DEFAULTS[key],
            was_set=existing is not None,
        )
        if existing is not None:
            self.clear_override(user_id, key)
            self._mark_manual_edit(user_id, key)
        return change

    def _mark_manual_edit(self, user_id: str, key: str) -> List[PresetApplicationDB]:
        applications = (
            self.db.query(PresetApplicationDB)
            .filter(
                PresetApplicationDB.user_id == user_id,
                PresetApplicationDB.reverted_at.is_(None),
            )
            .all()
        )
        marked = []
        for application in applications:
            if key not in (application.changes_made or {}):
                continue
            edited = list(application.manually_edited_parameters or [])
            if key not in edited:
                edited.append(key)
            application.manually_edited_parameters = edited
            if not application.edited_manually:
                logger.info(f"Preset application {application.id} edited manually ({key})")
            application.edited_manually = True
            marked.append(application)
        self.db.flush()
        return marked
