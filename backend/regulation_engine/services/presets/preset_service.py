"""
Preset Composition Layer

Applies a preset as a delta over the user's current parameters.

Flow:
1. preview_preset() computes the delta (only keys whose value would change)
   and a preview_token hashing it.
2. apply_preset() re-computes the delta, refuses if the token no longer
   matches, snapshots every old value into changes_made and writes the new
   values. Snapshot and writes commit together or not at all.
3. revert_preset() restores every snapshotted value exactly, including
   "no override" for keys that had none. Refused once any touched key was
   edited by hand, or when the restored thresholds would be out of order
   next to a threshold the preset never touched.

Only one live application per user: live = not reverted and not edited.
"""
import hashlib
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import ParameterSource, PresetApplicationDB, PresetId
from ...models.engine_types import ParameterChange, PresetPreview
from ..concurrency import user_locks
from ..exceptions import NotFound, PresetConflict
from ..regulation import (
    PARAMETER_DEFAULTS,
    ParameterStore,
    TrustStateMachine,
    is_threshold_key,
    threshold_conflicts,
    validate_parameter,
    validate_thresholds,
)
from .catalog import get_preset, parse_preset_id


logger = logging.getLogger(__name__)


def _preview_token(preset_id: PresetId, changes: List[ParameterChange]) -> str:
    payload = json.dumps(
        {
            "preset_id": preset_id.value,
            "changes": [[c.parameter, c.old, c.new, c.was_set] for c in changes],
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class PresetService:
    """
    Usage:
        service = PresetService(db)
        preview = service.preview_preset(user_id, "gentle_start")
        application = service.apply_preset(user_id, "gentle_start", preview.preview_token)
    """

    def __init__(self, db: Session):
        self.db = db
        self.parameters = ParameterStore(db)

    # =========================================================================
    # Preview
    # =========================================================================

    def preview_preset(self, user_id: str, preset_id: Union[str, PresetId]) -> PresetPreview:
        preset_id = parse_preset_id(preset_id)
        targets = get_preset(preset_id)["parameters"]
        overrides = self.parameters.overrides(user_id)

        changes = []
        for key in sorted(targets):
            target = validate_parameter(key, targets[key])
            row = overrides.get(key)
            current = row.value if row is not None else PARAMETER_DEFAULTS[key]
            if current == target and type(current) is type(target):
                continue
            changes.append(ParameterChange(parameter=key, old=current, new=target, was_set=row is not None))

        return PresetPreview(
            preset_id=preset_id.value,
            changes=changes,
            preview_token=_preview_token(preset_id, changes),
        )

    # =========================================================================
    # Apply / Revert
    # =========================================================================

    def apply_preset(
        self,
        user_id: str,
        preset_id: Union[str, PresetId],
        preview_token: str,
        notes: Optional[str] = None,
    ) -> PresetApplicationDB:
        """
        Raises:
            UnknownPresetId: preset outside the catalog
            PresetConflict: stale preview or another live application
            InvalidParameter: resulting thresholds would be out of order
        """
        preset_id = parse_preset_id(preset_id)

        with user_locks.hold(user_id):
            live = self.get_active_preset(user_id)
            if live is not None:
                raise PresetConflict(
                    f"Preset {live.preset_id.value} is still active; revert it first",
                    parameters=sorted(live.changes_made or {}),
                    application_id=live.id,
                )

            preview = self.preview_preset(user_id, preset_id)
            if preview.preview_token != preview_token:
                raise PresetConflict(
                    "Parameters changed since the preview; preview again before applying",
                    parameters=[c.parameter for c in preview.changes],
                )

            thresholds = self.parameters.thresholds(user_id)
            for change in preview.changes:
                if is_threshold_key(change.parameter):
                    thresholds[int(change.parameter.rsplit(".", 1)[1])] = change.new
            validate_thresholds(thresholds)

            now = datetime.utcnow()
            overrides = self.parameters.overrides(user_id)
            changes_made: Dict[str, Dict[str, Any]] = {}
            for change in preview.changes:
                entry = change.to_dict()
                previous = overrides.get(change.parameter)
                if previous is not None:
                    entry["old_source"] = previous.source.value
                    entry["old_preset_application_id"] = previous.preset_application_id
                changes_made[change.parameter] = entry

            application = PresetApplicationDB(
                id=str(uuid4()),
                user_id=user_id,
                preset_id=preset_id,
                applied_at=now,
                changes_made=changes_made,
                edited_manually=False,
                manually_edited_parameters=[],
                notes=notes,
                created_at=now,
            )
            try:
                self.db.add(application)
                self.db.flush()
                for change in preview.changes:
                    self.parameters.write_override(
                        user_id,
                        change.parameter,
                        change.new,
                        source=ParameterSource.PRESET,
                        preset_application_id=application.id,
                    )
                if any(is_threshold_key(c.parameter) for c in preview.changes):
                    TrustStateMachine(self.db).rederive_levels(user_id, now=now)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        logger.info(f"Applied preset {preset_id.value} for user {user_id} ({len(preview.changes)} changes)")
        return application

    def revert_preset(self, user_id: str, application_id: str) -> PresetApplicationDB:
        """
        Raises:
            NotFound: no such application for the user
            PresetConflict: already reverted, touched keys were edited by hand,
                or the restored thresholds would be out of order
        """
        with user_locks.hold(user_id):
            application = self.get_application(user_id, application_id)
            if application.reverted_at is not None:
                raise PresetConflict(
                    "Preset application was already reverted",
                    application_id=application.id,
                )
            if application.edited_manually:
                edited = list(application.manually_edited_parameters or [])
                raise PresetConflict(
                    f"Parameters changed by hand since the preset was applied: {', '.join(edited)}",
                    parameters=edited,
                    application_id=application.id,
                )

            changes = application.changes_made or {}
            thresholds = self.parameters.thresholds(user_id)
            for key, entry in changes.items():
                if is_threshold_key(key):
                    restored = entry["old"] if entry["was_set"] else PARAMETER_DEFAULTS[key]
                    thresholds[int(key.rsplit(".", 1)[1])] = restored
            conflicting = threshold_conflicts(thresholds)
            if conflicting:
                raise PresetConflict(
                    "Reverting would leave level thresholds out of order: "
                    f"{', '.join(conflicting)}",
                    parameters=conflicting,
                    application_id=application.id,
                )

            now = datetime.utcnow()
            try:
                for key in sorted(changes):
                    entry = changes[key]
                    if entry["was_set"]:
                        self.parameters.write_override(
                            user_id,
                            key,
                            entry["old"],
                            source=ParameterSource(entry.get("old_source", ParameterSource.MANUAL.value)),
                            preset_application_id=entry.get("old_preset_application_id"),
                        )
                    else:
                        self.parameters.clear_override(user_id, key)
                application.reverted_at = now
                self.db.flush()
                if any(is_threshold_key(key) for key in changes):
                    TrustStateMachine(self.db).rederive_levels(user_id, now=now)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        logger.info(f"Reverted preset application {application.id} for user {user_id}")
        return application

    # =========================================================================
    # Reads
    # =========================================================================

    def get_application(self, user_id: str, application_id: str) -> PresetApplicationDB:
        application = (
            self.db.query(PresetApplicationDB)
            .filter(PresetApplicationDB.id == application_id, PresetApplicationDB.user_id == user_id)
            .first()
        )
        if application is None:
            raise NotFound("Preset application", application_id)
        return application

    def list_applications(self, user_id: str) -> List[PresetApplicationDB]:
        return (
            self.db.query(PresetApplicationDB)
            .filter(PresetApplicationDB.user_id == user_id)
            .order_by(PresetApplicationDB.applied_at.desc())
            .all()
        )

    def get_active_preset(self, user_id: str) -> Optional[PresetApplicationDB]:
        return (
            self.db.query(PresetApplicationDB)
            .filter(
                PresetApplicationDB.user_id == user_id,
                PresetApplicationDB.reverted_at.is_(None),
                PresetApplicationDB.edited_manually.is_(False),
            )
            .order_by(PresetApplicationDB.applied_at.desc())
            .first()
        )
