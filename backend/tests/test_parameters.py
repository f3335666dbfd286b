"""
Tests for the tunable parameter store.
"""
import pytest

from regulation_engine.models.db_models import ActiveSignalKey, ParameterSource, RegulationEventType
from regulation_engine.services.exceptions import InvalidParameter
from regulation_engine.services.presets import PresetService
from regulation_engine.services.regulation import PARAMETER_DEFAULTS, ParameterStore, validate_parameter

from conftest import OTHER_USER_ID, USER_ID


class TestValidation:
    @pytest.mark.parametrize("key,value", [
        ("trust_impact.nonexistent", 1),
        ("trust_impact.level_escalated", 1),
        ("trust_impact.deadline_missed", "-5"),
        ("trust_impact.deadline_missed", True),
        ("trust_impact.deadline_missed", -101),
        ("level_threshold.1", 0),
        ("level_threshold.5", 10),
        ("signal_enabled.rapid_context_switching", 1),
    ])
    def test_rejected(self, key, value):
        with pytest.raises(InvalidParameter):
            validate_parameter(key, value)

    @pytest.mark.parametrize("key,value", [
        ("trust_impact.deadline_missed", -100),
        ("trust_impact.milestone_hit", 100),
        ("level_threshold.4", 1),
        ("signal_enabled.prolonged_inactivity_gap", False),
    ])
    def test_accepted(self, key, value):
        assert validate_parameter(key, value) == value

    def test_thresholds_must_stay_ordered(self, db):
        store = ParameterStore(db)
        with pytest.raises(InvalidParameter):
            store.set_parameter(USER_ID, "level_threshold.2", 85)
        with pytest.raises(InvalidParameter):
            store.set_parameter(USER_ID, "level_threshold.3", 60)
        assert store.thresholds(USER_ID) == {1: 80, 2: 60, 3: 40, 4: 20}

    def test_reset_cannot_break_ordering(self, db):
        store = ParameterStore(db)
        store.set_parameter(USER_ID, "level_threshold.4", 5)
        store.set_parameter(USER_ID, "level_threshold.3", 10)
        store.set_parameter(USER_ID, "level_threshold.2", 15)

        # Default level 3 bound (40) would sit above level 2's 15
        with pytest.raises(InvalidParameter):
            store.reset_parameter(USER_ID, "level_threshold.3")


class TestEffectiveValues:
    def test_defaults(self, db):
        store = ParameterStore(db)
        assert store.trust_impact(USER_ID, RegulationEventType.DEADLINE_MISSED) == -5
        assert store.signal_enabled(USER_ID, ActiveSignalKey.RAPID_CONTEXT_SWITCHING) is True

        effective = store.effective_all(USER_ID)
        assert set(effective) == set(PARAMETER_DEFAULTS)
        assert effective["trust_impact.deadline_missed"] == {
            "value": -5, "default": -5, "is_set": False, "source": None,
        }

    def test_override_is_per_user(self, db):
        store = ParameterStore(db)
        store.set_parameter(USER_ID, "trust_impact.deadline_missed", -12)

        assert store.trust_impact(USER_ID, RegulationEventType.DEADLINE_MISSED) == -12
        assert store.trust_impact(OTHER_USER_ID, RegulationEventType.DEADLINE_MISSED) == -5

    def test_override_equal_to_default_is_still_set(self, db):
        store = ParameterStore(db)
        change = store.set_parameter(USER_ID, "trust_impact.deadline_missed", -5)

        assert change.was_set is False
        entry = store.effective_all(USER_ID)["trust_impact.deadline_missed"]
        assert entry["is_set"] is True
        assert entry["source"] == ParameterSource.MANUAL.value

    def test_set_and_reset_report_changes(self, db):
        store = ParameterStore(db)
        first = store.set_parameter(USER_ID, "trust_impact.task_ignored", -6)
        second = store.set_parameter(USER_ID, "trust_impact.task_ignored", -7)
        reset = store.reset_parameter(USER_ID, "trust_impact.task_ignored")

        assert first.to_dict() == {"old": -2, "new": -6, "was_set": False}
        assert second.to_dict() == {"old": -6, "new": -7, "was_set": True}
        assert reset.to_dict() == {"old": -7, "new": -2, "was_set": True}
        assert store.get_override(USER_ID, "trust_impact.task_ignored") is None

    def test_unknown_key_read(self, db):
        with pytest.raises(InvalidParameter):
            ParameterStore(db).get_effective(USER_ID, "trust_impact.nope")


class TestManualEditTracking:
    def _apply(self, db, preset_id):
        service = PresetService(db)
        preview = service.preview_preset(USER_ID, preset_id)
        return service.apply_preset(USER_ID, preset_id, preview.preview_token)

    def test_editing_touched_key_marks_application(self, db):
        application = self._apply(db, "gentle_start")
        ParameterStore(db).set_parameter(USER_ID, "trust_impact.deadline_missed", -4)
        db.commit()

        db.refresh(application)
        assert application.edited_manually is True
        assert application.manually_edited_parameters == ["trust_impact.deadline_missed"]

    def test_resetting_touched_key_marks_application(self, db):
        application = self._apply(db, "gentle_start")
        ParameterStore(db).reset_parameter(USER_ID, "trust_impact.task_ignored")
        db.commit()

        db.refresh(application)
        assert application.manually_edited_parameters == ["trust_impact.task_ignored"]

    def test_untouched_key_leaves_application_alone(self, db):
        application = self._apply(db, "gentle_start")
        ParameterStore(db).set_parameter(USER_ID, "trust_impact.milestone_hit", 12)
        db.commit()

        db.refresh(application)
        assert application.edited_manually is False
        assert application.manually_edited_parameters == []
