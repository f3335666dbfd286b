"""
Tests for the Active Signal Surfacer.

1. Rapid context switching scenario with and without consent
2. Expiry, dedup and dismissal
3. Safe Mode and per-user toggles
4. Late events never feed a surfaced signal
5. Detectors (pure)
"""
from datetime import datetime, timedelta

import pytest

from regulation_engine.models.db_models import ActiveSignalDB, ActiveSignalKey, BehaviorEventType, SignalIntensity
from regulation_engine.models.engine_types import EventSnapshot
from regulation_engine.services.behavior import BehaviorEventLog
from regulation_engine.services.consent import SafeModeService
from regulation_engine.services.exceptions import NotFound
from regulation_engine.services.regulation import ParameterStore
from regulation_engine.services.surfacing import (
    DETECTORS,
    ActiveSignalSurfacer,
    SignalDefinitionRegistry,
)

from conftest import OTHER_USER_ID, USER_ID


@pytest.fixture
def ten_rapid_switches(add_events, now):
    """10 context switches within the last 5 minutes."""
    return add_events(
        "context_switch", count=10, start=now - timedelta(minutes=5), step=timedelta(seconds=30)
    )


def _keys(signals):
    return [s.signal_key.value for s in signals]


# =============================================================================
# TEST: RAPID CONTEXT SWITCHING SCENARIO
# =============================================================================

class TestRapidContextSwitching:
    def test_no_consent_no_signal(self, db, definitions, ten_rapid_switches, now):
        surfacer = ActiveSignalSurfacer(db)
        surfacer.evaluate(USER_ID, now=now)
        db.commit()

        assert surfacer.get_active_signals(USER_ID, now=now) == []
        assert db.query(ActiveSignalDB).count() == 0

    def test_consent_surfaces_exactly_one(self, db, definitions, grant, ten_rapid_switches, now):
        grant("session_structures")
        surfacer = ActiveSignalSurfacer(db)

        signals = surfacer.evaluate(USER_ID, now=now)
        db.commit()

        assert _keys(signals) == ["rapid_context_switching"]
        signal = signals[0]
        assert signal.detected_at == now
        assert now < signal.expires_at <= now + timedelta(minutes=60)
        assert signal.intensity == SignalIntensity.HIGH
        assert signal.context_data["switches"] == 10
        assert signal.context_data["min_switches"] == 5
        assert "10 times" in signal.description

    def test_explanation_names_rule_and_parameters(self, db, definitions, grant, ten_rapid_switches, now):
        grant("session_structures")
        signal = ActiveSignalSurfacer(db).evaluate(USER_ID, now=now)[0]

        assert "rapid_context_switching v1.0.0" in signal.explanation_why
        assert "min_switches=5" in signal.explanation_why
        assert "window_minutes=20" in signal.explanation_why
        assert "switches=10" in signal.explanation_why

    def test_below_threshold_nothing(self, db, definitions, grant, add_events, now):
        grant("session_structures")
        add_events("context_switch", count=4, start=now - timedelta(minutes=5))

        assert ActiveSignalSurfacer(db).evaluate(USER_ID, now=now) == []

    def test_switches_outside_window_ignored(self, db, definitions, grant, mock_dispatcher, now):
        grant("session_structures")
        log = BehaviorEventLog(db, dispatcher=mock_dispatcher, lateness_window_minutes=120)
        for i in range(10):
            log.append(USER_ID, "context_switch", occurred_at=now - timedelta(minutes=30 + i), received_at=now)
        db.commit()

        assert ActiveSignalSurfacer(db).evaluate(USER_ID, now=now) == []


# =============================================================================
# TEST: LIFETIME
# =============================================================================

class TestLifetime:
    @pytest.fixture(autouse=True)
    def _setup(self, definitions, grant, ten_rapid_switches):
        grant("session_structures")

    def test_expired_signal_is_never_returned(self, db, now):
        surfacer = ActiveSignalSurfacer(db)
        signal = surfacer.evaluate(USER_ID, now=now)[0]
        db.commit()

        later = signal.expires_at
        assert surfacer.get_active_signals(USER_ID, now=later) == []
        assert surfacer.get_active_signals(USER_ID, now=later - timedelta(seconds=1)) != []

    def test_reevaluation_does_not_duplicate(self, db, now):
        surfacer = ActiveSignalSurfacer(db)
        surfacer.evaluate(USER_ID, now=now)
        surfacer.evaluate(USER_ID, now=now + timedelta(minutes=1))
        db.commit()

        assert db.query(ActiveSignalDB).count() == 1

    def test_horizon_caps_expiry(self, db, now):
        signal = ActiveSignalSurfacer(db, max_horizon_minutes=15).evaluate(USER_ID, now=now)[0]
        assert signal.expires_at == now + timedelta(minutes=15)

    def test_dismiss_is_terminal(self, db, now):
        surfacer = ActiveSignalSurfacer(db)
        signal = surfacer.evaluate(USER_ID, now=now)[0]
        dismissed_at = surfacer.dismiss(USER_ID, signal.id, now=now).dismissed_at
        surfacer.dismiss(USER_ID, signal.id, now=now + timedelta(minutes=5))

        assert signal.dismissed_at == dismissed_at
        assert surfacer.get_active_signals(USER_ID, now=now) == []

    def test_dismiss_other_users_signal(self, db, now):
        signal = ActiveSignalSurfacer(db).evaluate(USER_ID, now=now)[0]
        with pytest.raises(NotFound):
            ActiveSignalSurfacer(db).dismiss(OTHER_USER_ID, signal.id)

    def test_sweep_removes_expired_and_dismissed(self, db, now):
        surfacer = ActiveSignalSurfacer(db)
        signal = surfacer.evaluate(USER_ID, now=now)[0]
        db.commit()

        assert surfacer.sweep_expired(now=now) == 0
        assert surfacer.sweep_expired(now=signal.expires_at) == 1
        assert db.query(ActiveSignalDB).count() == 0

    def test_session_filter(self, db, now):
        surfacer = ActiveSignalSurfacer(db)
        surfacer.evaluate(USER_ID, session_id="tab-1", now=now)

        assert len(surfacer.get_active_signals(USER_ID, session_id="tab-1", now=now)) == 1
        assert surfacer.get_active_signals(USER_ID, session_id="tab-2", now=now) == []
        assert len(surfacer.get_active_signals(USER_ID, now=now)) == 1


# =============================================================================
# TEST: SUPPRESSION
# =============================================================================

class TestSuppression:
    @pytest.fixture(autouse=True)
    def _setup(self, definitions, grant, ten_rapid_switches):
        grant("session_structures")

    def test_safe_mode_surfaces_nothing(self, db, now):
        SafeModeService(db).set_enabled(USER_ID, True)
        outcome = ActiveSignalSurfacer(db).evaluate_user(USER_ID, now=now)

        assert outcome.suppressed_by_safe_mode is True
        assert outcome.surfaced == []
        assert db.query(ActiveSignalDB).count() == 0

    def test_safe_mode_hides_existing_signals(self, db, now):
        surfacer = ActiveSignalSurfacer(db)
        surfacer.evaluate(USER_ID, now=now)
        SafeModeService(db).set_enabled(USER_ID, True)
        assert surfacer.get_active_signals(USER_ID, now=now) == []

        SafeModeService(db).set_enabled(USER_ID, False)
        assert len(surfacer.get_active_signals(USER_ID, now=now)) == 1

    def test_user_toggle_disables_signal(self, db, now):
        ParameterStore(db).set_parameter(USER_ID, "signal_enabled.rapid_context_switching", False)
        assert ActiveSignalSurfacer(db).evaluate(USER_ID, now=now) == []

    def test_inactive_definition_is_skipped(self, db, now):
        SignalDefinitionRegistry(db).set_active("rapid_context_switching", False)
        assert ActiveSignalSurfacer(db).evaluate(USER_ID, now=now) == []


class TestLateEvents:
    def test_late_events_do_not_surface(self, db, definitions, grant, mock_dispatcher, now):
        grant("session_structures")
        log = BehaviorEventLog(db, dispatcher=mock_dispatcher, lateness_window_minutes=30)
        for i in range(10):
            # Happened a few minutes ago but delivered an hour later
            log.append(
                USER_ID,
                "context_switch",
                occurred_at=now - timedelta(minutes=5) + timedelta(seconds=i),
                received_at=now + timedelta(hours=1),
            )
        db.commit()

        assert ActiveSignalSurfacer(db).evaluate(USER_ID, now=now) == []


# =============================================================================
# TEST: DETECTORS (pure)
# =============================================================================

def _snap(event_type, minutes_ago, now, **metadata):
    return EventSnapshot(
        event_id=f"{event_type.value}-{minutes_ago}-{len(metadata)}",
        user_id=USER_ID,
        event_type=event_type,
        occurred_at=now - timedelta(minutes=minutes_ago),
        metadata=metadata,
    )


class TestDetectors:
    NOW = datetime(2026, 3, 2, 12, 0, 0)

    def test_runaway_scope_expansion_tiers(self):
        detect = DETECTORS[ActiveSignalKey.RUNAWAY_SCOPE_EXPANSION]
        events = [_snap(BehaviorEventType.SCOPE_EXPANSION, i, self.NOW) for i in range(10)]

        detection = detect(events, {"min_additions": 5}, self.NOW)
        assert detection.context_data == {"additions": 10}
        assert detection.intensity == SignalIntensity.MEDIUM
        assert detect(events[:4], {"min_additions": 5}, self.NOW) is None

    def test_fragmented_focus_pairs_by_session_id(self):
        detect = DETECTORS[ActiveSignalKey.FRAGMENTED_FOCUS_SESSION]
        events = [
            _snap(BehaviorEventType.FOCUS_SESSION_STARTED, 25, self.NOW, focus_session_id="a"),
            _snap(BehaviorEventType.FOCUS_SESSION_STARTED, 20, self.NOW, focus_session_id="b"),
            _snap(BehaviorEventType.FOCUS_SESSION_ENDED, 18, self.NOW, focus_session_id="b"),
            _snap(BehaviorEventType.FOCUS_SESSION_ENDED, 5, self.NOW, focus_session_id="a"),
        ]
        detection = detect(events, {"min_duration_minutes": 5}, self.NOW)

        assert detection.context_data == {"fragmented_sessions": 1, "sessions_ended": 2}
        assert detection.intensity == SignalIntensity.LOW

    def test_fragmented_focus_without_ids_uses_latest_start(self):
        detect = DETECTORS[ActiveSignalKey.FRAGMENTED_FOCUS_SESSION]
        events = [
            _snap(BehaviorEventType.FOCUS_SESSION_STARTED, 20, self.NOW),
            _snap(BehaviorEventType.FOCUS_SESSION_ENDED, 2, self.NOW),
        ]
        assert detect(events, {"min_duration_minutes": 5}, self.NOW) is None

    def test_prolonged_inactivity_gap(self):
        detect = DETECTORS[ActiveSignalKey.PROLONGED_INACTIVITY_GAP]
        reentry = [_snap(BehaviorEventType.APP_OPENED, 10, self.NOW)]
        previous = EventSnapshot(
            event_id="old",
            user_id=USER_ID,
            event_type=BehaviorEventType.APP_OPENED,
            occurred_at=self.NOW - timedelta(days=8),
        )

        detection = detect(reentry, {"min_gap_days": 3}, self.NOW, previous)
        assert detection.context_data == {"gap_days": 7}
        assert detection.intensity == SignalIntensity.MEDIUM
        assert detect(reentry, {"min_gap_days": 3}, self.NOW, None) is None

    def test_high_task_intake_without_completion(self):
        detect = DETECTORS[ActiveSignalKey.HIGH_TASK_INTAKE_WITHOUT_COMPLETION]
        params = {"min_tasks_created": 5, "max_tasks_completed": 1}
        created = [_snap(BehaviorEventType.TASK_CREATED, i, self.NOW) for i in range(12)]
        completed = [_snap(BehaviorEventType.TASK_COMPLETED, 100 + i, self.NOW) for i in range(2)]

        detection = detect(created, params, self.NOW)
        assert detection.context_data == {"tasks_created": 12, "tasks_completed": 0}
        assert detection.intensity == SignalIntensity.HIGH
        assert detect(created + completed, params, self.NOW) is None


class TestInactivityGapEndToEnd:
    def test_return_after_days_surfaces_gap(self, db, definitions, grant, mock_dispatcher, now):
        grant("time_patterns")
        log = BehaviorEventLog(db, dispatcher=mock_dispatcher, lateness_window_minutes=60 * 24 * 30)
        log.append(USER_ID, "app_opened", occurred_at=now - timedelta(days=4), received_at=now)
        log.append(USER_ID, "app_opened", occurred_at=now - timedelta(minutes=3), received_at=now)
        db.commit()

        signals = ActiveSignalSurfacer(db).evaluate(USER_ID, now=now)
        assert _keys(signals) == ["prolonged_inactivity_gap"]
        assert signals[0].context_data["gap_days"] == 3
        assert signals[0].expires_at <= now + timedelta(minutes=240)
