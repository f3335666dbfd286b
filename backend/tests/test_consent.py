"""
Tests for the Consent Registry and Safe Mode.

1. Default deny for untouched categories
2. Grant / revoke transitions and their audit entries
3. Revocation invalidates candidate signals of the category only
4. Unknown categories are rejected
5. Safe Mode toggling
"""
from datetime import timedelta

import pytest

from regulation_engine.models.db_models import AuditAction, ConsentCategory, SignalAuditLogDB, SignalStatus
from regulation_engine.models.engine_types import TimeRange
from regulation_engine.services.consent import ConsentRegistry, SafeModeService, candidate_keys_for
from regulation_engine.services.exceptions import UnknownConsentCategory
from regulation_engine.services.signals import SignalComputationEngine

from conftest import OTHER_USER_ID, USER_ID


# =============================================================================
# TEST: CONSENT FLAGS
# =============================================================================

class TestConsentFlags:
    """HasConsent / SetConsent / ListConsents."""

    def test_untouched_category_is_denied(self, db):
        """A category the user never touched has no consent."""
        assert ConsentRegistry(db).has_consent(USER_ID, "session_structures") is False

    def test_grant_then_revoke(self, db):
        registry = ConsentRegistry(db)
        registry.set_consent(USER_ID, "time_patterns", True)
        assert registry.has_consent(USER_ID, "time_patterns") is True

        flag = registry.set_consent(USER_ID, "time_patterns", False)
        assert registry.has_consent(USER_ID, "time_patterns") is False
        assert flag.revoked_at is not None
        assert flag.granted_at is None

    def test_consent_is_per_user(self, db):
        registry = ConsentRegistry(db)
        registry.set_consent(USER_ID, "time_patterns", True)
        assert registry.has_consent(OTHER_USER_ID, "time_patterns") is False

    def test_unknown_category_rejected(self, db):
        with pytest.raises(UnknownConsentCategory):
            ConsentRegistry(db).set_consent(USER_ID, "location_history", True)
        with pytest.raises(UnknownConsentCategory):
            ConsentRegistry(db).has_consent(USER_ID, "location_history")

    def test_each_transition_writes_one_audit_entry(self, db):
        registry = ConsentRegistry(db)
        registry.set_consent(USER_ID, "session_structures", True)
        registry.set_consent(USER_ID, "session_structures", True)  # no-op
        registry.set_consent(USER_ID, "session_structures", False)

        actions = [
            row.action
            for row in db.query(SignalAuditLogDB).filter(SignalAuditLogDB.user_id == USER_ID).all()
        ]
        assert sorted(a.value for a in actions) == ["consent_granted", "consent_revoked"]

    def test_first_revoke_is_recorded(self, db):
        """An explicit 'no' on a never-touched category is still stored."""
        registry = ConsentRegistry(db)
        registry.set_consent(USER_ID, "activity_durations", False)

        listed = {c["category"]: c for c in registry.list_consents(USER_ID)}
        assert listed["activity_durations"]["touched"] is True
        assert listed["activity_durations"]["enabled"] is False

    def test_list_reports_every_category(self, db):
        registry = ConsentRegistry(db)
        registry.set_consent(USER_ID, "session_structures", True)

        listed = {c["category"]: c for c in registry.list_consents(USER_ID)}
        assert set(listed) == {"session_structures", "time_patterns", "activity_durations", "data_quality_basic"}
        assert listed["session_structures"]["enabled"] is True
        assert listed["time_patterns"] == {
            "category": "time_patterns",
            "enabled": False,
            "granted_at": None,
            "revoked_at": None,
            "touched": False,
        }


# =============================================================================
# TEST: REVOCATION INVALIDATES SIGNALS
# =============================================================================

class TestRevocation:
    """Revoking a category invalidates the candidate signals it backs."""

    def test_revoke_invalidates_only_that_category(self, db, grant, add_events, now):
        grant("session_structures", "time_patterns")
        events = add_events("app_opened", count=4, start=now - timedelta(minutes=30), step=timedelta(minutes=5))
        window = TimeRange(now - timedelta(hours=1), now)
        ids = [e.id for e in events]

        engine = SignalComputationEngine(db)
        sessions = engine.compute_signals(USER_ID, "session_boundaries", window, ids)
        bins = engine.compute_signals(USER_ID, "time_bins_activity_count", window, ids)
        db.commit()

        ConsentRegistry(db).set_consent(USER_ID, "session_structures", False)
        db.commit()

        assert sessions.status == SignalStatus.INVALIDATED
        assert sessions.invalidated_reason == "Consent revoked for category: session_structures"
        assert bins.status == SignalStatus.CANDIDATE

        invalidations = (
            db.query(SignalAuditLogDB)
            .filter(SignalAuditLogDB.action == AuditAction.INVALIDATED)
            .all()
        )
        assert [a.signal_id for a in invalidations] == [sessions.signal_id]

    def test_revoke_audit_counts_invalidated_signals(self, db, grant, add_events, now):
        grant("session_structures")
        events = add_events("app_opened", count=3, start=now - timedelta(minutes=20))
        SignalComputationEngine(db).compute_signals(
            USER_ID, "session_boundaries", TimeRange(now - timedelta(hours=1), now), [e.id for e in events]
        )
        db.commit()

        ConsentRegistry(db).set_consent(USER_ID, "session_structures", False)
        entry = (
            db.query(SignalAuditLogDB)
            .filter(SignalAuditLogDB.action == AuditAction.CONSENT_REVOKED)
            .one()
        )
        assert entry.audit_metadata == {"category": "session_structures", "invalidated_signals": 1}

    def test_category_to_key_mapping(self):
        keys = [k.value for k in candidate_keys_for(ConsentCategory.TIME_PATTERNS)]
        assert keys == ["time_bins_activity_count"]


# =============================================================================
# TEST: SAFE MODE
# =============================================================================

class TestSafeMode:
    def test_disabled_by_default(self, db):
        assert SafeModeService(db).is_enabled(USER_ID) is False
        assert SafeModeService(db).get_state(USER_ID) is None

    def test_enable_counts_activations(self, db):
        service = SafeModeService(db)
        service.set_enabled(USER_ID, True, reason="overwhelmed")
        service.set_enabled(USER_ID, True)  # already on
        service.set_enabled(USER_ID, False)
        state = service.set_enabled(USER_ID, True)

        assert state.is_enabled is True
        assert state.activation_count == 2
        assert state.disabled_at is not None

    def test_enable_records_reason(self, db):
        state = SafeModeService(db).set_enabled(USER_ID, True, reason="need a break")
        assert state.activation_reason == "need a break"
        assert state.enabled_at is not None
