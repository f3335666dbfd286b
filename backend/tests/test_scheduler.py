"""
Tests for the periodic surfacer pass.

Runs against file-backed SQLite: every worker opens its own session.
"""
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from regulation_engine.models.db_models import ActiveSignalDB
from regulation_engine.services.behavior import BehaviorEventLog
from regulation_engine.services.consent import ConsentRegistry
from regulation_engine.services.surfacing import EvaluationOutcome, SignalDefinitionRegistry, SurfacerScheduler

from conftest import OTHER_USER_ID, USER_ID


@pytest.fixture
def seeded(file_session_factory):
    """Definitions, consent and 10 fresh context switches for USER_ID; one quiet event for OTHER_USER_ID."""
    now = datetime.utcnow().replace(microsecond=0)
    db = file_session_factory()
    try:
        SignalDefinitionRegistry(db).seed_defaults()
        ConsentRegistry(db).set_consent(USER_ID, "session_structures", True)
        log = BehaviorEventLog(db, dispatcher=MagicMock())
        for i in range(10):
            log.append(USER_ID, "context_switch", occurred_at=now - timedelta(minutes=5) + timedelta(seconds=20 * i))
        log.append(OTHER_USER_ID, "app_opened", occurred_at=now - timedelta(minutes=1))
        db.commit()
    finally:
        db.close()
    return now


class StubSurfacer:
    """Stands in for ActiveSignalSurfacer; behavior keyed on user id."""

    def __init__(self, db):
        self.db = db

    def evaluate_user(self, user_id, now=None, cancel_event=None):
        if user_id == "slow-user":
            cancel_event.wait(5)
        if user_id == "broken-user":
            raise RuntimeError("detector exploded")
        return EvaluationOutcome()


class TestSurfacerPass:
    def test_pass_over_active_users(self, file_session_factory, seeded):
        summary = SurfacerScheduler(session_factory=file_session_factory).run_pass(now=seeded)

        assert summary["task"] == "surfacer_pass"
        assert summary["users"] == 2
        assert summary["evaluated"] == 2
        assert summary["surfaced"] == 1
        assert summary["failed"] == 0
        assert summary["timed_out"] == 0

        db = file_session_factory()
        try:
            rows = db.query(ActiveSignalDB).all()
            assert [(r.user_id, r.signal_key.value) for r in rows] == [(USER_ID, "rapid_context_switching")]
        finally:
            db.close()

    def test_second_pass_does_not_duplicate(self, file_session_factory, seeded):
        scheduler = SurfacerScheduler(session_factory=file_session_factory)
        scheduler.run_pass(now=seeded)
        summary = scheduler.run_pass(now=seeded + timedelta(minutes=1))

        assert summary["surfaced"] == 0
        db = file_session_factory()
        try:
            assert db.query(ActiveSignalDB).count() == 1
        finally:
            db.close()

    def test_explicit_user_list(self, file_session_factory, seeded):
        summary = SurfacerScheduler(session_factory=file_session_factory).run_pass(
            user_ids=[OTHER_USER_ID, OTHER_USER_ID], now=seeded
        )
        assert summary["users"] == 1
        assert summary["surfaced"] == 0

    def test_no_active_users(self, file_session_factory):
        summary = SurfacerScheduler(session_factory=file_session_factory).run_pass()
        assert summary["users"] == 0
        assert summary["evaluated"] == 0


class TestIsolation:
    def test_slow_user_times_out_others_finish(self, file_session_factory):
        scheduler = SurfacerScheduler(
            session_factory=file_session_factory,
            max_workers=3,
            user_timeout_seconds=0.5,
            surfacer_factory=StubSurfacer,
        )
        summary = scheduler.run_pass(user_ids=["slow-user", USER_ID, OTHER_USER_ID])

        assert summary["timed_out"] == 1
        assert summary["evaluated"] == 2

    def test_failures_are_collected(self, file_session_factory):
        scheduler = SurfacerScheduler(session_factory=file_session_factory, surfacer_factory=StubSurfacer)
        summary = scheduler.run_pass(user_ids=["broken-user", USER_ID])

        assert summary["failed"] == 1
        assert summary["evaluated"] == 1
        assert summary["errors"] == [{"user_id": "broken-user", "error": "detector exploded"}]

    def test_pass_timeout_cancels_remaining(self, file_session_factory):
        scheduler = SurfacerScheduler(
            session_factory=file_session_factory,
            max_workers=1,
            user_timeout_seconds=5,
            pass_timeout_seconds=0.3,
            surfacer_factory=StubSurfacer,
        )
        # sorted order: slow-user first, holding the single worker
        summary = scheduler.run_pass(user_ids=["slow-user", USER_ID])

        assert summary["timed_out"] == 2
        assert summary["evaluated"] == 0
