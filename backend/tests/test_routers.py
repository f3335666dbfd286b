"""
HTTP surface tests.

Routes run against the in-memory database through dependency overrides;
the invalidation dispatcher is a mock.
"""
from datetime import timedelta

import pytest

from regulation_engine import config
from regulation_engine.auth import create_access_token

from conftest import USER_ID


def _iso(moment):
    return moment.isoformat()


@pytest.fixture
def internal_headers():
    return {"X-Internal-Key": config.INTERNAL_API_KEY}


class TestAuth:
    def test_missing_token(self, client):
        assert client.get("/consent").status_code in (401, 403)

    def test_bad_token(self, client):
        response = client.get("/consent", headers={"Authorization": "Bearer not-a-token"})
        assert response.status_code == 401

    def test_expired_token(self, client):
        token = create_access_token(USER_ID, expires_in=timedelta(seconds=-10))
        response = client.get("/consent", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_health_is_open(self, client):
        assert client.get("/health").json()["status"] == "healthy"


# =============================================================================
# CONSENT / SAFE MODE
# =============================================================================

class TestConsentRoutes:
    def test_grant_and_list(self, client, auth_headers):
        response = client.put("/consent/session_structures", json={"enabled": True}, headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["enabled"] is True

        consents = {c["category"]: c["enabled"] for c in client.get("/consent", headers=auth_headers).json()["consents"]}
        assert consents == {
            "session_structures": True,
            "time_patterns": False,
            "activity_durations": False,
            "data_quality_basic": False,
        }

    def test_unknown_category(self, client, auth_headers):
        response = client.put("/consent/browsing_history", json={"enabled": True}, headers=auth_headers)
        assert response.status_code == 400

    def test_safe_mode_toggle(self, client, auth_headers):
        assert client.get("/consent/safe-mode", headers=auth_headers).json()["enabled"] is False

        response = client.put("/consent/safe-mode", json={"enabled": True, "reason": "overwhelmed"}, headers=auth_headers)
        assert response.json()["enabled"] is True
        assert response.json()["activation_count"] == 1
        assert client.get("/consent/safe-mode", headers=auth_headers).json()["activation_reason"] == "overwhelmed"


# =============================================================================
# BEHAVIOR EVENTS
# =============================================================================

class TestBehaviorEventRoutes:
    def _append(self, client, auth_headers, now, **extra):
        body = {"event_type": "context_switch", "occurred_at": _iso(now - timedelta(minutes=1)), **extra}
        return client.post("/behavior-events", json=body, headers=auth_headers)

    def test_append_and_list(self, client, auth_headers, now):
        created = self._append(client, auth_headers, now, metadata={"from": "a", "to": "b"})
        assert created.status_code == 200
        assert created.json()["revision"] == 1
        assert created.json()["is_late"] is False

        listed = client.get("/behavior-events", headers=auth_headers).json()
        assert listed["count"] == 1
        assert listed["events"][0]["metadata"] == {"from": "a", "to": "b"}

    def test_unknown_event_type(self, client, auth_headers, now):
        response = self._append(client, auth_headers, now, event_type="doomscrolling")
        assert response.status_code == 400

    def test_edit_dispatches_invalidation(self, client, auth_headers, now, mock_dispatcher):
        event_id = self._append(client, auth_headers, now).json()["event_id"]

        response = client.patch(f"/behavior-events/{event_id}", json={"severity": 3}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["revision"] == 2
        assert response.json()["severity"] == 3
        mock_dispatcher.dispatch.assert_called_once()
        assert mock_dispatcher.dispatch.call_args.args[:2] == (USER_ID, [event_id])

    def test_edit_rejects_bad_severity_without_dispatch(self, client, auth_headers, now, mock_dispatcher):
        event_id = self._append(client, auth_headers, now).json()["event_id"]

        response = client.patch(f"/behavior-events/{event_id}", json={"severity": 9}, headers=auth_headers)

        assert response.status_code == 400
        mock_dispatcher.dispatch.assert_not_called()

    def test_remove(self, client, auth_headers, now, mock_dispatcher):
        event_id = self._append(client, auth_headers, now).json()["event_id"]

        response = client.delete(f"/behavior-events/{event_id}", headers=auth_headers)

        assert response.json()["success"] is True
        mock_dispatcher.dispatch.assert_called_once()
        assert client.get("/behavior-events", headers=auth_headers).json()["count"] == 0

    def test_edit_missing_event(self, client, auth_headers):
        response = client.patch("/behavior-events/nope", json={"severity": 2}, headers=auth_headers)
        assert response.status_code == 404


# =============================================================================
# CANDIDATE SIGNALS
# =============================================================================

class TestSignalRoutes:
    @pytest.fixture
    def events(self, add_events, now):
        return add_events("context_switch", count=3, start=now - timedelta(minutes=10))

    def _compute(self, client, auth_headers, now, events):
        body = {
            "start": _iso(now - timedelta(hours=1)),
            "end": _iso(now),
            "event_ids": [e.id for e in events],
        }
        return client.post("/signals/compute/session_boundaries", json=body, headers=auth_headers)

    def test_compute_without_consent_is_forbidden(self, client, auth_headers, now, events):
        assert self._compute(client, auth_headers, now, events).status_code == 403

    def test_compute_with_consent(self, client, auth_headers, now, events, grant):
        grant("session_structures")
        response = self._compute(client, auth_headers, now, events)

        assert response.status_code == 200
        assert response.json()["status"] == "candidate"
        again = self._compute(client, auth_headers, now, events)
        assert again.json()["signal_id"] == response.json()["signal_id"]

    def test_inverted_time_range(self, client, auth_headers, now, events, grant):
        grant("session_structures")
        body = {"start": _iso(now), "end": _iso(now - timedelta(hours=1)), "event_ids": [events[0].id]}
        response = client.post("/signals/compute/session_boundaries", json=body, headers=auth_headers)
        assert response.status_code == 400

    def test_batch_skips_keys_without_consent(self, client, auth_headers, now, events, grant):
        grant("session_structures")
        body = {"start": _iso(now - timedelta(hours=1)), "end": _iso(now)}
        result = client.post("/signals/compute", json=body, headers=auth_headers).json()

        assert result["computed"] == 1
        assert result["skipped"] == 3
        assert result["errors"] == []

    def test_listing_only_in_testing_mode(self, client, auth_headers, now, events, grant, monkeypatch):
        grant("session_structures")
        signal_id = self._compute(client, auth_headers, now, events).json()["signal_id"]

        assert client.get("/signals", headers=auth_headers).status_code == 404
        assert client.get(f"/signals/{signal_id}", headers=auth_headers).status_code == 404

        monkeypatch.setattr(config, "SIGNAL_TESTING_MODE", True)
        listed = client.get("/signals", headers=auth_headers).json()
        assert [s["signal_id"] for s in listed["signals"]] == [signal_id]
        assert client.get(f"/signals/{signal_id}", headers=auth_headers).json()["provenance_event_ids"] == sorted(
            e.id for e in events
        )

    def test_delete_and_audit(self, client, auth_headers, now, events, grant):
        grant("session_structures")
        signal_id = self._compute(client, auth_headers, now, events).json()["signal_id"]

        response = client.request(
            "DELETE", f"/signals/{signal_id}", json={"reason": "not useful"}, headers=auth_headers
        )
        assert response.json()["status"] == "deleted"

        actions = [e["action"] for e in client.get(
            "/signals/audit", params={"signal_id": signal_id}, headers=auth_headers
        ).json()["entries"]]
        assert "deleted" in actions
        assert "computed" in actions

    def test_rules_listing(self, client):
        rules = client.get("/signals/rules").json()["rules"]
        assert {r["signal_key"] for r in rules} == {
            "session_boundaries", "time_bins_activity_count", "activity_intervals", "capture_coverage",
        }


# =============================================================================
# ACTIVE SIGNALS
# =============================================================================

class TestActiveSignalRoutes:
    @pytest.fixture(autouse=True)
    def _setup(self, definitions, grant, add_events, now):
        grant("session_structures")
        add_events("context_switch", count=10, start=now - timedelta(minutes=5), step=timedelta(seconds=20))

    def test_evaluate_then_dismiss(self, client, auth_headers):
        evaluated = client.post("/active-signals/evaluate", json={"session_id": "tab-1"}, headers=auth_headers).json()
        assert evaluated["count"] == 1
        signal = evaluated["signals"][0]
        assert signal["signal_key"] == "rapid_context_switching"
        assert signal["explanation_why"]

        dismissed = client.post(f"/active-signals/{signal['id']}/dismiss", headers=auth_headers)
        assert dismissed.json()["success"] is True
        assert client.get("/active-signals", headers=auth_headers).json()["count"] == 0

    def test_safe_mode_hides_signals(self, client, auth_headers):
        client.post("/active-signals/evaluate", json={}, headers=auth_headers)
        client.put("/consent/safe-mode", json={"enabled": True}, headers=auth_headers)

        assert client.get("/active-signals", headers=auth_headers).json()["count"] == 0

    def test_dismiss_unknown(self, client, auth_headers):
        assert client.post("/active-signals/nope/dismiss", headers=auth_headers).status_code == 404

    def test_definitions(self, client, auth_headers):
        definitions = client.get("/active-signals/definitions", headers=auth_headers).json()["definitions"]
        assert len(definitions) == 5


# =============================================================================
# REGULATION / PARAMETERS
# =============================================================================

class TestRegulationRoutes:
    def test_record_and_read(self, client, auth_headers):
        state = client.post("/regulation/events", json={"event_type": "deadline_missed"}, headers=auth_headers).json()
        assert state["trust_score"] == 70
        assert state["current_level"] == 2

        events = client.get("/regulation/events", headers=auth_headers).json()
        assert events["count"] == 1
        assert events["events"][0]["impact_on_trust"] == -5

    def test_derivative_type_rejected(self, client, auth_headers):
        response = client.post("/regulation/events", json={"event_type": "level_escalated"}, headers=auth_headers)
        assert response.status_code == 400

    def test_levels(self, client, auth_headers):
        levels = client.get("/regulation/levels", headers=auth_headers).json()["levels"]
        assert [l["min_trust_score"] for l in levels] == [80, 60, 40, 20, 0]

    def test_threshold_edit_rederives_level(self, client, auth_headers):
        client.post("/regulation/events", json={"event_type": "deadline_missed"}, headers=auth_headers)

        response = client.put("/parameters/level_threshold.1", json={"value": 65}, headers=auth_headers)
        assert response.json() == {"parameter": "level_threshold.1", "old": 80, "new": 65, "was_set": False}
        assert client.get("/regulation/state", headers=auth_headers).json()["current_level"] == 1

    def test_bad_parameter(self, client, auth_headers):
        response = client.put("/parameters/level_threshold.2", json={"value": 90}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["detail"]["field"] == "level_threshold.*"

    def test_reset_parameter(self, client, auth_headers):
        client.put("/parameters/trust_impact.task_ignored", json={"value": -6}, headers=auth_headers)
        response = client.delete("/parameters/trust_impact.task_ignored", headers=auth_headers)

        assert response.json()["was_set"] is True
        params = client.get("/parameters", headers=auth_headers).json()["parameters"]
        assert params["trust_impact.task_ignored"]["is_set"] is False


# =============================================================================
# PRESETS
# =============================================================================

class TestPresetRoutes:
    def _preview(self, client, auth_headers, preset_id="gentle_start"):
        return client.post(f"/presets/{preset_id}/preview", headers=auth_headers).json()

    def test_preview_apply_revert(self, client, auth_headers):
        preview = self._preview(client, auth_headers)
        assert len(preview["changes"]) == 7

        applied = client.post(
            "/presets/gentle_start/apply",
            json={"preview_token": preview["preview_token"], "notes": "trying it"},
            headers=auth_headers,
        ).json()
        assert client.get("/presets/active", headers=auth_headers).json()["active"]["application_id"] == applied["application_id"]

        reverted = client.post(f"/presets/applications/{applied['application_id']}/revert", headers=auth_headers)
        assert reverted.json()["reverted_at"] is not None
        params = client.get("/parameters", headers=auth_headers).json()["parameters"]
        assert not any(entry["is_set"] for entry in params.values())

    def test_stale_token_conflict(self, client, auth_headers):
        preview = self._preview(client, auth_headers)
        client.put("/parameters/trust_impact.deadline_missed", json={"value": -3}, headers=auth_headers)

        response = client.post(
            "/presets/gentle_start/apply", json={"preview_token": preview["preview_token"]}, headers=auth_headers
        )
        assert response.status_code == 409

    def test_manual_edit_blocks_revert(self, client, auth_headers):
        preview = self._preview(client, auth_headers)
        application_id = client.post(
            "/presets/gentle_start/apply", json={"preview_token": preview["preview_token"]}, headers=auth_headers
        ).json()["application_id"]
        client.put("/parameters/trust_impact.session_drift", json={"value": -1}, headers=auth_headers)

        response = client.post(f"/presets/applications/{application_id}/revert", headers=auth_headers)
        assert response.status_code == 409
        assert response.json()["detail"]["parameters"] == ["trust_impact.session_drift"]

    def test_unknown_preset(self, client, auth_headers):
        assert client.post("/presets/turbo/preview", headers=auth_headers).status_code == 400


# =============================================================================
# INTERNAL
# =============================================================================

class TestInternalRoutes:
    def test_wrong_key(self, client):
        response = client.post("/internal/sweep-active-signals", headers={"X-Internal-Key": "guess"})
        assert response.status_code == 403

    def test_sweep(self, client, internal_headers):
        result = client.post("/internal/sweep-active-signals", headers=internal_headers).json()
        assert result == {"task": "sweep_active_signals", "run_date": result["run_date"], "deleted": 0}

    def test_purge_without_retention(self, client, internal_headers, monkeypatch):
        monkeypatch.setattr(config, "SIGNAL_RETENTION_DAYS", None)
        result = client.post("/internal/purge-signals", headers=internal_headers).json()
        assert result["retention_days"] is None
        assert result["purged"] == 0

    def test_purge_with_query_override(self, client, internal_headers):
        result = client.post("/internal/purge-signals", params={"retention_days": 30}, headers=internal_headers).json()
        assert result["retention_days"] == 30

    def test_invalidation_retry(self, client, internal_headers, mock_dispatcher):
        mock_dispatcher.retry_failed.return_value = {"resubmitted": 2}
        mock_dispatcher.stats.return_value = {"pending": 2, "failed": 0, "applied": 5}

        result = client.post("/internal/invalidation-retry", headers=internal_headers).json()
        assert result == {"task": "invalidation_retry", "resubmitted": 2, "pending": 2, "failed": 0, "applied": 5}

    def test_seed_and_toggle_definitions(self, client, internal_headers):
        assert client.post("/internal/definitions/seed", headers=internal_headers).json() == {"created": 5}
        assert client.post("/internal/definitions/seed", headers=internal_headers).json() == {"created": 0}

        response = client.put(
            "/internal/definitions/runaway_scope_expansion", json={"is_active": False}, headers=internal_headers
        )
        assert response.json() == {"signal_key": "runaway_scope_expansion", "is_active": False}
        assert client.put(
            "/internal/definitions/unknown_key", json={"is_active": False}, headers=internal_headers
        ).status_code == 400

    def test_surfacer_pass_for_explicit_users(self, client, internal_headers):
        result = client.post("/internal/surfacer-pass", json={"user_ids": [USER_ID]}, headers=internal_headers).json()
        assert result["task"] == "surfacer_pass"
        assert result["users"] == 1
        assert result["evaluated"] == 1
