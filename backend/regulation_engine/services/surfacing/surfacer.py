"""
Active Signal Surfacer

Evaluates the active signal definitions against the user's most recent
behavior and creates short-lived ActiveSignal rows.

Rules:
1. Safe Mode on -> nothing is surfaced and nothing is returned.
2. Consent is checked per definition at evaluation time. Missing consent
   means the signal is absent; it is never an error.
3. At most one unexpired, undismissed signal per (user, signal_key).
4. expires_at = detected_at + min(definition expiry, max horizon).
5. Late events never feed a surfaced signal, and existing rows are never
   updated by evaluation.
6. Dismissal is terminal. Expired or dismissed rows are hard-deleted by
   sweep_expired() and filtered out of every read before that.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ...config import ACTIVE_SIGNAL_MAX_HORIZON_MINUTES
from ...models.db_models import ActiveSignalDB, ActiveSignalKey, SignalDefinitionDB
from ...models.engine_types import EventSnapshot
from ..behavior import BehaviorEventLog
from ..concurrency import user_locks
from ..consent import ConsentRegistry, SafeModeService
from ..exceptions import NotFound
from ..regulation import ParameterStore
from .definitions import SignalDefinitionRegistry
from .detectors import DETECTORS, Detection


logger = logging.getLogger(__name__)


@dataclass
class EvaluationOutcome:
    surfaced: List[ActiveSignalDB] = field(default_factory=list)
    active: List[ActiveSignalDB] = field(default_factory=list)
    cancelled: bool = False
    suppressed_by_safe_mode: bool = False


def _format_parameters(parameters: dict) -> str:
    return ", ".join(f"{key}={parameters[key]}" for key in sorted(parameters))


class ActiveSignalSurfacer:
    """
    Usage:
        surfacer = ActiveSignalSurfacer(db)
        signals = surfacer.evaluate(user_id, session_id="tab-1")
        db.commit()
    """

    def __init__(self, db: Session, max_horizon_minutes: int = ACTIVE_SIGNAL_MAX_HORIZON_MINUTES):
        self.db = db
        self.max_horizon_minutes = max(1, max_horizon_minutes)
        self.consent = ConsentRegistry(db)
        self.safe_mode = SafeModeService(db)
        self.parameters = ParameterStore(db)
        self.definitions = SignalDefinitionRegistry(db)
        self.events = BehaviorEventLog(db)

    # =========================================================================
    # Evaluation
    # =========================================================================

    def evaluate(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[ActiveSignalDB]:
        """Run every active definition once; return the user's live signals."""
        return self.evaluate_user(user_id, session_id=session_id, now=now).active

    def evaluate_user(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        now: Optional[datetime] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> EvaluationOutcome:
        now = now or datetime.utcnow()
        outcome = EvaluationOutcome()

        with user_locks.hold(user_id):
            if self.safe_mode.is_enabled(user_id):
                outcome.suppressed_by_safe_mode = True
                return outcome

            definitions = self.definitions.list_definitions(active_only=True)
            if not definitions:
                return outcome

            longest_window = max(int(d.rule_parameters.get("window_minutes", 60)) for d in definitions)
            window_events = [
                EventSnapshot.from_row(row)
                for row in self.events.recent_events(
                    user_id,
                    since=now - timedelta(minutes=longest_window),
                    until=now,
                    include_late=False,
                )
            ]

            for definition in definitions:
                if cancel_event is not None and cancel_event.is_set():
                    outcome.cancelled = True
                    break
                signal = self._evaluate_definition(user_id, session_id, definition, window_events, now)
                if signal is not None:
                    outcome.surfaced.append(signal)

            if outcome.surfaced:
                self.db.flush()
                logger.info(f"Surfaced {len(outcome.surfaced)} active signals for user {user_id}")

        outcome.active = self.get_active_signals(user_id, session_id=session_id, now=now)
        return outcome

    def _evaluate_definition(
        self,
        user_id: str,
        session_id: Optional[str],
        definition: SignalDefinitionDB,
        window_events: List[EventSnapshot],
        now: datetime,
    ) -> Optional[ActiveSignalDB]:
        key = definition.signal_key
        if not self.consent.has_consent(user_id, definition.consent_category):
            return None
        if not self.parameters.signal_enabled(user_id, key):
            return None
        if self._has_live_signal(user_id, key, now):
            return None

        params = dict(definition.rule_parameters or {})
        window_start = now - timedelta(minutes=int(params.get("window_minutes", 60)))
        events = [e for e in window_events if e.occurred_at >= window_start]

        previous = None
        if key == ActiveSignalKey.PROLONGED_INACTIVITY_GAP and events:
            row = self.events.latest_event_before(user_id, events[0].occurred_at)
            previous = EventSnapshot.from_row(row) if row is not None else None

        detection = DETECTORS[key](events, params, now, previous)
        if detection is None:
            return None
        return self._create_signal(user_id, session_id, definition, params, detection, now)

    def _has_live_signal(self, user_id: str, signal_key: ActiveSignalKey, now: datetime) -> bool:
        return (
            self.db.query(ActiveSignalDB.id)
            .filter(
                ActiveSignalDB.user_id == user_id,
                ActiveSignalDB.signal_key == signal_key,
                ActiveSignalDB.dismissed_at.is_(None),
                ActiveSignalDB.expires_at > now,
            )
            .first()
            is not None
        )

    def _create_signal(
        self,
        user_id: str,
        session_id: Optional[str],
        definition: SignalDefinitionDB,
        params: dict,
        detection: Detection,
        now: datetime,
    ) -> ActiveSignalDB:
        lifetime = max(1, min(definition.expires_in_minutes, self.max_horizon_minutes))
        context = {**params, **detection.context_data}
        explanation = (
            f"{definition.explanation_text}\n\n"
            f"Rule: {definition.signal_key.value} v{definition.version}. "
            f"Parameters used: {_format_parameters(params)}. "
            f"Observed: {_format_parameters(detection.context_data)}."
        )
        signal = ActiveSignalDB(
            id=str(uuid4()),
            user_id=user_id,
            session_id=session_id,
            signal_key=definition.signal_key,
            title=definition.human_label,
            description=definition.short_description.format(**context),
            explanation_why=explanation,
            context_data=context,
            intensity=detection.intensity,
            detected_at=now,
            expires_at=now + timedelta(minutes=lifetime),
        )
        self.db.add(signal)
        return signal

    # =========================================================================
    # Reads / Dismissal
    # =========================================================================

    def get_active_signals(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[ActiveSignalDB]:
        """Live signals only. With a session id, signals bound to other sessions are hidden."""
        now = now or datetime.utcnow()
        if self.safe_mode.is_enabled(user_id):
            return []
        query = self.db.query(ActiveSignalDB).filter(
            ActiveSignalDB.user_id == user_id,
            ActiveSignalDB.dismissed_at.is_(None),
            ActiveSignalDB.expires_at > now,
        )
        if session_id is not None:
            query = query.filter(
                or_(ActiveSignalDB.session_id == session_id, ActiveSignalDB.session_id.is_(None))
            )
        return query.order_by(ActiveSignalDB.detected_at.desc()).all()

    def dismiss(self, user_id: str, signal_id: str, now: Optional[datetime] = None) -> ActiveSignalDB:
        """Terminal. Dismissing twice keeps the first dismissal time."""
        signal = (
            self.db.query(ActiveSignalDB)
            .filter(ActiveSignalDB.id == signal_id, ActiveSignalDB.user_id == user_id)
            .first()
        )
        if signal is None:
            raise NotFound("Active signal", signal_id)
        if signal.dismissed_at is None:
            signal.dismissed_at = now or datetime.utcnow()
            self.db.flush()
        return signal

    # =========================================================================
    # Garbage collection
    # =========================================================================

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.utcnow()
        deleted = (
            self.db.query(ActiveSignalDB)
            .filter(or_(ActiveSignalDB.expires_at <= now, ActiveSignalDB.dismissed_at.isnot(None)))
            .delete(synchronize_session=False)
        )
        self.db.flush()
        if deleted:
            logger.info(f"Swept {deleted} expired or dismissed active signals")
        return deleted

