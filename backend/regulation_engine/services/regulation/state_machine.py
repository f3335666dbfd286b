"""
Trust / Strictness State Machine

One RegulationState per (user, scope). Events move trust_score; level is
re-derived from the score on every write and never set directly.

Transition rules:
1. impact = effective trust_impact.<event_type> for the user
2. trust_score = clamp(trust_score + impact, 0, 100)
3. current_level = level_for_score(trust_score, user thresholds)
4. Level moved -> last_level_change_at = now and ONE derivative event
   (level_escalated / level_deescalated) with old/new level in metadata.

Every write runs under the user's lock and commits atomically; on any
failure the previous state stands. A concurrent writer that slipped past
the lock (another process) is caught by the version column -> StaleWrite.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Union
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ...models.db_models import RegulationEventDB, RegulationEventType, RegulationStateDB
from ..concurrency import user_locks
from ..exceptions import InvalidParameter, ScopeNotPermitted, StaleWrite, UnknownEventType
from .levels import (
    DERIVATIVE_EVENT_TYPES,
    INITIAL_LEVEL,
    INITIAL_TRUST_SCORE,
    clamp_score,
    level_config,
    level_for_score,
)
from .parameters import ParameterStore


logger = logging.getLogger(__name__)

ScopeResolver = Callable[[str], Iterable[str]]

COUNTER_WINDOW = timedelta(days=7)

# Rolling counter column -> event type it counts
ROLLING_COUNTERS = {
    "drift_events_7d": RegulationEventType.SESSION_DRIFT,
    "focus_interruptions_7d": RegulationEventType.SESSION_ABANDONED,
    "missed_deadlines_7d": RegulationEventType.DEADLINE_MISSED,
    "offshoot_creations_7d": RegulationEventType.OFFSHOOT_OVERUSE,
    "side_project_switches_7d": RegulationEventType.SIDE_PROJECT_OVERUSE,
    "tasks_completed_7d": RegulationEventType.TASK_COMPLETED,
    "focus_sessions_completed_7d": RegulationEventType.FOCUS_COMPLETED,
}


def parse_regulation_event_type(event_type: Union[str, RegulationEventType]) -> RegulationEventType:
    try:
        parsed = RegulationEventType(event_type)
    except ValueError:
        raise UnknownEventType(event_type, reason="not a regulation event type")
    if parsed in DERIVATIVE_EVENT_TYPES:
        raise UnknownEventType(event_type, reason="level change events are recorded by the engine only")
    return parsed


def _scope_key(scope_id: Optional[str]) -> str:
    return scope_id or ""


class TrustStateMachine:
    """
    Usage:
        machine = TrustStateMachine(db, scope_resolver=lambda user_id: project_ids)
        state = machine.record_event(user_id, "deadline_missed", severity=2)
    """

    def __init__(self, db: Session, scope_resolver: Optional[ScopeResolver] = None):
        self.db = db
        self.scope_resolver = scope_resolver
        self.parameters = ParameterStore(db)

    # =========================================================================
    # Scope authorization
    # =========================================================================

    def check_scope(self, user_id: str, scope_id: Optional[str]) -> None:
        """Global scope is always allowed; anything else must be resolved for the user."""
        if scope_id is None or self.scope_resolver is None:
            return
        if scope_id not in set(self.scope_resolver(user_id)):
            raise ScopeNotPermitted(user_id, scope_id)

    # =========================================================================
    # Reads
    # =========================================================================

    def get_state(self, user_id: str, scope_id: Optional[str] = None) -> Optional[RegulationStateDB]:
        self.check_scope(user_id, scope_id)
        return (
            self.db.query(RegulationStateDB)
            .filter(
                RegulationStateDB.user_id == user_id,
                RegulationStateDB.scope_key == _scope_key(scope_id),
            )
            .first()
        )

    def describe_state(self, user_id: str, scope_id: Optional[str] = None) -> Dict[str, Any]:
        """State as a plain dict; a scope with no events yet reports the initial values."""
        state = self.get_state(user_id, scope_id)
        if state is None:
            described = {
                "user_id": user_id,
                "scope_id": scope_id,
                "trust_score": INITIAL_TRUST_SCORE,
                "current_level": INITIAL_LEVEL,
                "rule_break_count": 0,
                "consecutive_wins": 0,
                "consecutive_losses": 0,
                "event_count": 0,
                "last_level_change_at": None,
                "updated_at": None,
                "counters_7d": {name: 0 for name in ROLLING_COUNTERS},
                "initialized": False,
            }
        else:
            described = {
                "user_id": state.user_id,
                "scope_id": state.scope_id,
                "trust_score": state.trust_score,
                "current_level": state.current_level,
                "rule_break_count": state.rule_break_count,
                "consecutive_wins": state.consecutive_wins,
                "consecutive_losses": state.consecutive_losses,
                "event_count": state.event_count,
                "last_level_change_at": state.last_level_change_at,
                "updated_at": state.updated_at,
                "counters_7d": {name: getattr(state, name) for name in ROLLING_COUNTERS},
                "initialized": True,
            }
        described["level"] = level_config(described["current_level"])
        return described

    def list_events(
        self,
        user_id: str,
        scope_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[RegulationEventDB]:
        self.check_scope(user_id, scope_id)
        return (
            self.db.query(RegulationEventDB)
            .filter(
                RegulationEventDB.user_id == user_id,
                RegulationEventDB.scope_key == _scope_key(scope_id),
            )
            .order_by(RegulationEventDB.sequence.desc())
            .limit(limit)
            .all()
        )

    # =========================================================================
    # Transitions
    # =========================================================================

    def record_event(
        self,
        user_id: str,
        event_type: Union[str, RegulationEventType],
        severity: int = 1,
        scope_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> RegulationStateDB:
        """
        Append a regulation event and move the state.

        Raises:
            UnknownEventType: unknown or derivative event type
            InvalidParameter: severity outside 1..5
            ScopeNotPermitted: scope not resolved for the user
            StaleWrite: state changed underneath this write
        """
        event_type = parse_regulation_event_type(event_type)
        if not isinstance(severity, int) or isinstance(severity, bool) or not 1 <= severity <= 5:
            raise InvalidParameter("severity", severity, "integer in 1..5")
        self.check_scope(user_id, scope_id)
        now = now or datetime.utcnow()

        with user_locks.hold(user_id):
            try:
                state = self._get_or_create(user_id, scope_id, now)
                impact = self.parameters.trust_impact(user_id, event_type)
                thresholds = self.parameters.thresholds(user_id)

                old_level = state.current_level
                new_score = clamp_score(state.trust_score + impact)

                self._append_event(
                    state,
                    event_type=event_type,
                    severity=severity,
                    impact=impact,
                    score_after=new_score,
                    metadata=metadata or {},
                    now=now,
                )

                state.trust_score = new_score
                state.current_level = level_for_score(new_score, thresholds)
                state.event_count = (state.event_count or 0) + 1
                if impact > 0:
                    state.consecutive_wins = (state.consecutive_wins or 0) + 1
                    state.consecutive_losses = 0
                elif impact < 0:
                    state.consecutive_losses = (state.consecutive_losses or 0) + 1
                    state.consecutive_wins = 0
                if event_type == RegulationEventType.RULE_VIOLATION:
                    state.rule_break_count = (state.rule_break_count or 0) + 1

                self._refresh_counters(state, now)

                if state.current_level != old_level:
                    self._record_level_change(state, old_level, now, reason=event_type.value)

                state.last_calculated_at = now
                state.updated_at = now
                self.db.commit()
            except (StaleDataError, IntegrityError):
                self.db.rollback()
                logger.warning(f"Stale regulation state write for user {user_id} scope {scope_id or 'global'}")
                raise StaleWrite(user_id, scope_id)
            except Exception:
                self.db.rollback()
                raise

        self.db.refresh(state)
        return state

    def rederive_levels(self, user_id: str, now: Optional[datetime] = None) -> List[RegulationStateDB]:
        """
        Re-apply the user's current thresholds to every scope.

        Flushes only; the caller commits together with the threshold change.
        """
        now = now or datetime.utcnow()
        changed = []
        with user_locks.hold(user_id):
            thresholds = self.parameters.thresholds(user_id)
            states = (
                self.db.query(RegulationStateDB)
                .populate_existing()
                .filter(RegulationStateDB.user_id == user_id)
                .all()
            )
            for state in states:
                old_level = state.current_level
                new_level = level_for_score(state.trust_score, thresholds)
                if new_level == old_level:
                    continue
                state.current_level = new_level
                self._record_level_change(state, old_level, now, reason="thresholds_changed")
                state.updated_at = now
                changed.append(state)
            try:
                self.db.flush()
            except StaleDataError:
                raise StaleWrite(user_id, None)

        if changed:
            logger.info(f"Re-derived levels for {len(changed)} regulation states of user {user_id}")
        return changed

    # =========================================================================
    # Internals
    # =========================================================================

    def _get_or_create(self, user_id: str, scope_id: Optional[str], now: datetime) -> RegulationStateDB:
        # Re-read under the lock: a cached copy may predate another writer's commit
        state = (
            self.db.query(RegulationStateDB)
            .populate_existing()
            .filter(
                RegulationStateDB.user_id == user_id,
                RegulationStateDB.scope_key == _scope_key(scope_id),
            )
            .first()
        )
        if state is not None:
            return state

        state = RegulationStateDB(
            id=str(uuid4()),
            user_id=user_id,
            scope_id=scope_id,
            scope_key=_scope_key(scope_id),
            trust_score=INITIAL_TRUST_SCORE,
            current_level=INITIAL_LEVEL,
            rule_break_count=0,
            consecutive_wins=0,
            consecutive_losses=0,
            event_count=0,
            created_at=now,
            **{name: 0 for name in ROLLING_COUNTERS},
        )
        self.db.add(state)
        self.db.flush()
        logger.info(f"Initialized regulation state for user {user_id} scope {scope_id or 'global'}")
        return state

    def _next_sequence(self, state: RegulationStateDB) -> int:
        current = (
            self.db.query(func.max(RegulationEventDB.sequence))
            .filter(
                RegulationEventDB.user_id == state.user_id,
                RegulationEventDB.scope_key == state.scope_key,
            )
            .scalar()
        )
        return (current or 0) + 1

    def _append_event(
        self,
        state: RegulationStateDB,
        event_type: RegulationEventType,
        severity: int,
        impact: int,
        score_after: int,
        metadata: Dict[str, Any],
        now: datetime,
    ) -> RegulationEventDB:
        event = RegulationEventDB(
            id=str(uuid4()),
            user_id=state.user_id,
            scope_id=state.scope_id,
            scope_key=state.scope_key,
            sequence=self._next_sequence(state),
            event_type=event_type,
            severity=severity,
            impact_on_trust=impact,
            trust_score_after=score_after,
            event_metadata=metadata,
            created_at=now,
        )
        self.db.add(event)
        self.db.flush()
        return event

    def _record_level_change(self, state: RegulationStateDB, old_level: int, now: datetime, reason: str) -> None:
        new_level = state.current_level
        escalated = new_level > old_level
        state.last_level_change_at = now
        self._append_event(
            state,
            event_type=RegulationEventType.LEVEL_ESCALATED if escalated else RegulationEventType.LEVEL_DEESCALATED,
            severity=abs(new_level - old_level),
            impact=0,
            score_after=state.trust_score,
            metadata={
                "old_level": old_level,
                "new_level": new_level,
                "old_level_name": level_config(old_level)["name"],
                "new_level_name": level_config(new_level)["name"],
                "trigger": reason,
            },
            now=now,
        )
        logger.info(
            f"Regulation level {'escalated' if escalated else 'de-escalated'} "
            f"{old_level}->{new_level} for user {state.user_id}"
        )

    def _refresh_counters(self, state: RegulationStateDB, now: datetime) -> None:
        rows = (
            self.db.query(RegulationEventDB.event_type, func.count(RegulationEventDB.id))
            .filter(
                RegulationEventDB.user_id == state.user_id,
                RegulationEventDB.scope_key == state.scope_key,
                RegulationEventDB.created_at >= now - COUNTER_WINDOW,
                RegulationEventDB.created_at <= now,
            )
            .group_by(RegulationEventDB.event_type)
            .all()
        )
        counts = {event_type: count for event_type, count in rows}
        for column, event_type in ROLLING_COUNTERS.items():
            setattr(state, column, counts.get(event_type, 0))
