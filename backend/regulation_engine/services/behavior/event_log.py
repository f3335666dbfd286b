"""
Behavior Event Log

Ingestion store for user actions emitted by the CRUD domains.

Rules:
1. Append never blocks on downstream work.
2. Out-of-order delivery is tolerated. An event that arrives later than the
   lateness window is stored (and usable for candidate computation) but is
   flagged `is_late` and never considered by the active signal surfacer.
   Editing `occurred_at` re-evaluates the flag against `received_at`.
3. Edits bump `revision`; removal is a soft delete. Both queue the event id
   for the invalidation dispatcher and return immediately. The job is handed
   over when the session commits, and dropped if it rolls back.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Union
from uuid import uuid4

from sqlalchemy import event as orm_event
from sqlalchemy.orm import Session

from ...config import BEHAVIOR_LATENESS_WINDOW_MINUTES
from ...models.db_models import BehaviorEventDB, BehaviorEventType
from ..exceptions import InvalidParameter, NotFound, UnknownEventType
from ..lifecycle import InvalidationDispatcher, invalidation_dispatcher


logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("occurred_at", "severity", "scope_id", "metadata")

# Session.info key holding invalidations waiting for the commit
_PENDING_INVALIDATIONS = "pending_invalidations"


def parse_event_type(event_type: Union[str, BehaviorEventType]) -> BehaviorEventType:
    try:
        return BehaviorEventType(event_type)
    except ValueError:
        raise UnknownEventType(event_type, reason="not a behavior event type")


def _dispatch_pending(session: Session) -> None:
    for dispatcher, user_id, event_ids, reason, actor in session.info.pop(_PENDING_INVALIDATIONS, []):
        dispatcher.dispatch(user_id, event_ids, reason=reason, actor=actor)


def _drop_pending(session: Session) -> None:
    session.info.pop(_PENDING_INVALIDATIONS, None)


def _validate_severity(severity: int) -> int:
    if not isinstance(severity, int) or isinstance(severity, bool) or not 1 <= severity <= 5:
        raise InvalidParameter("severity", severity, "integer in 1..5")
    return severity


class BehaviorEventLog:
    """
    Append/edit/remove behavior events.

    Usage:
        log = BehaviorEventLog(db)
        event = log.append(user_id, "context_switch", occurred_at=now)
        db.commit()
    """

    def __init__(
        self,
        db: Session,
        dispatcher: Optional[InvalidationDispatcher] = None,
        lateness_window_minutes: int = BEHAVIOR_LATENESS_WINDOW_MINUTES,
    ):
        self.db = db
        self.dispatcher = dispatcher or invalidation_dispatcher
        self.lateness_window = timedelta(minutes=lateness_window_minutes)

    # =========================================================================
    # Append
    # =========================================================================

    def append(
        self,
        user_id: str,
        event_type: Union[str, BehaviorEventType],
        occurred_at: datetime,
        severity: int = 1,
        scope_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        event_id: Optional[str] = None,
        received_at: Optional[datetime] = None,
    ) -> BehaviorEventDB:
        """
        Store one event.

        `event_id` lets the producer make delivery idempotent: appending an
        id that already exists for the user returns the stored row.
        """
        event_type = parse_event_type(event_type)
        _validate_severity(severity)

        if event_id:
            existing = self.db.query(BehaviorEventDB).filter(BehaviorEventDB.id == event_id).first()
            if existing is not None:
                if existing.user_id != user_id:
                    raise InvalidParameter("event_id", event_id, "already used by another user")
                return existing

        received_at = received_at or datetime.utcnow()
        event = BehaviorEventDB(
            id=event_id or str(uuid4()),
            user_id=user_id,
            scope_id=scope_id,
            event_type=event_type,
            severity=severity,
            occurred_at=occurred_at,
            received_at=received_at,
            event_metadata=dict(metadata or {}),
            is_late=occurred_at < received_at - self.lateness_window,
            revision=1,
        )
        self.db.add(event)
        self.db.flush()

        if event.is_late:
            logger.info(f"Late behavior event {event.id} for user {user_id} stored without surfacing")
        return event

    # =========================================================================
    # Edit / Remove
    # =========================================================================

    def get_event(self, user_id: str, event_id: str) -> BehaviorEventDB:
        event = (
            self.db.query(BehaviorEventDB)
            .filter(BehaviorEventDB.id == event_id, BehaviorEventDB.user_id == user_id)
            .first()
        )
        if event is None:
            raise NotFound("Behavior event", event_id)
        return event

    def edit_event(self, user_id: str, event_id: str, changes: Dict[str, Any]) -> BehaviorEventDB:
        """Apply field changes; invalidation for the event is sent on commit."""
        unknown = sorted(set(changes) - set(EDITABLE_FIELDS))
        if unknown:
            raise InvalidParameter("changes", unknown, f"editable fields are {', '.join(EDITABLE_FIELDS)}")

        event = self.get_event(user_id, event_id)
        if event.removed_at is not None:
            raise NotFound("Behavior event", event_id)

        if "severity" in changes:
            event.severity = _validate_severity(changes["severity"])
        if "occurred_at" in changes:
            event.occurred_at = changes["occurred_at"]
            event.is_late = event.occurred_at < event.received_at - self.lateness_window
        if "scope_id" in changes:
            event.scope_id = changes["scope_id"]
        if "metadata" in changes:
            event.event_metadata = dict(changes["metadata"] or {})

        event.revision = (event.revision or 1) + 1
        self.db.flush()

        self._invalidate_after_commit(user_id, event.id, reason=f"Source event {event.id} edited")
        return event

    def remove_event(self, user_id: str, event_id: str) -> BehaviorEventDB:
        """Soft-remove. Removing twice is a no-op (no second dispatch)."""
        event = self.get_event(user_id, event_id)
        if event.removed_at is not None:
            return event

        event.removed_at = datetime.utcnow()
        self.db.flush()

        self._invalidate_after_commit(user_id, event.id, reason=f"Source event {event.id} removed")
        return event

    def _invalidate_after_commit(self, user_id: str, event_id: str, reason: str) -> None:
        self.db.info.setdefault(_PENDING_INVALIDATIONS, []).append(
            (self.dispatcher, user_id, [event_id], reason, user_id)
        )
        if not orm_event.contains(self.db, "after_commit", _dispatch_pending):
            orm_event.listen(self.db, "after_commit", _dispatch_pending)
            orm_event.listen(self.db, "after_rollback", _drop_pending)

    # =========================================================================
    # Reads
    # =========================================================================

    def recent_events(
        self,
        user_id: str,
        since: datetime,
        until: Optional[datetime] = None,
        event_types: Optional[Iterable[BehaviorEventType]] = None,
        include_late: bool = True,
        include_removed: bool = False,
    ) -> List[BehaviorEventDB]:
        query = self.db.query(BehaviorEventDB).filter(
            BehaviorEventDB.user_id == user_id,
            BehaviorEventDB.occurred_at >= since,
        )
        if until is not None:
            query = query.filter(BehaviorEventDB.occurred_at <= until)
        if event_types:
            query = query.filter(BehaviorEventDB.event_type.in_([parse_event_type(t) for t in event_types]))
        if not include_late:
            query = query.filter(BehaviorEventDB.is_late.is_(False))
        if not include_removed:
            query = query.filter(BehaviorEventDB.removed_at.is_(None))
        return query.order_by(BehaviorEventDB.occurred_at, BehaviorEventDB.id).all()

    def events_by_ids(self, event_ids: Iterable[str]) -> List[BehaviorEventDB]:
        ids = list(set(event_ids))
        if not ids:
            return []
        return self.db.query(BehaviorEventDB).filter(BehaviorEventDB.id.in_(ids)).all()

    def latest_event_before(self, user_id: str, before: datetime) -> Optional[BehaviorEventDB]:
        return (
            self.db.query(BehaviorEventDB)
            .filter(
                BehaviorEventDB.user_id == user_id,
                BehaviorEventDB.occurred_at < before,
                BehaviorEventDB.removed_at.is_(None),
            )
            .order_by(BehaviorEventDB.occurred_at.desc())
            .first()
        )

    def active_user_ids(self, since: datetime) -> List[str]:
        """Users with at least one non-removed event since `since`."""
        rows = (
            self.db.query(BehaviorEventDB.user_id)
            .filter(BehaviorEventDB.occurred_at >= since, BehaviorEventDB.removed_at.is_(None))
            .distinct()
            .all()
        )
        return sorted(row[0] for row in rows)
