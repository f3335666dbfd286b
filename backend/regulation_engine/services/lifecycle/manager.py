"""
Signal Lifecycle Manager

Owns every status transition of a candidate signal and the audit trail.

Core Principles:
1. Signals are never updated in place except for status transitions.
2. Transitions: candidate -> invalidated, candidate -> deleted,
   invalidated -> deleted. Deleted is terminal.
3. Every transition writes exactly one audit entry.
4. Invalidation is idempotent: already-invalidated rows are skipped, so
   at-least-once delivery from the event source is safe.
5. Invalidated/deleted rows are retained unless a retention horizon is
   configured.

Callers own the transaction: methods flush, never commit.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import (
    AuditAction,
    CandidateSignalDB,
    CandidateSignalKey,
    SignalAuditLogDB,
    SignalProvenanceDB,
    SignalStatus,
)
from ..exceptions import NotFound


logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
DEFAULT_INVALIDATION_REASON = "Source events modified or deleted"


class SignalLifecycleManager:
    """
    Status transitions and audit trail for candidate signals.

    Usage:
        manager = SignalLifecycleManager(db)
        count = manager.invalidate_for_events(user_id, ["evt-1"], "event edited")
        db.commit()
    """

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # Audit Trail
    # =========================================================================

    def record_audit(
        self,
        user_id: str,
        action: AuditAction,
        actor: str,
        signal_id: Optional[str] = None,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SignalAuditLogDB:
        """Append one audit entry. Entries are never updated or deleted."""
        entry = SignalAuditLogDB(
            audit_id=str(uuid4()),
            user_id=user_id,
            signal_id=signal_id,
            action=action,
            actor=actor,
            reason=reason,
            audit_metadata=metadata or {},
            created_at=datetime.utcnow(),
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def audit_trail(
        self,
        user_id: str,
        signal_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[SignalAuditLogDB]:
        query = self.db.query(SignalAuditLogDB).filter(SignalAuditLogDB.user_id == user_id)
        if signal_id:
            query = query.filter(SignalAuditLogDB.signal_id == signal_id)
        return query.order_by(SignalAuditLogDB.created_at.desc()).limit(limit).all()

    # =========================================================================
    # Invalidation
    # =========================================================================

    def invalidate_for_events(
        self,
        user_id: str,
        changed_event_ids: Iterable[str],
        reason: str = DEFAULT_INVALIDATION_REASON,
        actor: str = SYSTEM_ACTOR,
    ) -> int:
        """
        Invalidate every candidate signal whose provenance intersects
        `changed_event_ids`.

        Args:
            user_id: Owner of the signals (and of the events)
            changed_event_ids: Events that were edited or removed
            reason: Stored on each signal and its audit entry
            actor: Who triggered the invalidation

        Returns:
            Number of signals that transitioned
        """
        event_ids = sorted(set(changed_event_ids))
        if not event_ids:
            return 0

        affected_ids = [
            row[0]
            for row in (
                self.db.query(SignalProvenanceDB.signal_id)
                .filter(
                    SignalProvenanceDB.user_id == user_id,
                    SignalProvenanceDB.event_id.in_(event_ids),
                )
                .distinct()
                .all()
            )
        ]
        if not affected_ids:
            return 0

        signals = (
            self.db.query(CandidateSignalDB)
            .filter(
                CandidateSignalDB.signal_id.in_(affected_ids),
                CandidateSignalDB.status == SignalStatus.CANDIDATE,
            )
            .all()
        )

        for signal in signals:
            overlap = sorted(set(signal.provenance_event_ids or []) & set(event_ids))
            self._invalidate(signal, reason, actor, {"event_ids": overlap})

        if signals:
            logger.info(f"Invalidated {len(signals)} candidate signals for user {user_id}")
        return len(signals)

    def invalidate_for_signal_keys(
        self,
        user_id: str,
        signal_keys: Iterable[CandidateSignalKey],
        reason: str,
        actor: str = SYSTEM_ACTOR,
    ) -> int:
        """Invalidate every candidate signal of the given keys (consent revocation)."""
        keys = list(signal_keys)
        if not keys:
            return 0

        signals = (
            self.db.query(CandidateSignalDB)
            .filter(
                CandidateSignalDB.user_id == user_id,
                CandidateSignalDB.signal_key.in_(keys),
                CandidateSignalDB.status == SignalStatus.CANDIDATE,
            )
            .all()
        )
        for signal in signals:
            self._invalidate(signal, reason, actor, {"signal_key": signal.signal_key.value})
        return len(signals)

    def _invalidate(
        self,
        signal: CandidateSignalDB,
        reason: str,
        actor: str,
        metadata: Dict[str, Any],
    ) -> None:
        signal.status = SignalStatus.INVALIDATED
        signal.invalidated_at = datetime.utcnow()
        signal.invalidated_reason = reason
        self.record_audit(
            user_id=signal.user_id,
            action=AuditAction.INVALIDATED,
            actor=actor,
            signal_id=signal.signal_id,
            reason=reason,
            metadata=metadata,
        )

    # =========================================================================
    # Soft Delete
    # =========================================================================

    def soft_delete(
        self,
        signal_id: str,
        user_id: Optional[str] = None,
        actor: str = SYSTEM_ACTOR,
        reason: Optional[str] = None,
    ) -> CandidateSignalDB:
        """
        Mark a signal deleted. Deleting an already-deleted signal is a no-op.

        Raises:
            NotFound: signal does not exist (or belongs to another user)
        """
        query = self.db.query(CandidateSignalDB).filter(CandidateSignalDB.signal_id == signal_id)
        if user_id is not None:
            query = query.filter(CandidateSignalDB.user_id == user_id)
        signal = query.first()
        if signal is None:
            raise NotFound("Candidate signal", signal_id)

        if signal.status == SignalStatus.DELETED:
            return signal

        previous = signal.status
        signal.status = SignalStatus.DELETED
        signal.deleted_at = datetime.utcnow()
        self.record_audit(
            user_id=signal.user_id,
            action=AuditAction.DELETED,
            actor=actor,
            signal_id=signal.signal_id,
            reason=reason or "Signal deleted",
            metadata={"previous_status": previous.value},
        )
        return signal

    # =========================================================================
    # Retention
    # =========================================================================

    def purge_expired(
        self,
        retention_days: Optional[int],
        now: Optional[datetime] = None,
    ) -> int:
        """
        Hard-delete invalidated/deleted signals older than the horizon.

        Audit entries survive with signal_id nulled. A None horizon keeps
        everything.
        """
        if retention_days is None:
            return 0

        cutoff = (now or datetime.utcnow()) - timedelta(days=retention_days)
        expired = (
            self.db.query(CandidateSignalDB)
            .filter(
                CandidateSignalDB.status.in_([SignalStatus.INVALIDATED, SignalStatus.DELETED]),
                CandidateSignalDB.computed_at < cutoff,
            )
            .all()
        )
        if not expired:
            return 0

        expired_ids = [s.signal_id for s in expired]
        (
            self.db.query(SignalAuditLogDB)
            .filter(SignalAuditLogDB.signal_id.in_(expired_ids))
            .update({SignalAuditLogDB.signal_id: None}, synchronize_session=False)
        )
        for signal in expired:
            self.db.delete(signal)
        self.db.flush()

        logger.info(f"Purged {len(expired)} retained signals older than {retention_days} days")
        return len(expired)
