"""
Consent Registry

Per-user, per-category boolean gates. Default-deny: a category the user
never touched has no consent. Nothing downstream may compute without an
affirmative has_consent() made at the start of that computation.

Every real transition (off->on, on->off) appends one audit entry.
Revoking also invalidates every candidate signal backed by the category.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import (
    ActiveSignalKey,
    AuditAction,
    CandidateSignalKey,
    ConsentCategory,
    ConsentFlagDB,
)
from ..concurrency import user_locks
from ..exceptions import UnknownConsentCategory
from ..lifecycle import SignalLifecycleManager


logger = logging.getLogger(__name__)


# =============================================================================
# CATEGORY -> SIGNAL KEY MAPPING
# =============================================================================
# Which consent category backs each signal key. Closed: every key appears
# exactly once.
# =============================================================================

CANDIDATE_SIGNAL_CONSENT: Dict[CandidateSignalKey, ConsentCategory] = {
    CandidateSignalKey.SESSION_BOUNDARIES: ConsentCategory.SESSION_STRUCTURES,
    CandidateSignalKey.TIME_BINS_ACTIVITY_COUNT: ConsentCategory.TIME_PATTERNS,
    CandidateSignalKey.ACTIVITY_INTERVALS: ConsentCategory.ACTIVITY_DURATIONS,
    CandidateSignalKey.CAPTURE_COVERAGE: ConsentCategory.DATA_QUALITY_BASIC,
}

ACTIVE_SIGNAL_CONSENT: Dict[ActiveSignalKey, ConsentCategory] = {
    ActiveSignalKey.RAPID_CONTEXT_SWITCHING: ConsentCategory.SESSION_STRUCTURES,
    ActiveSignalKey.RUNAWAY_SCOPE_EXPANSION: ConsentCategory.SESSION_STRUCTURES,
    ActiveSignalKey.FRAGMENTED_FOCUS_SESSION: ConsentCategory.ACTIVITY_DURATIONS,
    ActiveSignalKey.PROLONGED_INACTIVITY_GAP: ConsentCategory.TIME_PATTERNS,
    ActiveSignalKey.HIGH_TASK_INTAKE_WITHOUT_COMPLETION: ConsentCategory.TIME_PATTERNS,
}


def parse_category(category: Union[str, ConsentCategory]) -> ConsentCategory:
    try:
        return ConsentCategory(category)
    except ValueError:
        raise UnknownConsentCategory(category)


def candidate_keys_for(category: ConsentCategory) -> List[CandidateSignalKey]:
    return [key for key, cat in CANDIDATE_SIGNAL_CONSENT.items() if cat == category]


class ConsentRegistry:
    """
    Reads and writes consent flags.

    Usage:
        registry = ConsentRegistry(db)
        registry.set_consent(user_id, "session_structures", True)
    """

    def __init__(self, db: Session):
        self.db = db

    def _get_flag(self, user_id: str, category: ConsentCategory):
        return (
            self.db.query(ConsentFlagDB)
            .populate_existing()
            .filter(ConsentFlagDB.user_id == user_id, ConsentFlagDB.category == category)
            .first()
        )

    def has_consent(self, user_id: str, category: Union[str, ConsentCategory]) -> bool:
        """Fresh read every call; unknown (user, category) pairs are denied."""
        flag = self._get_flag(user_id, parse_category(category))
        return bool(flag and flag.is_enabled)

    def set_consent(
        self,
        user_id: str,
        category: Union[str, ConsentCategory],
        enabled: bool,
        actor: Optional[str] = None,
    ) -> ConsentFlagDB:
        """
        Grant or revoke a category.

        Setting a flag to its current value changes nothing and writes no
        audit entry. A first-ever revoke still creates the row so the
        explicit choice is on record.

        A real transition commits under the user's lock, so a computation
        for the same user either finishes before the revoke (and is
        invalidated by it) or sees consent already withdrawn.
        """
        category = parse_category(category)
        actor = actor or user_id

        with user_locks.hold(user_id):
            flag = self._get_flag(user_id, category)
            if flag is None:
                flag = ConsentFlagDB(
                    id=str(uuid4()),
                    user_id=user_id,
                    category=category,
                    is_enabled=False,
                )
                self.db.add(flag)
                previously_enabled = None
            else:
                previously_enabled = flag.is_enabled

            if previously_enabled is not None and previously_enabled == enabled:
                return flag

            now = datetime.utcnow()
            lifecycle = SignalLifecycleManager(self.db)
            try:
                flag.is_enabled = enabled
                if enabled:
                    flag.granted_at = now
                    flag.revoked_at = None
                else:
                    flag.revoked_at = now
                    flag.granted_at = None
                self.db.flush()

                invalidated = 0
                if not enabled:
                    invalidated = lifecycle.invalidate_for_signal_keys(
                        user_id,
                        candidate_keys_for(category),
                        reason=f"Consent revoked for category: {category.value}",
                        actor=actor,
                    )

                lifecycle.record_audit(
                    user_id=user_id,
                    action=AuditAction.CONSENT_GRANTED if enabled else AuditAction.CONSENT_REVOKED,
                    actor=actor,
                    reason=f"Consent {'granted' if enabled else 'revoked'} for category: {category.value}",
                    metadata={"category": category.value, "invalidated_signals": invalidated},
                )
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        logger.info(
            f"Consent {'granted' if enabled else 'revoked'} for user {user_id} "
            f"category {category.value} (invalidated {invalidated})"
        )
        return flag

    def list_consents(self, user_id: str) -> List[Dict[str, Any]]:
        """Every category with its current flag; untouched ones report disabled."""
        rows = {
            row.category: row
            for row in self.db.query(ConsentFlagDB).filter(ConsentFlagDB.user_id == user_id).all()
        }
        result = []
        for category in ConsentCategory:
            row = rows.get(category)
            result.append({
                "category": category.value,
                "enabled": bool(row and row.is_enabled),
                "granted_at": row.granted_at if row else None,
                "revoked_at": row.revoked_at if row else None,
                "touched": row is not None,
            })
        return result
