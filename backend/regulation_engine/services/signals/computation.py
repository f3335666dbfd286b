"""
Signal Computation Engine

Turns behavior events into CandidateSignal records under explicit consent.

Guarantees:
- Consent is checked at the start of every computation, never cached.
- A signal always has a non-empty provenance set and confidence in [0, 1].
- Recomputing with the same (key, version, provenance hash, parameters,
  time range) returns the existing candidate instead of creating a duplicate.
- All writes for one user run under that user's lock, and a new signal is
  committed before the lock is released. An invalidation job waiting on
  the lock therefore always sees the signal and its provenance links.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import (
    AuditAction,
    CandidateSignalDB,
    CandidateSignalKey,
    SignalProvenanceDB,
    SignalStatus,
)
from ...models.engine_types import ComputeResult, EventSnapshot, TimeRange
from ..behavior import BehaviorEventLog
from ..concurrency import user_locks
from ..consent import ConsentRegistry
from ..exceptions import ConsentDenied, InvalidProvenance, RegulationEngineError
from ..lifecycle import SignalLifecycleManager
from .rules import SIGNAL_RULES, SignalRule, get_rule, provenance_hash, resolve_parameters


logger = logging.getLogger(__name__)


class SignalComputationEngine:
    """
    Computes and persists candidate signals.

    Usage:
        engine = SignalComputationEngine(db)
        signal = engine.compute_signals(user_id, "session_boundaries", time_range, event_ids)

    Storing a signal commits the session.
    """

    def __init__(self, db: Session):
        self.db = db
        self.consent = ConsentRegistry(db)
        self.lifecycle = SignalLifecycleManager(db)
        self.events = BehaviorEventLog(db)

    # =========================================================================
    # Single computation
    # =========================================================================

    def compute_signals(
        self,
        user_id: str,
        signal_key: Union[str, CandidateSignalKey],
        time_range: TimeRange,
        source_event_ids: Iterable[str],
        parameters: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> Optional[CandidateSignalDB]:
        """
        Compute one signal from an explicit set of source events.

        Returns:
            The new (or identical existing) candidate, or None when the rule
            finds nothing to report.

        Raises:
            UnknownSignalKey: key outside the closed set
            ConsentDenied: no active grant for the backing category
            InvalidProvenance: empty, unknown, foreign, removed or out-of-range events
            InvalidParameter: bad parameter override
        """
        signal, _ = self._compute(user_id, signal_key, time_range, source_event_ids, parameters, actor)
        return signal

    def _compute(
        self,
        user_id: str,
        signal_key: Union[str, CandidateSignalKey],
        time_range: TimeRange,
        source_event_ids: Iterable[str],
        parameters: Optional[Dict[str, Any]],
        actor: Optional[str],
    ) -> Tuple[Optional[CandidateSignalDB], bool]:
        rule = get_rule(signal_key)

        with user_locks.hold(user_id):
            if not self.consent.has_consent(user_id, rule.consent_category):
                raise ConsentDenied(user_id, rule.consent_category.value)

            params = resolve_parameters(rule, parameters)
            snapshots = self._load_provenance(user_id, source_event_ids, time_range)

            output = rule.compute(snapshots, params, time_range)
            if output is None:
                return None, False

            if not output.provenance_event_ids:
                raise InvalidProvenance(f"{rule.signal_key.value} produced a signal without provenance")
            if not 0.0 <= output.confidence <= 1.0:
                raise ValueError(f"{rule.signal_key.value} produced confidence {output.confidence} outside [0, 1]")

            provenance_ids = set(output.provenance_event_ids)
            used = [s for s in snapshots if s.event_id in provenance_ids]
            digest = provenance_hash(used)

            existing = self._find_existing(user_id, rule, digest, params, time_range)
            if existing is not None:
                return existing, False

            try:
                signal = self._store(user_id, rule, time_range, output, digest, params)
                self.lifecycle.record_audit(
                    user_id=user_id,
                    action=AuditAction.COMPUTED,
                    actor=actor or user_id,
                    signal_id=signal.signal_id,
                    reason="Signal computed",
                    metadata={
                        "signal_key": rule.signal_key.value,
                        "signal_version": rule.version,
                        "event_count": len(output.provenance_event_ids),
                    },
                )
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
            logger.info(f"Computed {rule.signal_key.value} signal {signal.signal_id} for user {user_id}")
            return signal, True

    def _load_provenance(
        self,
        user_id: str,
        source_event_ids: Iterable[str],
        time_range: TimeRange,
    ) -> List[EventSnapshot]:
        requested = sorted(set(source_event_ids or []))
        if not requested:
            raise InvalidProvenance("A signal needs at least one source event")

        rows = {row.id: row for row in self.events.events_by_ids(requested)}

        dangling = [eid for eid in requested if eid not in rows or rows[eid].user_id != user_id]
        if dangling:
            raise InvalidProvenance("Source events not found for user", dangling)

        removed = [eid for eid in requested if rows[eid].removed_at is not None]
        if removed:
            raise InvalidProvenance("Source events have been removed", removed)

        outside = [eid for eid in requested if not time_range.contains(rows[eid].occurred_at)]
        if outside:
            raise InvalidProvenance("Source events fall outside the time range", outside)

        snapshots = [EventSnapshot.from_row(rows[eid]) for eid in requested]
        return sorted(snapshots, key=lambda s: (s.occurred_at, s.event_id))

    def _find_existing(
        self,
        user_id: str,
        rule: SignalRule,
        digest: str,
        params: Dict[str, Any],
        time_range: TimeRange,
    ) -> Optional[CandidateSignalDB]:
        candidates = (
            self.db.query(CandidateSignalDB)
            .filter(
                CandidateSignalDB.user_id == user_id,
                CandidateSignalDB.signal_key == rule.signal_key,
                CandidateSignalDB.signal_version == rule.version,
                CandidateSignalDB.provenance_hash == digest,
                CandidateSignalDB.status == SignalStatus.CANDIDATE,
                CandidateSignalDB.time_range_start == time_range.start,
                CandidateSignalDB.time_range_end == time_range.end,
            )
            .order_by(CandidateSignalDB.computed_at)
            .all()
        )
        for candidate in candidates:
            if dict(candidate.parameters_json or {}) == params:
                return candidate
        return None

    def _store(self, user_id, rule, time_range, output, digest, params) -> CandidateSignalDB:
        signal_id = str(uuid4())
        provenance_ids = sorted(output.provenance_event_ids)
        signal = CandidateSignalDB(
            signal_id=signal_id,
            user_id=user_id,
            signal_key=rule.signal_key,
            signal_version=rule.version,
            time_range_start=time_range.start,
            time_range_end=time_range.end,
            value_json=output.value,
            confidence=output.confidence,
            provenance_event_ids=provenance_ids,
            provenance_hash=digest,
            parameters_json=dict(params),
            computed_at=datetime.utcnow(),
            status=SignalStatus.CANDIDATE,
        )
        signal.provenance_links = [
            SignalProvenanceDB(user_id=user_id, event_id=event_id) for event_id in provenance_ids
        ]
        self.db.add(signal)
        self.db.flush()
        return signal

    # =========================================================================
    # Batch computation
    # =========================================================================

    def compute_for_user(
        self,
        user_id: str,
        time_range: TimeRange,
        signal_keys: Optional[Iterable[Union[str, CandidateSignalKey]]] = None,
        parameters: Optional[Dict[str, Dict[str, Any]]] = None,
        actor: Optional[str] = None,
    ) -> ComputeResult:
        """
        Compute every requested key over the user's events in `time_range`.

        Keys without consent, or with too few events, count as skipped.
        Per-key failures are collected in `errors`; the batch continues.
        """
        result = ComputeResult()
        keys = list(signal_keys) if signal_keys is not None else list(SIGNAL_RULES)
        parameters = parameters or {}

        for raw_key in keys:
            try:
                rule = get_rule(raw_key)
                if not self.consent.has_consent(user_id, rule.consent_category):
                    result.skipped += 1
                    continue

                events = self.events.recent_events(user_id, since=time_range.start, until=time_range.end)
                if len(events) < rule.minimum_events:
                    result.skipped += 1
                    continue

                signal, created = self._compute(
                    user_id,
                    rule.signal_key,
                    time_range,
                    [e.id for e in events],
                    parameters.get(rule.signal_key.value),
                    actor,
                )
                if signal is None:
                    result.skipped += 1
                elif created:
                    result.computed += 1
                    result.signals.append(signal)
                else:
                    result.reused += 1
                    result.signals.append(signal)
            except ConsentDenied:
                # Revoked between the check and the computation
                result.skipped += 1
            except RegulationEngineError as e:
                result.errors.append(f"{raw_key}: {e.message}")

        logger.info(
            f"Signal batch for user {user_id}: computed={result.computed} "
            f"reused={result.reused} skipped={result.skipped} errors={len(result.errors)}"
        )
        return result

    # =========================================================================
    # Reads
    # =========================================================================

    def list_candidate_signals(
        self,
        user_id: str,
        signal_keys: Optional[Iterable[Union[str, CandidateSignalKey]]] = None,
        status: Optional[SignalStatus] = SignalStatus.CANDIDATE,
        time_range: Optional[TimeRange] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[CandidateSignalDB]:
        query = self.db.query(CandidateSignalDB).filter(CandidateSignalDB.user_id == user_id)
        if status is not None:
            query = query.filter(CandidateSignalDB.status == status)
        if signal_keys:
            query = query.filter(CandidateSignalDB.signal_key.in_([get_rule(k).signal_key for k in signal_keys]))
        if time_range is not None:
            query = query.filter(
                CandidateSignalDB.time_range_start >= time_range.start,
                CandidateSignalDB.time_range_end <= time_range.end,
            )
        return (
            query.order_by(CandidateSignalDB.computed_at.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def get_signal(self, user_id: str, signal_id: str) -> Optional[CandidateSignalDB]:
        return (
            self.db.query(CandidateSignalDB)
            .filter(CandidateSignalDB.signal_id == signal_id, CandidateSignalDB.user_id == user_id)
            .first()
        )
