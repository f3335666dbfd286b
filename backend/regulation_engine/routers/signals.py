"""
Candidate Signal API Routes

Computation, soft deletion and audit trail for candidate signals.

Candidate signals are neutral building blocks, not user-facing output.
Listing them is a transparency/debugging surface and only exists while
SIGNAL_TESTING_MODE is on.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from .. import config
from ..auth import get_current_user_id
from ..database import get_db
from ..models.db_models import SignalStatus
from ..models.engine_types import TimeRange
from ..services.exceptions import RegulationEngineError
from ..services.lifecycle import SignalLifecycleManager
from ..services.signals import SIGNAL_RULES, SignalComputationEngine
from .errors import http_error


router = APIRouter(prefix="/signals", tags=["signals"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class ComputeSignalRequest(BaseModel):
    """Compute one signal from an explicit provenance set."""
    start: datetime = Field(..., description="Time range start (UTC)")
    end: datetime = Field(..., description="Time range end (UTC)")
    event_ids: List[str] = Field(..., description="Source behavior event ids")
    parameters: Optional[Dict[str, Any]] = Field(None, description="Rule parameter overrides")


class ComputeBatchRequest(BaseModel):
    """Compute several keys over every event in the range."""
    start: datetime
    end: datetime
    signal_keys: Optional[List[str]] = Field(None, description="Defaults to every known key")
    parameters: Optional[Dict[str, Dict[str, Any]]] = Field(None, description="Overrides per signal key")


class DeleteSignalRequest(BaseModel):
    reason: Optional[str] = None


def _time_range(start: datetime, end: datetime) -> TimeRange:
    try:
        return TimeRange(start=start, end=end)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _signal_to_dict(signal) -> dict:
    return {
        "signal_id": signal.signal_id,
        "signal_key": signal.signal_key.value,
        "signal_version": signal.signal_version,
        "time_range": {"start": signal.time_range_start, "end": signal.time_range_end},
        "value": signal.value_json,
        "confidence": signal.confidence,
        "provenance_event_ids": signal.provenance_event_ids,
        "provenance_hash": signal.provenance_hash,
        "parameters": signal.parameters_json or {},
        "computed_at": signal.computed_at,
        "status": signal.status.value,
        "invalidated_at": signal.invalidated_at,
        "invalidated_reason": signal.invalidated_reason,
        "deleted_at": signal.deleted_at,
    }


def _audit_to_dict(entry) -> dict:
    return {
        "audit_id": entry.audit_id,
        "signal_id": entry.signal_id,
        "action": entry.action.value,
        "actor": entry.actor,
        "reason": entry.reason,
        "metadata": entry.audit_metadata or {},
        "created_at": entry.created_at,
    }


# =============================================================================
# COMPUTATION
# =============================================================================

@router.get("/rules", response_model=dict)
async def list_rules():
    """Known signal keys with version, consent category and default parameters."""
    return {
        "rules": [
            {
                "signal_key": rule.signal_key.value,
                "version": rule.version,
                "consent_category": rule.consent_category.value,
                "description": rule.description,
                "default_parameters": dict(rule.default_parameters),
            }
            for rule in SIGNAL_RULES.values()
        ]
    }


@router.post("/compute", response_model=dict)
async def compute_batch(
    request: ComputeBatchRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    """Keys without consent are skipped, never reported as errors."""
    time_range = _time_range(request.start, request.end)
    result = SignalComputationEngine(db).compute_for_user(
        user_id,
        time_range,
        signal_keys=request.signal_keys,
        parameters=request.parameters,
        actor=user_id,
    )
    db.commit()
    return {
        "computed": result.computed,
        "reused": result.reused,
        "skipped": result.skipped,
        "errors": result.errors,
        "signal_ids": [s.signal_id for s in result.signals],
    }


@router.post("/compute/{signal_key}", response_model=dict)
async def compute_signal(
    signal_key: str,
    request: ComputeSignalRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    """
    403 when the backing consent category is not granted.
    `signal` is null when the rule found nothing to report.
    """
    time_range = _time_range(request.start, request.end)
    try:
        signal = SignalComputationEngine(db).compute_signals(
            user_id,
            signal_key,
            time_range,
            request.event_ids,
            parameters=request.parameters,
            actor=user_id,
        )
        db.commit()
    except RegulationEngineError as e:
        db.rollback()
        raise http_error(e)
    return {"signal_id": signal.signal_id if signal else None, "status": signal.status.value if signal else None}


# =============================================================================
# TRANSPARENCY (testing mode only)
# =============================================================================

@router.get("", response_model=dict)
async def list_candidate_signals(
    signal_key: Optional[List[str]] = Query(None),
    status: Optional[SignalStatus] = Query(SignalStatus.CANDIDATE),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    if not config.SIGNAL_TESTING_MODE:
        raise HTTPException(status_code=404, detail="Not found")
    try:
        signals = SignalComputationEngine(db).list_candidate_signals(
            user_id, signal_keys=signal_key, status=status, limit=limit, offset=offset
        )
    except RegulationEngineError as e:
        raise http_error(e)
    return {"signals": [_signal_to_dict(s) for s in signals], "count": len(signals)}


@router.get("/audit", response_model=dict)
async def get_audit_trail(
    signal_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    entries = SignalLifecycleManager(db).audit_trail(user_id, signal_id=signal_id, limit=limit)
    return {"entries": [_audit_to_dict(e) for e in entries], "count": len(entries)}


@router.get("/{signal_id}", response_model=dict)
async def get_candidate_signal(
    signal_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    if not config.SIGNAL_TESTING_MODE:
        raise HTTPException(status_code=404, detail="Not found")
    signal = SignalComputationEngine(db).get_signal(user_id, signal_id)
    if signal is None:
        raise HTTPException(status_code=404, detail="Candidate signal not found")
    return _signal_to_dict(signal)


# =============================================================================
# DELETION
# =============================================================================

@router.delete("/{signal_id}", response_model=dict)
async def delete_signal(
    signal_id: str,
    request: Optional[DeleteSignalRequest] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    """Soft delete; the row stays for the audit trail until retention purges it."""
    try:
        signal = SignalLifecycleManager(db).soft_delete(
            signal_id,
            user_id=user_id,
            actor=user_id,
            reason=request.reason if request else None,
        )
        db.commit()
    except RegulationEngineError as e:
        db.rollback()
        raise http_error(e)
    return {"success": True, "signal_id": signal.signal_id, "status": signal.status.value}
