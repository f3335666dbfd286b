"""
Active Signal API Routes

Short-lived, explainable signals for the current session. Nothing here is
ever an error for missing consent: the signal is simply absent.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import get_current_user_id
from ..database import get_db
from ..services.exceptions import RegulationEngineError
from ..services.surfacing import ActiveSignalSurfacer, SignalDefinitionRegistry
from .errors import http_error


router = APIRouter(prefix="/active-signals", tags=["active-signals"])


class EvaluateRequest(BaseModel):
    session_id: Optional[str] = Field(None, description="Browser/app session the signals belong to")


def _active_signal_to_dict(signal) -> dict:
    return {
        "id": signal.id,
        "signal_key": signal.signal_key.value,
        "session_id": signal.session_id,
        "title": signal.title,
        "description": signal.description,
        "explanation_why": signal.explanation_why,
        "context_data": signal.context_data or {},
        "intensity": signal.intensity.value,
        "detected_at": signal.detected_at,
        "expires_at": signal.expires_at,
        "dismissed_at": signal.dismissed_at,
    }


def _definition_to_dict(definition) -> dict:
    return {
        "signal_key": definition.signal_key.value,
        "version": definition.version,
        "human_label": definition.human_label,
        "explanation_text": definition.explanation_text,
        "consent_category": definition.consent_category.value,
        "rule_parameters": definition.rule_parameters or {},
        "expires_in_minutes": definition.expires_in_minutes,
        "is_active": definition.is_active,
    }


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("", response_model=dict)
async def get_active_signals(
    session_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    """Live signals only; empty while Safe Mode is on."""
    signals = ActiveSignalSurfacer(db).get_active_signals(user_id, session_id=session_id)
    return {"signals": [_active_signal_to_dict(s) for s in signals], "count": len(signals)}


@router.post("/evaluate", response_model=dict)
async def evaluate(
    request: EvaluateRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    """Run the active definitions now and return what is live afterwards."""
    signals = ActiveSignalSurfacer(db).evaluate(user_id, session_id=request.session_id)
    db.commit()
    return {"signals": [_active_signal_to_dict(s) for s in signals], "count": len(signals)}


@router.get("/definitions", response_model=dict)
async def list_definitions(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    definitions = SignalDefinitionRegistry(db).list_definitions(active_only=False)
    return {"definitions": [_definition_to_dict(d) for d in definitions]}


@router.post("/{signal_id}/dismiss", response_model=dict)
async def dismiss_signal(
    signal_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    try:
        signal = ActiveSignalSurfacer(db).dismiss(user_id, signal_id)
        db.commit()
    except RegulationEngineError as e:
        db.rollback()
        raise http_error(e)
    return {"success": True, "id": signal.id, "dismissed_at": signal.dismissed_at}
