"""
Regulation API Routes

Trust score, derived strictness level and the regulation event history.
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import get_current_user_id
from ..database import get_db
from ..services.exceptions import RegulationEngineError
from ..services.regulation import (
    LEVEL_CONFIG,
    ParameterStore,
    RECORDABLE_EVENT_TYPES,
    ScopeResolver,
    TrustStateMachine,
)
from .dependencies import get_scope_resolver
from .errors import http_error


router = APIRouter(prefix="/regulation", tags=["regulation"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class RecordEventRequest(BaseModel):
    event_type: str = Field(..., description="Non-derivative regulation event type")
    severity: int = Field(default=1, description="1 (minor) to 5 (major)")
    scope_id: Optional[str] = Field(None, description="Project/goal scope; null means global")
    metadata: Optional[Dict[str, Any]] = None


def _event_to_dict(event) -> dict:
    return {
        "id": event.id,
        "sequence": event.sequence,
        "event_type": event.event_type.value,
        "severity": event.severity,
        "impact_on_trust": event.impact_on_trust,
        "trust_score_after": event.trust_score_after,
        "metadata": event.event_metadata or {},
        "scope_id": event.scope_id,
        "created_at": event.created_at,
    }


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("/state", response_model=dict)
async def get_regulation_state(
    scope_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    scope_resolver: Optional[ScopeResolver] = Depends(get_scope_resolver),
):
    try:
        return TrustStateMachine(db, scope_resolver=scope_resolver).describe_state(user_id, scope_id)
    except RegulationEngineError as e:
        raise http_error(e)


@router.post("/events", response_model=dict)
async def record_event(
    request: RecordEventRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    scope_resolver: Optional[ScopeResolver] = Depends(get_scope_resolver),
):
    """
    Append a regulation event and return the new state.
    409 on a stale write; the caller retries.
    """
    machine = TrustStateMachine(db, scope_resolver=scope_resolver)
    try:
        machine.record_event(
            user_id,
            request.event_type,
            severity=request.severity,
            scope_id=request.scope_id,
            metadata=request.metadata,
        )
        return machine.describe_state(user_id, request.scope_id)
    except RegulationEngineError as e:
        raise http_error(e)


@router.get("/events", response_model=dict)
async def list_regulation_events(
    scope_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    scope_resolver: Optional[ScopeResolver] = Depends(get_scope_resolver),
):
    try:
        events = TrustStateMachine(db, scope_resolver=scope_resolver).list_events(user_id, scope_id, limit=limit)
    except RegulationEngineError as e:
        raise http_error(e)
    return {"events": [_event_to_dict(e) for e in events], "count": len(events)}


@router.get("/levels", response_model=dict)
async def get_levels(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    """Level display config plus the user's effective lower-bound thresholds."""
    thresholds = ParameterStore(db).thresholds(user_id)
    levels: List[dict] = []
    for level, config in sorted(LEVEL_CONFIG.items()):
        levels.append({
            "level": level,
            "name": config["name"],
            "description": config["description"],
            "min_trust_score": thresholds.get(level, 0),
        })
    return {
        "levels": levels,
        "event_types": [t.value for t in RECORDABLE_EVENT_TYPES],
    }
