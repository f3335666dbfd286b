"""
Behavior Event API Routes

Ingestion of upstream user actions. Edits and removals return immediately;
dependent candidate signals are invalidated in the background.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import get_current_user_id
from ..database import get_db
from ..services.behavior import BehaviorEventLog
from ..services.exceptions import RegulationEngineError
from ..services.lifecycle import InvalidationDispatcher
from .dependencies import get_invalidation_dispatcher
from .errors import http_error


router = APIRouter(prefix="/behavior-events", tags=["behavior-events"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class AppendEventRequest(BaseModel):
    event_type: str = Field(..., description="One of the known behavior event types")
    occurred_at: datetime = Field(..., description="When the action happened (UTC)")
    severity: int = Field(default=1, description="1 (minor) to 5 (major)")
    scope_id: Optional[str] = Field(None, description="Project or goal the event belongs to")
    metadata: Optional[Dict[str, Any]] = Field(None, description="Producer-specific details")
    event_id: Optional[str] = Field(None, description="Producer id; makes delivery idempotent")


class EditEventRequest(BaseModel):
    """Only the provided fields change."""
    occurred_at: Optional[datetime] = None
    severity: Optional[int] = None
    scope_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


def _event_to_dict(event) -> dict:
    return {
        "event_id": event.id,
        "event_type": event.event_type.value,
        "severity": event.severity,
        "scope_id": event.scope_id,
        "occurred_at": event.occurred_at,
        "received_at": event.received_at,
        "metadata": event.event_metadata or {},
        "is_late": event.is_late,
        "revision": event.revision,
        "removed_at": event.removed_at,
    }


def _event_log(db: Session, dispatcher: InvalidationDispatcher) -> BehaviorEventLog:
    return BehaviorEventLog(db, dispatcher=dispatcher)


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("", response_model=dict)
async def append_event(
    request: AppendEventRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    dispatcher: InvalidationDispatcher = Depends(get_invalidation_dispatcher),
):
    try:
        event = _event_log(db, dispatcher).append(
            user_id,
            request.event_type,
            occurred_at=request.occurred_at,
            severity=request.severity,
            scope_id=request.scope_id,
            metadata=request.metadata,
            event_id=request.event_id,
        )
        db.commit()
    except RegulationEngineError as e:
        db.rollback()
        raise http_error(e)
    return _event_to_dict(event)


@router.get("", response_model=dict)
async def list_events(
    hours: int = Query(24, ge=1, le=24 * 90, description="Look-back window"),
    event_type: Optional[List[str]] = Query(None),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    try:
        events = BehaviorEventLog(db).recent_events(
            user_id,
            since=datetime.utcnow() - timedelta(hours=hours),
            event_types=event_type,
        )
    except RegulationEngineError as e:
        raise http_error(e)
    return {"events": [_event_to_dict(e) for e in events], "count": len(events)}


@router.patch("/{event_id}", response_model=dict)
async def edit_event(
    event_id: str,
    request: EditEventRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    dispatcher: InvalidationDispatcher = Depends(get_invalidation_dispatcher),
):
    changes = request.model_dump(exclude_unset=True)
    try:
        event = _event_log(db, dispatcher).edit_event(user_id, event_id, changes)
        db.commit()
    except RegulationEngineError as e:
        db.rollback()
        raise http_error(e)
    return _event_to_dict(event)


@router.delete("/{event_id}", response_model=dict)
async def remove_event(
    event_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    dispatcher: InvalidationDispatcher = Depends(get_invalidation_dispatcher),
):
    try:
        event = _event_log(db, dispatcher).remove_event(user_id, event_id)
        db.commit()
    except RegulationEngineError as e:
        db.rollback()
        raise http_error(e)
    return {"success": True, "event_id": event.id, "removed_at": event.removed_at}
