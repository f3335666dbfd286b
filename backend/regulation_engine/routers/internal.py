"""
Scheduler API Routes

Internal endpoints for system-automatic jobs:
surfacer pass, active signal sweep, retention purge, invalidation retry
and signal definition administration.
"""
from datetime import datetime
from typing import Callable, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from .. import config
from ..auth import verify_internal_key
from ..database import get_db
from ..services.exceptions import RegulationEngineError
from ..services.lifecycle import InvalidationDispatcher, SignalLifecycleManager
from ..services.surfacing import ActiveSignalSurfacer, SignalDefinitionRegistry, SurfacerScheduler
from .dependencies import get_invalidation_dispatcher, get_session_factory
from .errors import http_error


router = APIRouter(prefix="/internal", tags=["scheduler"])


class SurfacerPassRequest(BaseModel):
    """Omit user_ids to evaluate every user active in the last 24 hours."""
    user_ids: Optional[List[str]] = None


class DefinitionActiveRequest(BaseModel):
    is_active: bool


# =============================================================================
# SCHEDULER ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/surfacer-pass", response_model=dict)
async def run_surfacer_pass(
    request: Optional[SurfacerPassRequest] = None,
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    _: bool = Depends(verify_internal_key),
):
    """
    Evaluate active signal definitions for many users concurrently.
    Slow users time out without holding up the rest.
    """
    scheduler = SurfacerScheduler(session_factory=session_factory)
    return scheduler.run_pass(user_ids=request.user_ids if request else None)


@router.post("/sweep-active-signals", response_model=dict)
async def sweep_active_signals(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """Hard-delete expired and dismissed active signals."""
    deleted = ActiveSignalSurfacer(db).sweep_expired()
    db.commit()
    return {
        "task": "sweep_active_signals",
        "run_date": datetime.utcnow().isoformat(),
        "deleted": deleted,
    }


@router.post("/purge-signals", response_model=dict)
async def purge_signals(
    retention_days: Optional[int] = Query(None, ge=0, description="Overrides SIGNAL_RETENTION_DAYS"),
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Hard-delete invalidated/deleted candidate signals past retention.
    No configured retention means nothing is purged.
    """
    horizon = retention_days if retention_days is not None else config.SIGNAL_RETENTION_DAYS
    purged = SignalLifecycleManager(db).purge_expired(horizon)
    db.commit()
    return {
        "task": "purge_signals",
        "run_date": datetime.utcnow().isoformat(),
        "retention_days": horizon,
        "purged": purged,
    }


@router.post("/invalidation-retry", response_model=dict)
async def retry_invalidations(
    dispatcher: InvalidationDispatcher = Depends(get_invalidation_dispatcher),
    _: bool = Depends(verify_internal_key),
):
    """Resubmit invalidation jobs that exhausted their attempts."""
    result = dispatcher.retry_failed()
    return {"task": "invalidation_retry", **result, **dispatcher.stats()}


# =============================================================================
# SIGNAL DEFINITIONS (ADMIN)
# =============================================================================

@router.post("/definitions/seed", response_model=dict)
async def seed_definitions(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    created = SignalDefinitionRegistry(db).seed_defaults()
    db.commit()
    return {"created": created}


@router.put("/definitions/{signal_key}", response_model=dict)
async def set_definition_active(
    signal_key: str,
    request: DefinitionActiveRequest,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    try:
        definition = SignalDefinitionRegistry(db).set_active(signal_key, request.is_active)
        db.commit()
    except RegulationEngineError as e:
        db.rollback()
        raise http_error(e)
    return {"signal_key": definition.signal_key.value, "is_active": definition.is_active}
