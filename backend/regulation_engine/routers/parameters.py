"""
Tunable Parameter API Routes

Manual edits of trust impacts, level thresholds and per-user signal
toggles. A manual edit of a key touched by a live preset marks that
preset application as edited, which blocks its revert.
"""
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import get_current_user_id
from ..database import get_db
from ..services.exceptions import RegulationEngineError
from ..services.regulation import ParameterStore, TrustStateMachine, is_threshold_key
from .errors import http_error


router = APIRouter(prefix="/parameters", tags=["parameters"])


class SetParameterRequest(BaseModel):
    value: Any = Field(..., description="int for trust_impact/level_threshold, bool for signal_enabled")


def _apply(db: Session, user_id: str, key: str, change_fn) -> dict:
    try:
        change = change_fn()
        if is_threshold_key(key):
            TrustStateMachine(db).rederive_levels(user_id)
        db.commit()
    except RegulationEngineError as e:
        db.rollback()
        raise http_error(e)
    return {"parameter": change.parameter, **change.to_dict()}


@router.get("", response_model=dict)
async def get_parameters(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    """Effective value, default and origin of every parameter."""
    return {"parameters": ParameterStore(db).effective_all(user_id)}


@router.put("/{key}", response_model=dict)
async def set_parameter(
    key: str,
    request: SetParameterRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    """Threshold changes re-derive every level of the user in the same commit."""
    store = ParameterStore(db)
    return _apply(db, user_id, key, lambda: store.set_parameter(user_id, key, request.value))


@router.delete("/{key}", response_model=dict)
async def reset_parameter(
    key: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    store = ParameterStore(db)
    return _apply(db, user_id, key, lambda: store.reset_parameter(user_id, key))
