"""
Consent and Safe Mode API Routes

Per-category opt-in for behavior analysis, and the Safe Mode brake that
hides every surfaced signal.
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import get_current_user_id
from ..database import get_db
from ..services.consent import ConsentRegistry, SafeModeService
from ..services.exceptions import RegulationEngineError
from .errors import http_error


router = APIRouter(prefix="/consent", tags=["consent"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class SetConsentRequest(BaseModel):
    """Grant or revoke one category."""
    enabled: bool = Field(..., description="True to grant, False to revoke")


class SetSafeModeRequest(BaseModel):
    enabled: bool = Field(..., description="Turn Safe Mode on or off")
    reason: Optional[str] = Field(None, description="Optional note recorded on activation")


def _safe_mode_to_dict(state, user_id: str) -> dict:
    if state is None:
        return {"user_id": user_id, "enabled": False, "enabled_at": None, "activation_count": 0}
    return {
        "user_id": state.user_id,
        "enabled": state.is_enabled,
        "enabled_at": state.enabled_at,
        "disabled_at": state.disabled_at,
        "activation_reason": state.activation_reason,
        "activation_count": state.activation_count,
    }


# =============================================================================
# SAFE MODE
# =============================================================================

@router.get("/safe-mode", response_model=dict)
async def get_safe_mode(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    return _safe_mode_to_dict(SafeModeService(db).get_state(user_id), user_id)


@router.put("/safe-mode", response_model=dict)
async def set_safe_mode(
    request: SetSafeModeRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    """Safe Mode on hides all active signals until it is turned off."""
    state = SafeModeService(db).set_enabled(user_id, request.enabled, reason=request.reason)
    db.commit()
    return _safe_mode_to_dict(state, user_id)


# =============================================================================
# CONSENT FLAGS
# =============================================================================

@router.get("", response_model=dict)
async def list_consents(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    """Every category. Categories never touched report enabled=False."""
    return {"user_id": user_id, "consents": ConsentRegistry(db).list_consents(user_id)}


@router.put("/{category}", response_model=dict)
async def set_consent(
    category: str,
    request: SetConsentRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    """
    Revoking invalidates every candidate signal that depended on the category.
    Setting a flag to its current value is a no-op.
    """
    try:
        flag = ConsentRegistry(db).set_consent(user_id, category, request.enabled)
        db.commit()
    except RegulationEngineError as e:
        db.rollback()
        raise http_error(e)

    return {
        "category": flag.category.value,
        "enabled": flag.is_enabled,
        "granted_at": flag.granted_at,
        "revoked_at": flag.revoked_at,
    }
