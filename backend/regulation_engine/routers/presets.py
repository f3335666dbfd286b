"""
Preset API Routes

Preview -> apply -> (optionally) revert. Apply needs the preview_token from
a preview of the same delta, so a user never applies changes they did not
see.
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import get_current_user_id
from ..database import get_db
from ..services.exceptions import RegulationEngineError
from ..services.presets import PresetService, list_presets
from .errors import http_error


router = APIRouter(prefix="/presets", tags=["presets"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class ApplyPresetRequest(BaseModel):
    preview_token: str = Field(..., description="Token returned by the preview endpoint")
    notes: Optional[str] = Field(None, description="Free-form note stored with the application")


def _application_to_dict(application) -> dict:
    return {
        "application_id": application.id,
        "preset_id": application.preset_id.value,
        "applied_at": application.applied_at,
        "reverted_at": application.reverted_at,
        "changes_made": {
            key: {"old": entry["old"], "new": entry["new"], "was_set": entry["was_set"]}
            for key, entry in (application.changes_made or {}).items()
        },
        "edited_manually": application.edited_manually,
        "manually_edited_parameters": list(application.manually_edited_parameters or []),
        "notes": application.notes,
    }


# =============================================================================
# CATALOG / PREVIEW
# =============================================================================

@router.get("", response_model=dict)
async def get_presets(user_id: str = Depends(get_current_user_id)):
    return {"presets": list_presets()}


@router.get("/active", response_model=dict)
async def get_active_preset(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    application = PresetService(db).get_active_preset(user_id)
    return {"active": _application_to_dict(application) if application else None}


@router.get("/applications", response_model=dict)
async def list_applications(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    applications = PresetService(db).list_applications(user_id)
    return {"applications": [_application_to_dict(a) for a in applications]}


@router.post("/{preset_id}/preview", response_model=dict)
async def preview_preset(
    preset_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    """Only parameters whose value would actually change are listed."""
    try:
        preview = PresetService(db).preview_preset(user_id, preset_id)
    except RegulationEngineError as e:
        raise http_error(e)
    return {
        "preset_id": preview.preset_id,
        "changes": [{"parameter": c.parameter, "old": c.old, "new": c.new} for c in preview.changes],
        "preview_token": preview.preview_token,
    }


# =============================================================================
# APPLY / REVERT
# =============================================================================

@router.post("/{preset_id}/apply", response_model=dict)
async def apply_preset(
    preset_id: str,
    request: ApplyPresetRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    """409 when the preview is stale or another preset is still live."""
    try:
        application = PresetService(db).apply_preset(
            user_id, preset_id, request.preview_token, notes=request.notes
        )
    except RegulationEngineError as e:
        raise http_error(e)
    return _application_to_dict(application)


@router.post("/applications/{application_id}/revert", response_model=dict)
async def revert_preset(
    application_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    """409 lists the parameters changed by hand since the preset was applied."""
    try:
        application = PresetService(db).revert_preset(user_id, application_id)
    except RegulationEngineError as e:
        raise http_error(e)
    return _application_to_dict(application)
