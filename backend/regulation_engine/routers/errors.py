"""
Engine error -> HTTP status translation shared by every router.
"""
from fastapi import HTTPException, status

from ..services.exceptions import (
    ConsentDenied,
    NotFound,
    PresetConflict,
    RegulationEngineError,
    ScopeNotPermitted,
    StaleWrite,
)


def http_error(error: RegulationEngineError) -> HTTPException:
    """
    400 - closed-set violations, bad parameters, bad provenance
    403 - consent or scope not granted
    404 - record does not exist for the user
    409 - preset conflicts and stale writes (caller may retry)
    """
    if isinstance(error, NotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=error.message)
    if isinstance(error, (ConsentDenied, ScopeNotPermitted)):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=error.message)
    if isinstance(error, PresetConflict):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": error.message,
                "parameters": error.parameters,
                "application_id": error.application_id,
            },
        )
    if isinstance(error, StaleWrite):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=error.message)
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"message": error.message, "field": error.field_name},
    )
