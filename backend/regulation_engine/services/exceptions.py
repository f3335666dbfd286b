"""
Regulation Engine - Error Taxonomy

Every failure the engine reports to a caller is one of these.
Routers translate them to HTTP status codes; services never swallow them.

Hierarchy:
    RegulationEngineError
      ConsentDenied          - computation attempted without an active grant
      InvalidProvenance      - empty, dangling or out-of-range source events
      UnknownSignalKey       - closed-set violation (signal keys)
      UnknownPresetId        - closed-set violation (presets)
      UnknownEventType       - closed-set violation (event types)
      UnknownConsentCategory - closed-set violation (consent categories)
      InvalidParameter       - tunable parameter key/value rejected
      PresetConflict         - revert/apply would clobber manual edits
      StaleWrite             - concurrent RegulationState modification
      ScopeNotPermitted      - scope not resolved for the user
      NotFound               - referenced record does not exist for the user
"""
from typing import Any, List, Optional


class RegulationEngineError(Exception):
    """
    Base class for engine errors. Never raised directly.

    Attributes:
        message: Human-readable description, always non-empty.
        field_name: Offending field, or empty string when not field-local.
        value: Offending value, if any.
    """

    def __init__(self, message: str, field_name: str = "", value: Any = None):
        if not message:
            raise ValueError("RegulationEngineError: message must be non-empty")
        super().__init__(message)
        self.message = message
        self.field_name = field_name
        self.value = value

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(field_name={self.field_name!r}, "
            f"value={self.value!r}, message={self.message!r})"
        )


class ConsentDenied(RegulationEngineError):
    """Raised when a computation runs for a category without an active grant."""

    def __init__(self, user_id: str, category: str):
        super().__init__(
            f"No active consent for category '{category}'",
            field_name="category",
            value=category,
        )
        self.user_id = user_id
        self.category = category


class InvalidProvenance(RegulationEngineError):
    """Raised when a signal's backing event set is empty or dangling."""

    def __init__(self, message: str, event_ids: Optional[List[str]] = None):
        super().__init__(message, field_name="provenance_event_ids", value=event_ids or [])
        self.event_ids = event_ids or []


class UnknownSignalKey(RegulationEngineError):
    def __init__(self, signal_key: Any):
        super().__init__(f"Unknown signal key: {signal_key!r}", field_name="signal_key", value=signal_key)


class UnknownPresetId(RegulationEngineError):
    def __init__(self, preset_id: Any):
        super().__init__(f"Unknown preset id: {preset_id!r}", field_name="preset_id", value=preset_id)


class UnknownEventType(RegulationEngineError):
    def __init__(self, event_type: Any, reason: str = "not a recordable event type"):
        super().__init__(f"Unknown event type {event_type!r}: {reason}", field_name="event_type", value=event_type)


class InvalidParameter(RegulationEngineError):
    def __init__(self, key: str, value: Any, constraint: str):
        super().__init__(
            f"Parameter '{key}' violates constraint '{constraint}': got {value!r}",
            field_name=key,
            value=value,
        )
        self.constraint = constraint


class PresetConflict(RegulationEngineError):
    """
    Raised when a preset operation would overwrite something the user chose.

    `parameters` lists the keys responsible so the caller can show them.
    """

    def __init__(self, message: str, parameters: Optional[List[str]] = None, application_id: Optional[str] = None):
        super().__init__(message, field_name="parameters", value=parameters or [])
        self.parameters = parameters or []
        self.application_id = application_id


class StaleWrite(RegulationEngineError):
    """Raised when a RegulationState changed underneath a read-modify-write."""

    def __init__(self, user_id: str, scope_id: Optional[str]):
        super().__init__(
            f"Regulation state for user {user_id} scope {scope_id or 'global'} was modified concurrently",
            field_name="version",
        )
        self.user_id = user_id
        self.scope_id = scope_id


class ScopeNotPermitted(RegulationEngineError):
    def __init__(self, user_id: str, scope_id: str):
        super().__init__(f"Scope {scope_id} is not available to this user", field_name="scope_id", value=scope_id)
        self.user_id = user_id


class NotFound(RegulationEngineError):
    def __init__(self, resource: str, resource_id: Any):
        super().__init__(f"{resource} {resource_id} not found", field_name="id", value=resource_id)
        self.resource = resource


class UnknownConsentCategory(RegulationEngineError):
    def __init__(self, category: Any):
        super().__init__(f"Unknown consent category: {category!r}", field_name="category", value=category)
