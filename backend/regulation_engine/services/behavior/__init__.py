"""
Behavior - ingestion store for upstream user actions.
"""
from .event_log import BehaviorEventLog, parse_event_type, EDITABLE_FIELDS

__all__ = ["BehaviorEventLog", "parse_event_type", "EDITABLE_FIELDS"]
