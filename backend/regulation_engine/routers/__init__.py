"""Regulation Engine - API Routers"""
from .consent import router as consent_router
from .behavior_events import router as behavior_events_router
from .signals import router as signals_router
from .active_signals import router as active_signals_router
from .regulation import router as regulation_router
from .parameters import router as parameters_router
from .presets import router as presets_router
from .internal import router as internal_router

__all__ = [
    "consent_router",
    "behavior_events_router",
    "signals_router",
    "active_signals_router",
    "regulation_router",
    "parameters_router",
    "presets_router",
    "internal_router",
]
