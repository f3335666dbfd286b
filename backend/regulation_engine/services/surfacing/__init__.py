"""
Surfacing - ephemeral, explainable active signals.
"""
from .definitions import DEFAULT_SIGNAL_DEFINITIONS, SignalDefinitionRegistry, parse_active_key
from .detectors import DETECTORS, Detection
from .surfacer import ActiveSignalSurfacer, EvaluationOutcome
from .scheduler import SurfacerScheduler

__all__ = [
    "DEFAULT_SIGNAL_DEFINITIONS",
    "SignalDefinitionRegistry",
    "parse_active_key",
    "DETECTORS",
    "Detection",
    "ActiveSignalSurfacer",
    "EvaluationOutcome",
    "SurfacerScheduler",
]
