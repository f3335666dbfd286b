"""
Preset Catalog

Named bundles of target parameter values. A preset only lists the keys it
cares about; everything else is left as the user has it.
"""
from typing import Any, Dict, List, Union

from ...models.db_models import ActiveSignalKey, PresetId
from ..exceptions import UnknownPresetId


PRESET_CATALOG: Dict[PresetId, Dict[str, Any]] = {
    PresetId.GENTLE_START: {
        "name": "Gentle Start",
        "description": "Smaller penalties and lower level thresholds while getting started.",
        "parameters": {
            "trust_impact.deadline_missed": -3,
            "trust_impact.task_ignored": -1,
            "trust_impact.session_drift": -2,
            "level_threshold.1": 70,
            "level_threshold.2": 50,
            "level_threshold.3": 30,
            "level_threshold.4": 10,
        },
    },
    PresetId.DEEP_FOCUS: {
        "name": "Deep Focus",
        "description": "Rewards completed focus sessions and keeps focus-related signals on.",
        "parameters": {
            "trust_impact.focus_completed": 7,
            "trust_impact.session_drift": -4,
            "trust_impact.session_abandoned": -5,
            "signal_enabled.rapid_context_switching": True,
            "signal_enabled.fragmented_focus_session": True,
            "signal_enabled.runaway_scope_expansion": False,
            "signal_enabled.high_task_intake_without_completion": False,
        },
    },
    PresetId.QUIET_SIGNALS: {
        "name": "Quiet Signals",
        "description": "Turns every surfaced signal off. Trust settings are untouched.",
        "parameters": {f"signal_enabled.{key.value}": False for key in ActiveSignalKey},
    },
    PresetId.STEADY_ACCOUNTABILITY: {
        "name": "Steady Accountability",
        "description": "Larger swings for deadlines and wins, with higher level thresholds.",
        "parameters": {
            "trust_impact.deadline_missed": -8,
            "trust_impact.task_completed": 4,
            "trust_impact.consistency_win": 8,
            "level_threshold.1": 85,
            "level_threshold.2": 65,
            "level_threshold.3": 45,
            "level_threshold.4": 25,
        },
    },
}


def parse_preset_id(preset_id: Union[str, PresetId]) -> PresetId:
    try:
        return PresetId(preset_id)
    except ValueError:
        raise UnknownPresetId(preset_id)


def get_preset(preset_id: Union[str, PresetId]) -> Dict[str, Any]:
    return PRESET_CATALOG[parse_preset_id(preset_id)]


def list_presets() -> List[Dict[str, Any]]:
    return [
        {
            "preset_id": preset_id.value,
            "name": preset["name"],
            "description": preset["description"],
            "parameters": dict(preset["parameters"]),
        }
        for preset_id, preset in PRESET_CATALOG.items()
    ]
