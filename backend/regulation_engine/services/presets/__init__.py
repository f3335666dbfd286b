"""
Presets - reversible parameter bundles.
"""
from .catalog import PRESET_CATALOG, get_preset, list_presets, parse_preset_id
from .preset_service import PresetService

__all__ = ["PRESET_CATALOG", "get_preset", "list_presets", "parse_preset_id", "PresetService"]
