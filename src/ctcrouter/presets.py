"""
Centralized configuration defaults for the CTC router - single source of truth.

Every raw form field the operator can edit is listed here together with the
default used when the field is missing or not a number, and the divisor that
maps the displayed value onto the unit the audio engine expects.
"""

import logging
import math
from typing import Dict, List, Any, Mapping, Optional

logger = logging.getLogger(__name__)

# Divisor between display units (centimetres, percent) and engine units
DISPLAY_SCALE = 100

# Raw form fields: default display value and raw -> engine divisor
FIELD_DEFAULTS = {
    "master_latency": {
        "label": "Latency",
        "unit": "ms",
        "default": 100,
        "scale": 1,
        "integer": True,
    },
    "listener_coord_x": {
        "label": "Listener X",
        "unit": "cm",
        "default": 0,
        "scale": DISPLAY_SCALE,
    },
    "listener_coord_y": {
        "label": "Listener Y",
        "unit": "cm",
        "default": 0,
        "scale": DISPLAY_SCALE,
    },
    "speaker_coord_lx": {
        "label": "Left speaker X",
        "unit": "cm",
        "default": 60,
        "scale": DISPLAY_SCALE,
    },
    "speaker_coord_ly": {
        "label": "Left speaker Y",
        "unit": "cm",
        "default": 60,
        "scale": DISPLAY_SCALE,
    },
    "speaker_coord_rx": {
        "label": "Right speaker X",
        "unit": "cm",
        "default": 60,
        "scale": DISPLAY_SCALE,
    },
    "speaker_coord_ry": {
        "label": "Right speaker Y",
        "unit": "cm",
        "default": 60,
        "scale": DISPLAY_SCALE,
    },
    "interaural_distance": {
        "label": "Interaural distance",
        "unit": "cm",
        "default": 16,
        "scale": DISPLAY_SCALE,
    },
    "master_gain": {
        "label": "Master gain",
        "unit": "%",
        "default": 75,
        "scale": DISPLAY_SCALE,
        "clamp": (0.0, 1.0),
    },
    "canceling_attenuation": {
        "label": "Cancellation attenuation",
        "unit": "%",
        "default": 70,
        "scale": DISPLAY_SCALE,
        "clamp": (0.0, 1.0),
    },
    "lowpass_cutoff_min": {
        "label": "Minimum low-pass cutoff",
        "unit": "Hz",
        "default": 800,
        "scale": 1,
    },
    "highpass_cutoff": {
        "label": "High-pass cutoff",
        "unit": "Hz",
        "default": 50,
        "scale": 1,
    },
    "lowshelf_cutoff": {
        "label": "Low-shelf cutoff",
        "unit": "Hz",
        "default": 200,
        "scale": 1,
    },
    "lowshelf_gain": {
        "label": "Low-shelf gain",
        "unit": "dB",
        "default": 3,
        "scale": 1,
    },
    "wet_dry": {
        "label": "Wet/dry mix",
        "unit": "%",
        "default": 100,
        "scale": DISPLAY_SCALE,
        "clamp": (0.0, 1.0),
    },
    "temperature": {
        "label": "Temperature",
        "unit": "°C",
        "default": 20,
        "scale": 1,
    },
}

# Device selectors are strings, not numbers
DEVICE_FIELDS = ("input_device", "output_device")

# Fields that describe the position figure
POSITION_FIELDS = (
    "listener_coord_x",
    "listener_coord_y",
    "speaker_coord_lx",
    "speaker_coord_ly",
    "speaker_coord_rx",
    "speaker_coord_ry",
    "interaural_distance",
)


def list_field_defaults() -> List[Dict[str, Any]]:
    """Get list of editable fields with their defaults and units."""
    return [{
        "key": name,
        "label": field["label"],
        "unit": field["unit"],
        "default": field["default"],
        "scale": field["scale"],
    } for name, field in FIELD_DEFAULTS.items()]


def get_field_default(name: str):
    """Get the display default of a field by name."""
    if name not in FIELD_DEFAULTS:
        raise ValueError(f"Unknown field: {name}. Available: {list(FIELD_DEFAULTS.keys())}")
    return FIELD_DEFAULTS[name]["default"]


def parse_number(value) -> Optional[float]:
    """Convert a raw form value to a finite float, or None if it is not one."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def field_value(raw: Mapping[str, Any], name: str) -> float:
    """Display value of a field, falling back to its default when absent or invalid."""
    number = parse_number(raw.get(name))
    if number is None:
        if raw.get(name) not in (None, ""):
            logger.debug(f"Invalid value for {name}: {raw.get(name)!r}, using default")
        return get_field_default(name)
    return number


def default_form() -> Dict[str, Any]:
    """Raw form values with every field at its default."""
    form = {name: field["default"] for name, field in FIELD_DEFAULTS.items()}
    for name in DEVICE_FIELDS:
        form[name] = ""
    return form
