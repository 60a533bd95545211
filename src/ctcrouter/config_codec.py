"""
Session configuration codec for the CTC router.

Turns raw form values into the normalized SessionConfig sent to the audio
engine, turns a SessionConfig back into form values, and converts it to and
from the JSON text kept in persistent storage.
"""

import json
import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, Mapping, Optional, Tuple

from .geometry import resolve_geometry
from .presets import DISPLAY_SCALE, FIELD_DEFAULTS, field_value

logger = logging.getLogger(__name__)

Point = Tuple[float, float]


class ConfigFormatError(ValueError):
    """Raised when persisted configuration text cannot be decoded."""
    pass


@dataclass(frozen=True)
class SessionConfig:
    """Normalized configuration handed to the audio engine at session start."""
    input_id: str
    output_id: str
    latency: int
    left_speaker: Point
    right_speaker: Point
    left_ear: Point
    right_ear: Point
    master_gain: float
    attenuation: float
    lowpass_cutoff_min: float
    highpass_cutoff: float
    lowshelf_cutoff: float
    lowshelf_gain: float
    wet_dry: float
    temperature: float

    @property
    def interaural_distance(self) -> float:
        return abs(self.right_ear[0] - self.left_ear[0])

    @property
    def listener(self) -> Point:
        return (
            (self.left_ear[0] + self.right_ear[0]) / 2,
            (self.left_ear[1] + self.right_ear[1]) / 2,
        )

    def with_devices(self, input_id: str, output_id: str) -> "SessionConfig":
        return replace(self, input_id=input_id, output_id=output_id)

    def to_engine_payload(self) -> Dict[str, Any]:
        """Arguments of the engine's start command, in its camelCase layout."""
        return {
            "inputId": self.input_id,
            "outputId": self.output_id,
            "latency": self.latency,
            "position": {
                "leftSpeaker": list(self.left_speaker),
                "rightSpeaker": list(self.right_speaker),
                "leftEar": list(self.left_ear),
                "rightEar": list(self.right_ear),
            },
            "masterGain": self.master_gain,
            "attenuation": self.attenuation,
            "lowpassCutoffMin": self.lowpass_cutoff_min,
            "highpassCutoff": self.highpass_cutoff,
            "lowshelfCutoff": self.lowshelf_cutoff,
            "lowshelfGain": self.lowshelf_gain,
            "wetDry": self.wet_dry,
            "temperature": self.temperature,
        }

    @classmethod
    def from_engine_payload(cls, payload: Mapping[str, Any]) -> "SessionConfig":
        """Build a SessionConfig from the camelCase layout, validating every field."""
        if not isinstance(payload, Mapping):
            raise ConfigFormatError("Configuration must be a JSON object")
        position = payload.get("position")
        if not isinstance(position, Mapping):
            raise ConfigFormatError("Missing or invalid 'position' object")

        return cls(
            input_id=_require_str(payload, "inputId"),
            output_id=_require_str(payload, "outputId"),
            latency=int(_require_number(payload, "latency")),
            left_speaker=_require_point(position, "leftSpeaker"),
            right_speaker=_require_point(position, "rightSpeaker"),
            left_ear=_require_point(position, "leftEar"),
            right_ear=_require_point(position, "rightEar"),
            master_gain=_require_number(payload, "masterGain"),
            attenuation=_require_number(payload, "attenuation"),
            lowpass_cutoff_min=_require_number(payload, "lowpassCutoffMin"),
            highpass_cutoff=_require_number(payload, "highpassCutoff"),
            lowshelf_cutoff=_require_number(payload, "lowshelfCutoff"),
            lowshelf_gain=_require_number(payload, "lowshelfGain"),
            wet_dry=_require_number(payload, "wetDry"),
            temperature=_require_number(payload, "temperature"),
        )


def _require_str(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise ConfigFormatError(f"'{key}' must be a string")
    return value


def _require_number(data: Mapping[str, Any], key: str) -> float:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigFormatError(f"'{key}' must be a number")
    return value


def _require_point(data: Mapping[str, Any], key: str) -> Point:
    value = data.get(key)
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise ConfigFormatError(f"'{key}' must be an [x, y] pair")
    x, y = value
    for v in (x, y):
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ConfigFormatError(f"'{key}' must contain numbers")
    return (x, y)


def _scaled(raw: Mapping[str, Any], name: str) -> float:
    """Field value converted to engine units, clamped where the table says so."""
    field = FIELD_DEFAULTS[name]
    value = field_value(raw, name) / field["scale"]
    bounds = field.get("clamp")
    if bounds is not None:
        low, high = bounds
        clamped = min(max(value, low), high)
        if clamped != value:
            logger.debug(f"Clamped {name} from {value} to {clamped}")
        value = clamped
    return value


def _device(raw: Mapping[str, Any], name: str, fallback: str) -> str:
    value = raw.get(name)
    if isinstance(value, str) and value:
        return value
    return fallback


def encode(raw: Optional[Mapping[str, Any]],
           default_input: str = "",
           default_output: str = "") -> SessionConfig:
    """
    Derive a SessionConfig from raw form values.

    Never raises: absent or non-numeric values resolve to the defaults table,
    absent device selections resolve to the given catalog defaults.
    """
    raw = raw or {}
    geometry = resolve_geometry(raw)

    return SessionConfig(
        input_id=_device(raw, "input_device", default_input),
        output_id=_device(raw, "output_device", default_output),
        latency=int(round(field_value(raw, "master_latency"))),
        left_speaker=geometry.left_speaker,
        right_speaker=geometry.right_speaker,
        left_ear=geometry.left_ear,
        right_ear=geometry.right_ear,
        master_gain=_scaled(raw, "master_gain"),
        attenuation=_scaled(raw, "canceling_attenuation"),
        lowpass_cutoff_min=_scaled(raw, "lowpass_cutoff_min"),
        highpass_cutoff=_scaled(raw, "highpass_cutoff"),
        lowshelf_cutoff=_scaled(raw, "lowshelf_cutoff"),
        lowshelf_gain=_scaled(raw, "lowshelf_gain"),
        wet_dry=_scaled(raw, "wet_dry"),
        temperature=_scaled(raw, "temperature"),
    )


def _display(value: float) -> int:
    return int(round(value * DISPLAY_SCALE))


def decode(config: SessionConfig) -> Dict[str, Any]:
    """
    Raw form values for a SessionConfig.

    Coordinates and percentages are rounded to whole display units. The
    listener is recovered as the midpoint of the ears and the interaural
    distance as the absolute difference of the ear x coordinates.
    """
    listener_x, listener_y = config.listener
    return {
        "input_device": config.input_id,
        "output_device": config.output_id,
        "master_latency": config.latency,
        "listener_coord_x": _display(listener_x),
        "listener_coord_y": _display(listener_y),
        "speaker_coord_lx": _display(config.left_speaker[0]),
        "speaker_coord_ly": _display(config.left_speaker[1]),
        "speaker_coord_rx": _display(config.right_speaker[0]),
        "speaker_coord_ry": _display(config.right_speaker[1]),
        "interaural_distance": _display(config.interaural_distance),
        "master_gain": _display(config.master_gain),
        "canceling_attenuation": _display(config.attenuation),
        "lowpass_cutoff_min": config.lowpass_cutoff_min,
        "highpass_cutoff": config.highpass_cutoff,
        "lowshelf_cutoff": config.lowshelf_cutoff,
        "lowshelf_gain": config.lowshelf_gain,
        "wet_dry": _display(config.wet_dry),
        "temperature": config.temperature,
    }


def serialize(config: SessionConfig) -> str:
    """JSON text for persistent storage."""
    return json.dumps(config.to_engine_payload())


def deserialize(text: str) -> SessionConfig:
    """
    Parse persisted JSON text back into a SessionConfig.

    Raises:
        ConfigFormatError: if the text is not valid JSON or a field is missing or mistyped
    """
    try:
        payload = json.loads(text)
    except (TypeError, json.JSONDecodeError) as e:
        raise ConfigFormatError(f"Invalid configuration JSON: {e}")
    return SessionConfig.from_engine_payload(payload)
