"""
Listener and speaker geometry for the CTC router.

Converts the raw positions entered by the operator (centimetres) into the
normalized coordinates the audio engine works with (metres), and derives the
ear positions from the listener position and the interaural distance.
"""

import logging
import math
from dataclasses import dataclass, asdict
from typing import Any, Dict, Mapping, Tuple

import numpy as np

from .presets import DISPLAY_SCALE, field_value

logger = logging.getLogger(__name__)

Point = Tuple[float, float]

# Upper bound of the head-shadow low-pass cutoff used by the engine
SHADOW_CUTOFF_MAX = 5000.0


@dataclass(frozen=True)
class Geometry:
    """Normalized 2-D layout: listener, both speakers and both ears."""
    listener: Point
    left_speaker: Point
    right_speaker: Point
    left_ear: Point
    right_ear: Point
    interaural_distance: float

    def to_dict(self) -> Dict[str, Any]:
        return {key: list(value) if isinstance(value, tuple) else value
                for key, value in asdict(self).items()}


def ear_positions(listener: Point, interaural_distance: float) -> Tuple[Point, Point]:
    """Left and right ear positions, symmetric around the listener along x."""
    half = interaural_distance / 2
    x, y = listener
    return (x - half, y), (x + half, y)


def resolve_geometry(raw: Mapping[str, Any]) -> Geometry:
    """
    Resolve raw form positions into engine units.

    Missing or non-numeric values fall back to the defaults table. No
    clamping is applied, coordinates may be negative.
    """
    listener_x = field_value(raw, "listener_coord_x") / DISPLAY_SCALE
    listener_y = field_value(raw, "listener_coord_y") / DISPLAY_SCALE
    interaural_distance = field_value(raw, "interaural_distance") / DISPLAY_SCALE

    left_speaker = (
        field_value(raw, "speaker_coord_lx") / DISPLAY_SCALE,
        field_value(raw, "speaker_coord_ly") / DISPLAY_SCALE,
    )
    right_speaker = (
        field_value(raw, "speaker_coord_rx") / DISPLAY_SCALE,
        field_value(raw, "speaker_coord_ry") / DISPLAY_SCALE,
    )

    listener = (listener_x, listener_y)
    left_ear, right_ear = ear_positions(listener, interaural_distance)

    return Geometry(
        listener=listener,
        left_speaker=left_speaker,
        right_speaker=right_speaker,
        left_ear=left_ear,
        right_ear=right_ear,
        interaural_distance=interaural_distance,
    )


def speed_of_sound(temperature: float) -> float:
    """Speed of sound in air (m/s) at the given temperature in degrees Celsius."""
    t_kelvin = 273.15 + temperature
    return math.sqrt(1.403 * 8.314462 * t_kelvin / 28.966e-3)


def path_distances(left_speaker: Point, right_speaker: Point,
                   left_ear: Point, right_ear: Point) -> np.ndarray:
    """Distances left speaker->left ear, left->right ear, right->left ear, right->right ear."""
    speakers = np.array([left_speaker, left_speaker, right_speaker, right_speaker], dtype=float)
    ears = np.array([left_ear, right_ear, left_ear, right_ear], dtype=float)
    diff = speakers - ears
    return np.hypot(diff[:, 0], diff[:, 1])


def shadow_cutoff(listener: Point, speaker: Point, cutoff_min: float) -> float:
    """Low-pass cutoff for the crosstalk path, lower as the speaker moves to the side."""
    dx = listener[0] - speaker[0]
    dy = listener[1] - speaker[1]
    theta = abs(math.atan2(dy, dx))
    return cutoff_min + (SHADOW_CUTOFF_MAX - cutoff_min) * math.cos(theta) ** 2


def acoustic_preview(geometry: Geometry, temperature: float = 20.0,
                     lowpass_cutoff_min: float = 800.0,
                     sample_rate: int = 48000) -> Dict[str, Any]:
    """
    Delays, levels and head-shadow cutoffs for a layout, for display before a
    session starts.

    Head-shadow angles are measured from the listener (the midpoint of the
    ears), so they can differ from the engine's values when the listener is
    away from the origin.

    Raises:
        ValueError: if a speaker sits exactly on an ear
    """
    distances = path_distances(geometry.left_speaker, geometry.right_speaker,
                               geometry.left_ear, geometry.right_ear)
    min_distance = float(distances.min())
    if min_distance <= 0.0:
        raise ValueError("A speaker position coincides with an ear position")

    c = speed_of_sound(temperature)
    frames = distances * (sample_rate / c)
    ls2le, ls2re, rs2le, rs2re = (float(f) for f in frames)

    if ls2le > rs2re:
        main_delays = [0.0, ls2le - rs2re]
    else:
        main_delays = [rs2re - ls2le, 0.0]
    crosstalk_delays = [max(1.0, abs(rs2le - ls2le)), max(1.0, abs(ls2re - rs2re))]
    amp_factors = np.power(min_distance / distances, 1.2)

    logger.debug(f"Acoustic preview: c={c:.2f} m/s, crosstalk delays {crosstalk_delays}")

    return {
        "sample_rate": sample_rate,
        "speed_of_sound": c,
        "distances": distances.tolist(),
        "main_delay_frames": main_delays,
        "crosstalk_delay_frames": crosstalk_delays,
        "amplitude_factors": amp_factors.tolist(),
        "shadow_cutoffs": [
            shadow_cutoff(geometry.listener, geometry.left_speaker, lowpass_cutoff_min),
            shadow_cutoff(geometry.listener, geometry.right_speaker, lowpass_cutoff_min),
        ],
    }
