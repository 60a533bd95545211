"""
Reflects geometry and session state into the user-facing surface.

The functions here hold no state: they turn the current form values and
session state into UiEffect descriptions, and those into a JSON view model
for the position figure and the form controls.
"""

from typing import Any, Dict, Iterable, List, Mapping

from .presets import parse_number
from .session import SessionState, UiEffect, state_effects

# Marker id -> (x field, y field)
MARKERS = {
    "listener": ("listener_coord_x", "listener_coord_y"),
    "speaker_l": ("speaker_coord_lx", "speaker_coord_ly"),
    "speaker_r": ("speaker_coord_rx", "speaker_coord_ry"),
}


def marker_effects(raw: Mapping[str, Any]) -> List[UiEffect]:
    """
    Marker positions in display units.

    The figure's y axis points down, so y is negated. A marker is left where
    it is when either of its coordinates is missing.
    """
    effects = []
    for marker, (x_field, y_field) in MARKERS.items():
        x = parse_number(raw.get(x_field))
        y = parse_number(raw.get(y_field))
        if x is None or y is None:
            continue
        effects.append(UiEffect("move_marker", marker, {"cx": x, "cy": -y}))
    return effects


def reflect(raw: Mapping[str, Any], state: SessionState) -> List[UiEffect]:
    """All effects needed to bring the surface in line with the form and state."""
    return marker_effects(raw) + state_effects(state)


def render_effects(effects: Iterable[UiEffect]) -> Dict[str, Any]:
    """Fold effects into a view model; later effects win."""
    view = {
        "markers": {},
        "switch": None,
        "controls_enabled": None,
        "errors": [],
    }
    for effect in effects:
        if effect.kind == "move_marker":
            view["markers"][effect.target] = dict(effect.value)
        elif effect.kind == "set_switch":
            view["switch"] = effect.value
        elif effect.kind == "set_controls_enabled":
            view["controls_enabled"] = effect.value
        elif effect.kind == "show_error":
            view["errors"].append({"target": effect.target, "message": effect.value})
        else:
            raise ValueError(f"Unknown UI effect: {effect.kind}")
    return view
