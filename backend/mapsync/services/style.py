"""Visual style extraction and application for drawing objects and layers.

Styles travel as flat, sparse bags keyed by the drawing widget's option
names. A key that is absent means "unset", never "zero". Applying styles
is best effort: the visuals of a feature are cosmetic, so a failure is
logged and reported as ``False`` instead of interrupting the edit.

Example:
    Copy the style of one feature onto another:
        >>> from mapsync.services import style
        >>> bag = style.extract_style(source_polygon)
        >>> style.apply_style(target_polygon, bag)
        True

    Build a validated custom style from user input:
        >>> style.create_custom_style({"color": "#ff0000", "weight": 99})
        {'color': '#ff0000'}
"""

from __future__ import annotations

import copy
import json
import re
from typing import TYPE_CHECKING, Any

from loguru import logger

from mapsync.core import errors

if TYPE_CHECKING:
    from collections.abc import Mapping

STYLE_KEYS: tuple[str, ...] = (
    "color",
    "fillColor",
    "stroke",
    "fill",
    "opacity",
    "fillOpacity",
    "weight",
    "radius",
    "dashArray",
    "lineCap",
    "lineJoin",
    "iconSize",
    "iconAnchor",
    "popupAnchor",
    "className",
)

ICON_KEYS = {
    "iconSize": "icon_size",
    "iconAnchor": "icon_anchor",
    "popupAnchor": "popup_anchor",
}

LINE_CAPS = frozenset({"butt", "round", "square"})
LINE_JOINS = frozenset({"miter", "round", "bevel"})

DEFAULT_LAYER_STYLE: dict[str, Any] = {
    "color": "#3388ff",
    "weight": 2,
    "fillColor": "#3388ff",
    "fillOpacity": 0.2,
}

_HEX_COLOR_RE = re.compile(r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")


def _is_number(value: object) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _is_pair(value: object) -> bool:
    return (
        isinstance(value, list | tuple)
        and len(value) == 2
        and all(_is_number(v) for v in value)
    )


def extract_style(obj: object) -> dict[str, Any]:
    """Read the style fields a live object actually populates.

    Args:
        obj: Live drawing object.

    Returns:
        Sparse style bag restricted to STYLE_KEYS.
    """
    bag: dict[str, Any] = {}
    options = getattr(obj, "options", None)
    if isinstance(options, dict):
        for key in STYLE_KEYS:
            if key in ICON_KEYS:
                continue
            if options.get(key) is not None:
                bag[key] = options[key]

    radius = getattr(obj, "radius", None)
    if _is_number(radius):
        bag["radius"] = radius

    icon = getattr(obj, "icon", None)
    if icon is not None:
        for key, attribute in ICON_KEYS.items():
            value = getattr(icon, attribute, None)
            if value is not None:
                bag[key] = list(value)
        class_name = getattr(icon, "class_name", None)
        if class_name and "className" not in bag:
            bag["className"] = class_name
    return bag


def _apply(obj: object, bag: Mapping[str, Any]) -> None:
    path_style = {
        key: value
        for key, value in bag.items()
        if key in STYLE_KEYS and key not in ICON_KEYS
    }

    set_style = getattr(obj, "set_style", None)
    if callable(set_style):
        set_style(path_style)
    else:
        options = getattr(obj, "options", None)
        if not isinstance(options, dict):
            raise errors.StyleApplicationError(
                f"{type(obj).__name__} has neither set_style nor options"
            )
        options.update(path_style)
        redraw = getattr(obj, "redraw", None)
        if callable(redraw):
            redraw()

    if "radius" in bag:
        set_radius = getattr(obj, "set_radius", None)
        if callable(set_radius):
            set_radius(bag["radius"])

    icon_updates = {
        ICON_KEYS[key]: tuple(value)
        for key, value in bag.items()
        if key in ICON_KEYS and value is not None
    }
    icon = getattr(obj, "icon", None)
    set_icon = getattr(obj, "set_icon", None)
    if icon_updates and icon is not None and callable(set_icon):
        new_icon = copy.copy(icon)
        for attribute, value in icon_updates.items():
            setattr(new_icon, attribute, value)
        set_icon(new_icon)


def apply_style(obj: object, bag: Mapping[str, Any] | None) -> bool:
    """Apply a style bag to a live object.

    Uses the object's own ``set_style`` when available, otherwise merges
    into its option bag and requests a redraw. A ``radius`` key is also
    pushed through ``set_radius`` so the geometry radius and the style
    radius stay consistent.

    Args:
        obj: Live drawing object.
        bag: Style bag; an empty or missing bag is a no-op.

    Returns:
        True when the style was applied (or there was nothing to apply),
        False when application failed. Never raises.
    """
    if not bag:
        return True
    try:
        _apply(obj, bag)
    except Exception as exc:  # noqa: BLE001
        logger.warning(f"Failed to apply style to {type(obj).__name__}: {exc}")
        return False
    return True


def create_custom_style(options: Mapping[str, Any]) -> dict[str, Any]:
    """Build a style bag, omitting every out-of-range or unknown key.

    Rules: colors must be ``#rgb`` or ``#rrggbb``; weight in (0, 20];
    opacity and fillOpacity in [0, 1]; radius in (0, 1000]; lineCap one
    of butt/round/square; lineJoin one of miter/round/bevel.
    """
    style: dict[str, Any] = {}
    for key, value in options.items():
        if value is None:
            continue
        if key in ("color", "fillColor"):
            valid = isinstance(value, str) and bool(_HEX_COLOR_RE.match(value))
        elif key == "weight":
            valid = _is_number(value) and 0 < value <= 20
        elif key in ("opacity", "fillOpacity"):
            valid = _is_number(value) and 0 <= value <= 1
        elif key == "radius":
            valid = _is_number(value) and 0 < value <= 1000
        elif key == "lineCap":
            valid = value in LINE_CAPS
        elif key == "lineJoin":
            valid = value in LINE_JOINS
        elif key in ("stroke", "fill"):
            valid = isinstance(value, bool)
        elif key in ("dashArray", "className"):
            valid = isinstance(value, str)
        elif key in ICON_KEYS:
            valid = _is_pair(value)
        else:
            valid = False

        if valid:
            style[key] = value
        else:
            logger.debug(f"Dropping invalid style value {key}={value!r}")
    return style


def parse_layer_style(raw: str | None) -> dict[str, Any] | None:
    """Decode a persisted layer style into a flat style bag.

    Understands both flat bags and the nested
    ``{"fill": {"color", "opacity"}, "stroke": {"color", "width"}}`` schema.

    Returns:
        The flat style bag, or None when ``raw`` is empty or malformed.
    """
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning(f"Failed to parse layer style, using default: {exc}")
        return None
    if not isinstance(value, dict):
        logger.warning("Layer style is not an object, using default")
        return None

    fill = value.get("fill")
    stroke = value.get("stroke")
    if isinstance(fill, dict) or isinstance(stroke, dict):
        fill = fill if isinstance(fill, dict) else {}
        stroke = stroke if isinstance(stroke, dict) else {}
        flat = {
            "color": stroke.get("color"),
            "weight": stroke.get("width"),
            "fillColor": fill.get("color"),
            "fillOpacity": fill.get("opacity"),
        }
        return {k: v for k, v in flat.items() if v is not None}
    return value


def merge_layer_style(
    layer_style: str | None,
    custom_style: str | None,
) -> dict[str, Any]:
    """Resolve the effective style of a layer; customStyle wins."""
    base = parse_layer_style(layer_style)
    merged = dict(base if base else DEFAULT_LAYER_STYLE)
    override = parse_layer_style(custom_style)
    if override:
        merged.update(override)
    return merged
