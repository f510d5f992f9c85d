"""Geometry classification, serialization and validation for drawn features.

This module converts live drawing objects into the persisted geometry
format and back. Classification is structural: the drawing widget does
not tag its objects, so the shape kind is inferred from whichever of
``latlng``, ``radius``, ``latlngs`` and ``bounds`` the object populates.
Objects created by this package carry an explicit ``kind`` tag, which
``resolve_kind`` prefers; the heuristic remains the ingestion path for
untagged widget objects.

Persisted coordinates always use GeoJSON ``[lng, lat]`` ordering:

    ============  ===========  ============  ==============================
    Kind          geometryType annotation    coordinates
    ============  ===========  ============  ==============================
    Marker        Point        Marker        [lng, lat]
    Text          Point        Text          [lng, lat] (+ inline text)
    Circle        Circle       Marker        [lng, lat, radiusMeters]
    Rectangle     Rectangle    Highlighter   [minLng, minLat, maxLng, maxLat]
    Line          LineString   Highlighter   [[lng, lat], ...]
    Polygon       Polygon      Highlighter   [[[lng, lat], ...]]
    ============  ===========  ============  ==============================

Serialization never fails: missing fields degrade to canonical defaults
and ``validate`` is expected to reject them before anything is persisted.
The read path (``parse_coordinates``) tolerates GeoJSON wrappers, raw
coordinate trees and legacy comma-separated strings.

Example:
    Serialize a freshly drawn circle:
        >>> from mapsync.services import geometry
        >>> from mapsync.surface import objects
        >>> circle = objects.Circle(objects.LatLng(lat=20, lng=10), radius=50)
        >>> result = geometry.serialize(circle)
        >>> result.geometry_type, result.coordinates
        ('Circle', '[10,20,50]')
        >>> geometry.validate(result.geometry_type, result.coordinates)
        True
"""

from __future__ import annotations

import html
import json
import math
import re
from typing import TYPE_CHECKING, Any, Literal, cast

from loguru import logger

from mapsync.core import errors
from mapsync.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Iterable

SMALL_RADIUS = 10.0
RECTANGLE_TOLERANCE = 1e-6

RectangleFormat = Literal["bounds", "ring"]

DEFAULT_POINT: list[float] = [0, 0]
DEFAULT_CIRCLE: list[float] = [0, 0, 100]
DEFAULT_BOUNDS: list[float] = [0, 0, 1, 1]
DEFAULT_LINE: list[list[float]] = [[0, 0], [1, 1]]
DEFAULT_RING: list[list[float]] = [[0, 0], [1, 0], [1, 1], [0, 1], [0, 0]]

_TAG_RE = re.compile(r"<[^>]+>")
_LEGACY_SPLIT_RE = re.compile(r"[,;\s]+")

_EXPECTED_ARITY = {"Point": 2, "Circle": 3, "Rectangle": 4}


# ---------------------------------------------------------------------------
# Attribute access
# ---------------------------------------------------------------------------


def _is_number(value: object) -> bool:
    return (
        isinstance(value, int | float)
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _compact(value: float) -> float:
    """Render integral floats as ints so encodings stay canonical."""
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _point_of(value: object) -> tuple[float, float] | None:
    """Return (lng, lat) for anything exposing numeric ``lat``/``lng``."""
    lat = getattr(value, "lat", None)
    lng = getattr(value, "lng", None)
    if _is_number(lat) and _is_number(lng):
        return cast(float, lng), cast(float, lat)
    return None


def _radius_of(obj: object) -> float | None:
    radius = getattr(obj, "radius", None)
    return cast(float, radius) if _is_number(radius) else None


def _bounds_of(obj: object) -> tuple[float, float, float, float] | None:
    """Return (west, south, east, north) of the object's bounding box."""
    bounds = getattr(obj, "bounds", None)
    if bounds is None:
        return None
    values = [
        getattr(bounds, name, None)
        for name in ("west", "south", "east", "north")
    ]
    if all(_is_number(v) for v in values):
        return cast(tuple[float, float, float, float], tuple(values))
    return None


def _flatten_points(latlngs: Iterable[Any]) -> list[tuple[float, float]]:
    points: list[tuple[float, float]] = []
    for item in latlngs:
        if isinstance(item, list | tuple):
            points.extend(_flatten_points(item))
            continue
        point = _point_of(item)
        if point is not None:
            points.append(point)
    return points


def _first_ring(latlngs: list[Any]) -> list[Any]:
    """Descend nested vertex lists until a list of points is reached."""
    ring: list[Any] = latlngs
    while ring and isinstance(ring[0], list | tuple):
        ring = list(ring[0])
    return ring


def _bounds_from_points(
    points: list[tuple[float, float]],
) -> tuple[float, float, float, float]:
    lngs = [p[0] for p in points]
    lats = [p[1] for p in points]
    return min(lngs), min(lats), max(lngs), max(lats)


def _matches_bounds(
    points: list[tuple[float, float]],
    bounds: tuple[float, float, float, float],
) -> bool:
    """Check that the vertex set is exactly the four bounds corners."""
    west, south, east, north = bounds
    corners = [(west, south), (east, south), (east, north), (west, north)]

    def near(a: tuple[float, float], b: tuple[float, float]) -> bool:
        return (
            abs(a[0] - b[0]) <= RECTANGLE_TOLERANCE
            and abs(a[1] - b[1]) <= RECTANGLE_TOLERANCE
        )

    every_point_is_corner = all(
        any(near(p, c) for c in corners) for p in points
    )
    every_corner_is_used = all(
        any(near(p, c) for p in points) for c in corners
    )
    return every_point_is_corner and every_corner_is_used


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def _icon_of(obj: object) -> object | None:
    icon = getattr(obj, "icon", None)
    if icon is None:
        options = getattr(obj, "options", None)
        if isinstance(options, dict):
            icon = options.get("icon")
    return icon


def _is_text_icon(icon: object | None) -> bool:
    if icon is None:
        return False
    inline = getattr(icon, "html", None)
    if isinstance(inline, str) and inline.strip():
        return True
    class_name = getattr(icon, "class_name", None)
    return isinstance(class_name, str) and "text" in class_name.lower()


def classify_shape(obj: object) -> db_models.GeometryKind:
    """Infer the geometry kind of a live drawing object from its fields.

    The rules are applied in order and the first match wins:

    1. point coordinate and radius <= 10 -> Marker (a circle marker);
    2. point coordinate and no radius -> Text when the icon carries inline
       html or a "text" class, otherwise Marker;
    3. radius -> Circle;
    4. vertex list -> Rectangle when the vertices are exactly the corners of
       the bounding box (within 1e-6, at least four vertices), Polygon when
       the list is nested, otherwise Line;
    5. bounding box only -> Rectangle;
    6. otherwise Unknown.

    Args:
        obj: Any object exposing some of ``latlng``, ``radius``,
            ``latlngs``, ``bounds`` and ``icon``.

    Returns:
        The inferred GeometryKind. Never raises.
    """
    kind = db_models.GeometryKind
    point = _point_of(getattr(obj, "latlng", None))
    radius = _radius_of(obj)

    if point is not None and radius is not None and radius <= SMALL_RADIUS:
        return kind.MARKER
    if point is not None and radius is None:
        return kind.TEXT if _is_text_icon(_icon_of(obj)) else kind.MARKER
    if radius is not None:
        return kind.CIRCLE

    latlngs = getattr(obj, "latlngs", None)
    if isinstance(latlngs, list | tuple) and latlngs:
        points = _flatten_points(latlngs)
        if points:
            bounds = _bounds_of(obj) or _bounds_from_points(points)
            if len(points) >= 4 and _matches_bounds(points, bounds):
                return kind.RECTANGLE
            if isinstance(latlngs[0], list | tuple):
                return kind.POLYGON
            return kind.LINE

    if _bounds_of(obj) is not None:
        return kind.RECTANGLE
    return kind.UNKNOWN


def resolve_kind(obj: object) -> db_models.GeometryKind:
    """Return the object's explicit kind tag, falling back to inference."""
    tag = getattr(obj, "kind", None)
    if isinstance(tag, str) and tag != db_models.GeometryKind.UNKNOWN:
        try:
            return db_models.GeometryKind(tag)
        except ValueError:
            logger.debug(f"Ignoring unrecognised kind tag {tag!r}")
    return classify_shape(obj)


def extract_text(obj: object) -> str | None:
    """Recover the inline text of a Text annotation.

    Prefers an explicit ``text`` option, then the icon html with markup
    stripped and entities unescaped.
    """
    options = getattr(obj, "options", None)
    if isinstance(options, dict) and isinstance(options.get("text"), str):
        return cast(str, options["text"])
    icon = _icon_of(obj)
    inline = getattr(icon, "html", None)
    if isinstance(inline, str) and inline.strip():
        return html.unescape(_TAG_RE.sub("", inline)).strip()
    return None


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def encode_coordinates(coordinates: Any) -> str:
    """Encode a coordinate tree as compact JSON."""
    return json.dumps(coordinates, separators=(",", ":"))


def _position(point: tuple[float, float]) -> list[float]:
    return [_compact(point[0]), _compact(point[1])]


def _ring_from_bounds(
    bounds: tuple[float, float, float, float],
) -> list[list[list[float]]]:
    west, south, east, north = (_compact(v) for v in bounds)
    return [
        [
            [west, south],
            [east, south],
            [east, north],
            [west, north],
            [west, south],
        ],
    ]


def _rectangle_bounds(obj: object) -> tuple[float, float, float, float] | None:
    bounds = _bounds_of(obj)
    if bounds is not None:
        return bounds
    latlngs = getattr(obj, "latlngs", None)
    if isinstance(latlngs, list | tuple):
        points = _flatten_points(latlngs)
        if points:
            return _bounds_from_points(points)
    return None


def serialize(
    obj: object,
    rectangle_format: RectangleFormat = "bounds",
) -> db_models.SerializedGeometry:
    """Serialize a live drawing object into its persisted geometry.

    Args:
        obj: Live drawing object.
        rectangle_format: "bounds" persists rectangles as
            ``[minLng, minLat, maxLng, maxLat]`` with geometryType
            "Rectangle"; "ring" persists a closed five-point Polygon ring.

    Returns:
        SerializedGeometry with JSON-encoded coordinates. Missing source
        fields produce canonical defaults and a logged warning.
    """
    kind = resolve_kind(obj)
    geometry_type: db_models.GeometryType = "Point"
    annotation_type: db_models.AnnotationType = "Marker"
    text: str | None = None
    coordinates: Any

    point = _point_of(getattr(obj, "latlng", None))

    if kind in (db_models.GeometryKind.MARKER, db_models.GeometryKind.TEXT):
        if kind is db_models.GeometryKind.TEXT:
            annotation_type = "Text"
            text = extract_text(obj)
        if point is not None:
            coordinates = _position(point)
        else:
            logger.warning(f"{kind.value} is missing its point coordinate")
            coordinates = list(DEFAULT_POINT)

    elif kind is db_models.GeometryKind.CIRCLE:
        geometry_type = "Circle"
        radius = _radius_of(obj)
        if point is not None and radius is not None:
            coordinates = [*_position(point), _compact(radius)]
        else:
            logger.warning("Circle is missing its center or radius")
            coordinates = list(DEFAULT_CIRCLE)

    elif kind is db_models.GeometryKind.RECTANGLE:
        annotation_type = "Highlighter"
        bounds = _rectangle_bounds(obj)
        if bounds is None:
            logger.warning("Rectangle is missing its bounds")
        if rectangle_format == "ring":
            geometry_type = "Polygon"
            coordinates = (
                _ring_from_bounds(bounds) if bounds else [list(DEFAULT_RING)]
            )
        else:
            geometry_type = "Rectangle"
            coordinates = (
                [_compact(v) for v in bounds] if bounds else list(DEFAULT_BOUNDS)
            )

    elif kind is db_models.GeometryKind.LINE:
        geometry_type = "LineString"
        annotation_type = "Highlighter"
        points = _flatten_points(getattr(obj, "latlngs", None) or [])
        if len(points) >= 2:
            coordinates = [_position(p) for p in points]
        else:
            logger.warning("Line is missing a valid vertex list")
            coordinates = [list(p) for p in DEFAULT_LINE]

    elif kind is db_models.GeometryKind.POLYGON:
        geometry_type = "Polygon"
        annotation_type = "Highlighter"
        latlngs = list(getattr(obj, "latlngs", None) or [])
        ring = _flatten_points(_first_ring(latlngs))
        if len(ring) >= 3:
            coordinates = [[_position(p) for p in ring]]
        else:
            logger.warning("Polygon is missing a valid vertex list")
            coordinates = [[list(p) for p in DEFAULT_RING]]

    else:
        logger.warning(f"Cannot serialize unknown shape {type(obj).__name__}")
        coordinates = list(DEFAULT_POINT)

    return db_models.SerializedGeometry(
        geometry_type=geometry_type,
        coordinates=encode_coordinates(coordinates),
        annotation_type=annotation_type,
        kind=kind,
        text=text,
    )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _is_position(value: object) -> bool:
    return (
        isinstance(value, list | tuple)
        and len(value) == 2
        and all(_is_number(v) for v in value)
    )


def _is_ring(value: object, minimum: int = 3) -> bool:
    return (
        isinstance(value, list | tuple)
        and len(value) >= minimum
        and all(_is_position(p) for p in value)
    )


def _is_polygon(value: object) -> bool:
    return (
        isinstance(value, list | tuple)
        and len(value) >= 1
        and all(_is_ring(ring) for ring in value)
    )


def _is_bounds(value: object) -> bool:
    if not (
        isinstance(value, list | tuple)
        and len(value) == 4
        and all(_is_number(v) for v in value)
    ):
        return False
    min_lng, min_lat, max_lng, max_lat = cast(list[float], value)
    return min_lng <= max_lng and min_lat <= max_lat


def validate(geometry_type: str, coordinates: str | Any) -> bool:
    """Check that coordinates are well-formed for the geometry type.

    The check is structural only: arity, numeric types, minimum vertex
    counts and a positive circle radius. Geographic plausibility is not
    checked.

    Args:
        geometry_type: "Point", "LineString", "Polygon", "Circle" or
            "Rectangle".
        coordinates: JSON-encoded string or an already decoded tree.

    Returns:
        True when the coordinates can be persisted and re-rendered.

    Example:
        >>> validate("Circle", [0, 0, 0])
        False
        >>> validate("Polygon", "[[[0,0],[1,0],[0,1]]]")
        True
    """
    if isinstance(coordinates, str):
        try:
            coordinates = json.loads(coordinates)
        except json.JSONDecodeError:
            return False

    if geometry_type == "Point":
        return _is_position(coordinates)
    if geometry_type == "LineString":
        return _is_ring(coordinates, minimum=2)
    if geometry_type == "Polygon":
        return _is_polygon(coordinates)
    if geometry_type == "Circle":
        return (
            isinstance(coordinates, list | tuple)
            and len(coordinates) == 3
            and all(_is_number(v) for v in coordinates)
            and coordinates[2] > 0
        )
    if geometry_type == "Rectangle":
        return _is_bounds(coordinates) or _is_polygon(coordinates)
    return False


# ---------------------------------------------------------------------------
# Read path
# ---------------------------------------------------------------------------


def _parse_legacy(geometry_type: str, raw: str) -> Any:
    """Parse a flat comma-separated numeric string positionally."""
    parts = [p for p in _LEGACY_SPLIT_RE.split(raw.strip().strip("[]")) if p]
    try:
        numbers = [float(p) for p in parts]
    except ValueError as exc:
        raise errors.ParseFailureError(
            f"Unparseable {geometry_type} coordinates: {raw!r}"
        ) from exc
    numbers = [_compact(n) for n in numbers]

    arity = _EXPECTED_ARITY.get(geometry_type)
    if arity is not None:
        if len(numbers) < arity:
            raise errors.ParseFailureError(
                f"{geometry_type} needs {arity} numbers, got {len(numbers)}"
            )
        return numbers[:arity]

    if len(numbers) % 2:
        raise errors.ParseFailureError(
            f"{geometry_type} needs lng/lat pairs, got {len(numbers)} numbers"
        )
    pairs = [numbers[i : i + 2] for i in range(0, len(numbers), 2)]
    if geometry_type == "Polygon":
        return [pairs]
    return pairs


def parse_coordinates(geometry_type: str, raw: str | Any) -> Any:
    """Decode persisted coordinates, tolerating legacy encodings.

    Accepted encodings, tried in order:

    * a GeoJSON-style ``{"type": ..., "coordinates": ...}`` wrapper;
    * a raw JSON coordinate tree;
    * a flat comma-separated numeric string, read positionally according
      to the arity of ``geometry_type``. This form only exists in old rows
      and is never written.

    Args:
        geometry_type: Persisted geometry type of the row.
        raw: JSON string, decoded tree or wrapper dict.

    Returns:
        The decoded coordinate tree, valid per ``validate``.

    Raises:
        ParseFailureError: If nothing usable can be recovered.
    """
    value: Any = raw
    if isinstance(raw, str):
        if not raw.strip():
            raise errors.ParseFailureError(
                f"Empty coordinates for {geometry_type}"
            )
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            value = _parse_legacy(geometry_type, raw)

    if isinstance(value, dict):
        value = value.get("coordinates")

    if not validate(geometry_type, value):
        raise errors.ParseFailureError(
            f"Invalid {geometry_type} coordinates: {raw!r}"
        )
    return value


def parse_json_bag(raw: str | None, label: str = "value") -> dict[str, Any]:
    """Decode a persisted JSON object string (properties, style, ...).

    Raises:
        ParseFailureError: If the string is not a JSON object.
    """
    if raw is None or not str(raw).strip():
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise errors.ParseFailureError(f"Malformed {label}: {raw!r}") from exc
    if not isinstance(value, dict):
        raise errors.ParseFailureError(f"{label} is not an object: {raw!r}")
    return value


_KIND_BY_GEOMETRY = {
    "Circle": db_models.GeometryKind.CIRCLE,
    "Rectangle": db_models.GeometryKind.RECTANGLE,
    "LineString": db_models.GeometryKind.LINE,
    "Polygon": db_models.GeometryKind.POLYGON,
}


def deserialize(source: Any) -> db_models.SerializedGeometry:
    """Normalize a persisted feature back into a SerializedGeometry.

    Args:
        source: A FeatureRecord, a SerializedGeometry or anything exposing
            ``geometry_type``, ``coordinates`` and ``annotation_type``
            (plus optionally ``properties`` or ``text``).

    Returns:
        SerializedGeometry whose coordinates are re-encoded canonically.

    Raises:
        ParseFailureError: If the coordinates cannot be recovered.
    """
    geometry_type = str(source.geometry_type)
    if geometry_type.lower() == "linestring":
        geometry_type = "LineString"
    else:
        geometry_type = geometry_type[:1].upper() + geometry_type[1:]
    if geometry_type not in db_models.GEOMETRY_TYPES:
        raise errors.ParseFailureError(
            f"Unsupported geometry type {source.geometry_type!r}"
        )

    tree = parse_coordinates(geometry_type, source.coordinates)
    annotation_type = getattr(source, "annotation_type", None) or (
        "Marker" if geometry_type in ("Point", "Circle") else "Highlighter"
    )

    text = getattr(source, "text", None)
    properties = getattr(source, "properties", None)
    if text is None and annotation_type == "Text" and properties:
        try:
            text = parse_json_bag(properties, "properties").get("text")
        except errors.ParseFailureError as exc:
            logger.warning(f"Ignoring text of feature: {exc}")

    if geometry_type == "Point":
        kind = (
            db_models.GeometryKind.TEXT
            if annotation_type == "Text"
            else db_models.GeometryKind.MARKER
        )
    else:
        kind = _KIND_BY_GEOMETRY[geometry_type]

    return db_models.SerializedGeometry(
        geometry_type=cast(db_models.GeometryType, geometry_type),
        coordinates=encode_coordinates(tree),
        annotation_type=cast(db_models.AnnotationType, annotation_type),
        kind=kind,
        text=text,
    )


# ---------------------------------------------------------------------------
# GeoJSON export
# ---------------------------------------------------------------------------


def to_geojson_feature(
    obj: object,
    properties: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Export a live object as a GeoJSON Feature.

    Rectangles are exported as polygon rings and circles as points with a
    ``radius`` property, since GeoJSON has no native circle.
    """
    geometry = serialize(obj, rectangle_format="ring")
    coordinates = json.loads(geometry.coordinates)
    props = dict(properties or {})
    geometry_type: str = geometry.geometry_type
    if geometry_type == "Circle":
        geometry_type = "Point"
        props.setdefault("radius", coordinates[2])
        coordinates = coordinates[:2]
    if geometry.text is not None:
        props.setdefault("text", geometry.text)
    return {
        "type": "Feature",
        "geometry": {"type": geometry_type, "coordinates": coordinates},
        "properties": props,
    }


def to_feature_collection(objs: Iterable[object]) -> dict[str, Any]:
    """Export live objects as a GeoJSON FeatureCollection."""
    return {
        "type": "FeatureCollection",
        "features": [to_geojson_feature(obj) for obj in objs],
    }
