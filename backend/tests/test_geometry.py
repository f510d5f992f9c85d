"""Unit tests for geometry classification, serialization and validation.

Covers the structural shape heuristic, the persisted coordinate format of
every geometry kind, the validation boundaries and the tolerant read path
used when loading persisted rows.

See Also:
    - backend/mapsync/services/geometry.py for the implementation.
"""

from __future__ import annotations

import json
import types
from typing import TYPE_CHECKING

import pytest

from mapsync.core import errors
from mapsync.db import models as db_models
from mapsync.services import geometry
from mapsync.surface import objects

if TYPE_CHECKING:
    from collections.abc import Callable

Kind = db_models.GeometryKind


def _triangle() -> objects.Polygon:
    return objects.Polygon(
        [
            [
                objects.LatLng(lat=0, lng=0),
                objects.LatLng(lat=0, lng=1),
                objects.LatLng(lat=1, lng=0),
            ]
        ]
    )


def _rectangle() -> objects.Rectangle:
    return objects.Rectangle(objects.Bounds(south=0, west=0, north=1, east=2))


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def test_classify_circle() -> None:
    """A point with a radius above 10 is a Circle."""
    circle = objects.Circle(objects.LatLng(lat=20, lng=10), radius=50)
    assert geometry.classify_shape(circle) is Kind.CIRCLE


def test_classify_small_circle_as_marker() -> None:
    """A circle marker (radius <= 10) is classified as a Marker."""
    circle = objects.Circle(objects.LatLng(lat=20, lng=10), radius=10)
    assert geometry.classify_shape(circle) is Kind.MARKER


def test_classify_text_marker() -> None:
    """A marker whose icon carries inline html is Text."""
    marker = objects.Marker(
        objects.LatLng(lat=1, lng=2), icon=objects.Icon(html="<b>Hi</b>")
    )
    assert geometry.classify_shape(marker) is Kind.TEXT


def test_classify_text_class_marker() -> None:
    """A marker whose icon class mentions text is Text."""
    marker = objects.Marker(
        objects.LatLng(lat=1, lng=2), icon=objects.Icon(class_name="Text-Label")
    )
    assert geometry.classify_shape(marker) is Kind.TEXT


def test_classify_plain_marker() -> None:
    """A marker with a regular icon is a Marker."""
    marker = objects.Marker(
        objects.LatLng(lat=1, lng=2), icon=objects.Icon(class_name="pin")
    )
    assert geometry.classify_shape(marker) is Kind.MARKER


def test_classify_rectangle() -> None:
    """Vertices coinciding with the bounds corners form a Rectangle."""
    assert geometry.classify_shape(_rectangle()) is Kind.RECTANGLE


def test_classify_polygon_and_line() -> None:
    """Nested vertex lists are Polygons, flat ones are Lines."""
    line = objects.Polyline(
        [objects.LatLng(lat=0, lng=0), objects.LatLng(lat=1, lng=1)]
    )
    assert geometry.classify_shape(_triangle()) is Kind.POLYGON
    assert geometry.classify_shape(line) is Kind.LINE


def test_classify_bounds_only_and_unknown() -> None:
    """A bare bounding box is a Rectangle; anything else is Unknown."""
    boxed = types.SimpleNamespace(
        bounds=objects.Bounds(south=0, west=0, north=1, east=1)
    )
    assert geometry.classify_shape(boxed) is Kind.RECTANGLE
    assert geometry.classify_shape(object()) is Kind.UNKNOWN


def test_resolve_kind_prefers_explicit_tag() -> None:
    """An explicit kind tag wins over the structural heuristic."""
    marker = objects.Marker(objects.LatLng(lat=1, lng=2), kind=Kind.TEXT)
    assert geometry.classify_shape(marker) is Kind.MARKER
    assert geometry.resolve_kind(marker) is Kind.TEXT


def test_resolve_kind_ignores_unknown_tag() -> None:
    """An unrecognised tag falls back to inference."""
    marker = objects.Marker(objects.LatLng(lat=1, lng=2))
    marker.kind = "Hexagon"  # type: ignore[assignment]
    assert geometry.resolve_kind(marker) is Kind.MARKER


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def test_serialize_circle() -> None:
    """A circle persists as [lng, lat, radius] and validates."""
    circle = objects.Circle(objects.LatLng(lat=20, lng=10), radius=50)
    result = geometry.serialize(circle)
    assert result.geometry_type == "Circle"
    assert result.annotation_type == "Marker"
    assert result.coordinates == "[10,20,50]"
    assert geometry.validate(result.geometry_type, result.coordinates)


def test_serialize_circle_marker_as_point() -> None:
    """A small circle persists as a Point."""
    circle = objects.Circle(objects.LatLng(lat=20, lng=10), radius=5)
    result = geometry.serialize(circle)
    assert result.geometry_type == "Point"
    assert result.coordinates == "[10,20]"


def test_serialize_text_marker() -> None:
    """Text annotations recover their inline text without markup."""
    marker = objects.Marker(
        objects.LatLng(lat=1, lng=2),
        icon=objects.Icon(html="<b>Hi &amp; bye</b>"),
    )
    result = geometry.serialize(marker)
    assert result.geometry_type == "Point"
    assert result.annotation_type == "Text"
    assert result.coordinates == "[2,1]"
    assert result.text == "Hi & bye"


def test_serialize_rectangle_formats() -> None:
    """Rectangles persist as bounds by default, as a ring on request."""
    bounds = geometry.serialize(_rectangle())
    assert bounds.geometry_type == "Rectangle"
    assert bounds.annotation_type == "Highlighter"
    assert bounds.coordinates == "[0,0,2,1]"

    ring = geometry.serialize(_rectangle(), rectangle_format="ring")
    assert ring.geometry_type == "Polygon"
    assert json.loads(ring.coordinates) == [
        [[0, 0], [2, 0], [2, 1], [0, 1], [0, 0]]
    ]


def test_serialize_polygon_and_line() -> None:
    """Polygons and lines flip vertices into [lng, lat] order."""
    polygon = geometry.serialize(_triangle())
    assert polygon.geometry_type == "Polygon"
    assert polygon.coordinates == "[[[0,0],[1,0],[0,1]]]"

    line = geometry.serialize(
        objects.Polyline(
            [objects.LatLng(lat=0, lng=1), objects.LatLng(lat=2, lng=3)]
        )
    )
    assert line.geometry_type == "LineString"
    assert line.coordinates == "[[1,0],[3,2]]"


def test_serialize_degenerate_line_uses_default() -> None:
    """A line with a single vertex degrades to the canonical default."""
    line = objects.Polyline([objects.LatLng(lat=0, lng=1)])
    line.kind = Kind.LINE
    result = geometry.serialize(line)
    assert json.loads(result.coordinates) == geometry.DEFAULT_LINE


def test_serialize_unknown_never_raises() -> None:
    """Unknown shapes serialize to a default point."""
    result = geometry.serialize(object())
    assert result.geometry_type == "Point"
    assert result.coordinates == "[0,0]"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("geometry_type", "coordinates", "expected"),
    [
        ("Point", "[1,2]", True),
        ("Point", "[1]", False),
        ("Point", "[true,1]", False),
        ("Circle", "[0,0,1]", True),
        ("Circle", "[0,0,0]", False),
        ("Circle", "[0,0]", False),
        ("LineString", "[[0,0],[1,1]]", True),
        ("LineString", "[[0,0]]", False),
        ("LineString", "abc", False),
        ("Polygon", "[[[0,0],[1,0],[0,1]]]", True),
        ("Polygon", "[[[0,0],[1,0]]]", False),
        ("Rectangle", "[0,0,1,1]", True),
        ("Rectangle", "[2,0,1,1]", False),
        ("Rectangle", "[[[0,0],[1,0],[1,1],[0,1],[0,0]]]", True),
        ("Hexagon", "[0,0]", False),
    ],
)
def test_validate(geometry_type: str, coordinates: str, expected: bool) -> None:
    """Structural validation of each geometry type."""
    assert geometry.validate(geometry_type, coordinates) is expected


def test_validate_accepts_decoded_tree() -> None:
    """validate also accepts an already decoded coordinate tree."""
    assert geometry.validate("Circle", [10, 20, 50])
    assert not geometry.validate("Circle", [10, 20, -5])


# ---------------------------------------------------------------------------
# Read path
# ---------------------------------------------------------------------------


def test_parse_coordinates_rejects_garbage() -> None:
    """A non-numeric LineString string is a parse failure."""
    with pytest.raises(errors.ParseFailureError):
        geometry.parse_coordinates("LineString", "abc")


def test_parse_coordinates_empty() -> None:
    """An empty string is a parse failure."""
    with pytest.raises(errors.ParseFailureError):
        geometry.parse_coordinates("Point", "  ")


def test_parse_coordinates_geojson_wrapper() -> None:
    """A GeoJSON geometry wrapper is unwrapped."""
    raw = '{"type": "Point", "coordinates": [1, 2]}'
    assert geometry.parse_coordinates("Point", raw) == [1, 2]


def test_parse_coordinates_legacy_strings() -> None:
    """Legacy comma-separated strings are read positionally."""
    assert geometry.parse_coordinates("Circle", "10, 20, 50") == [10, 20, 50]
    assert geometry.parse_coordinates("Polygon", "0,0,1,0,1,1") == [
        [[0, 0], [1, 0], [1, 1]]
    ]
    assert geometry.parse_coordinates("LineString", "0,0;2,2") == [
        [0, 0],
        [2, 2],
    ]


def test_parse_coordinates_legacy_odd_pairs() -> None:
    """Legacy vertex strings must hold whole lng/lat pairs."""
    with pytest.raises(errors.ParseFailureError):
        geometry.parse_coordinates("LineString", "1,2,3")


def test_parse_json_bag() -> None:
    """JSON bags decode to dicts; non-objects are parse failures."""
    assert geometry.parse_json_bag(None) == {}
    assert geometry.parse_json_bag('{"a": 1}') == {"a": 1}
    with pytest.raises(errors.ParseFailureError):
        geometry.parse_json_bag("[1, 2]")
    with pytest.raises(errors.ParseFailureError):
        geometry.parse_json_bag("{oops")


def test_deserialize_text_record() -> None:
    """A Text row recovers its text from the properties bag."""
    record = db_models.FeatureRecord(
        feature_id="f-1",
        map_id="map-1",
        name="Label",
        annotation_type="Text",
        geometry_type="Point",
        coordinates="[2, 1]",
        properties='{"text": "Hello"}',
    )
    result = geometry.deserialize(record)
    assert result.kind is Kind.TEXT
    assert result.text == "Hello"
    assert result.coordinates == "[2,1]"


def test_deserialize_normalizes_geometry_type() -> None:
    """Lower-case geometry types are normalized."""
    row = types.SimpleNamespace(
        geometry_type="linestring",
        coordinates="[[0,0],[1,1]]",
        annotation_type=None,
    )
    result = geometry.deserialize(row)
    assert result.geometry_type == "LineString"
    assert result.annotation_type == "Highlighter"
    assert result.kind is Kind.LINE


def test_deserialize_unsupported_type() -> None:
    """Unknown geometry types are parse failures."""
    row = types.SimpleNamespace(
        geometry_type="Hexagon", coordinates="[0,0]", annotation_type=None
    )
    with pytest.raises(errors.ParseFailureError):
        geometry.deserialize(row)


ROUND_TRIP_SHAPES = [
    pytest.param(
        lambda: objects.Marker(objects.LatLng(lat=1, lng=2)), "bounds", id="marker"
    ),
    pytest.param(
        lambda: objects.Marker(
            objects.LatLng(lat=1, lng=2), icon=objects.Icon(html="<b>Hi</b>")
        ),
        "bounds",
        id="text",
    ),
    pytest.param(
        lambda: objects.Circle(objects.LatLng(lat=20, lng=10), radius=50),
        "bounds",
        id="circle",
    ),
    pytest.param(_rectangle, "bounds", id="rectangle-bounds"),
    pytest.param(_rectangle, "ring", id="rectangle-ring"),
    pytest.param(
        lambda: objects.Polyline(
            [objects.LatLng(lat=0, lng=0), objects.LatLng(lat=1, lng=1)]
        ),
        "bounds",
        id="line",
    ),
    pytest.param(_triangle, "bounds", id="polygon"),
    pytest.param(object, "bounds", id="unknown"),
]


@pytest.mark.parametrize(("make", "rectangle_format"), ROUND_TRIP_SHAPES)
def test_serialized_shapes_read_back_valid(
    make: Callable[[], object],
    rectangle_format: geometry.RectangleFormat,
) -> None:
    """Every shape kind reads back as valid geometry of the same type."""
    written = geometry.serialize(make(), rectangle_format)
    read = geometry.deserialize(written)

    assert geometry.validate(read.geometry_type, read.coordinates)
    assert read.geometry_type == written.geometry_type
    assert read.annotation_type == written.annotation_type
    assert read.text == written.text


# ---------------------------------------------------------------------------
# GeoJSON export
# ---------------------------------------------------------------------------


def test_to_geojson_feature_circle() -> None:
    """Circles export as points carrying a radius property."""
    circle = objects.Circle(objects.LatLng(lat=20, lng=10), radius=50)
    feature = geometry.to_geojson_feature(circle, {"name": "c"})
    assert feature["geometry"] == {"type": "Point", "coordinates": [10, 20]}
    assert feature["properties"] == {"name": "c", "radius": 50}


def test_to_feature_collection() -> None:
    """Rectangles export as polygon rings inside a FeatureCollection."""
    collection = geometry.to_feature_collection([_rectangle()])
    assert collection["type"] == "FeatureCollection"
    (feature,) = collection["features"]
    assert feature["geometry"]["type"] == "Polygon"
    assert len(feature["geometry"]["coordinates"][0]) == 5
