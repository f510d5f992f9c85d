"""Tests for rendering persisted features and bulk layers onto the map.

Covers drawing object construction for every geometry type, the fixed
z-order of layers below features, skipping of unparseable rows, event
wiring of overlays and cancellation of in-flight render passes.

See Also:
    - backend/mapsync/services/render.py for the implementation.
"""

from __future__ import annotations

import asyncio
import json

import pytest

from mapsync.core import errors
from mapsync.db import models as db_models
from mapsync.services import events, geometry, render
from mapsync.surface import map as surface_map
from mapsync.surface import objects

ZONES = {
    "type": "FeatureCollection",
    "features": [
        {
            "type": "Feature",
            "geometry": {"type": "Point", "coordinates": [0, 0]},
            "properties": {"name": "North"},
        },
        {
            "type": "Feature",
            "geometry": {"type": "Point", "coordinates": [1, 1]},
            "properties": {},
        },
    ],
}


def _record(
    feature_id: str,
    geometry_type: str = "Point",
    coordinates: str = "[2,1]",
    **overrides: object,
) -> db_models.FeatureRecord:
    fields: dict[str, object] = {
        "feature_id": feature_id,
        "map_id": "map-1",
        "name": f"Feature {feature_id}",
        "annotation_type": "Marker",
        "geometry_type": geometry_type,
        "coordinates": coordinates,
    }
    fields.update(overrides)
    return db_models.FeatureRecord(**fields)  # type: ignore[arg-type]


def _layer(layer_id: str, **overrides: object) -> db_models.LayerRecord:
    fields: dict[str, object] = {
        "layer_id": layer_id,
        "map_id": "map-1",
        "name": layer_id.title(),
        "layer_data": json.dumps(ZONES),
    }
    fields.update(overrides)
    return db_models.LayerRecord(**fields)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Drawing objects
# ---------------------------------------------------------------------------


def test_build_drawing_object_circle() -> None:
    """A Circle row becomes a tagged circle at [lat, lng]."""
    surface = surface_map.InMemoryMapSurface()
    value = geometry.deserialize(_record("c", "Circle", "[10,20,50]"))
    obj = render.build_drawing_object(surface, value)
    assert isinstance(obj, objects.Circle)
    assert obj.latlng == objects.LatLng(lat=20, lng=10)
    assert obj.radius == 50
    assert obj.kind is db_models.GeometryKind.CIRCLE


def test_build_drawing_object_circle_out_of_range() -> None:
    """A circle center outside the lng/lat range is a parse failure."""
    surface = surface_map.InMemoryMapSurface()
    value = geometry.deserialize(_record("c", "Circle", "[200,0,5]"))
    with pytest.raises(errors.ParseFailureError):
        render.build_drawing_object(surface, value)


def test_build_drawing_object_text() -> None:
    """Text rows become markers with an escaped div icon."""
    surface = surface_map.InMemoryMapSurface()
    record = _record(
        "t", annotation_type="Text", properties='{"text": "<i>Hi</i>"}'
    )
    obj = render.build_drawing_object(surface, geometry.deserialize(record))
    assert isinstance(obj, objects.Marker)
    assert obj.icon is not None
    assert obj.icon.html == "&lt;i&gt;Hi&lt;/i&gt;"
    assert obj.icon.class_name == render.TEXT_ICON_CLASS
    assert obj.options["text"] == "<i>Hi</i>"
    assert geometry.resolve_kind(obj) is db_models.GeometryKind.TEXT


def test_build_drawing_object_rectangle_forms() -> None:
    """Bounds and ring encodings both produce the same rectangle."""
    surface = surface_map.InMemoryMapSurface()
    from_bounds = render.build_drawing_object(
        surface, geometry.deserialize(_record("r", "Rectangle", "[0,0,2,1]"))
    )
    from_ring = render.build_drawing_object(
        surface,
        geometry.deserialize(
            _record("r", "Rectangle", "[[[0,0],[2,0],[2,1],[0,1],[0,0]]]")
        ),
    )
    expected = objects.Bounds(south=0, west=0, north=1, east=2)
    assert from_bounds.bounds == expected
    assert from_ring.bounds == expected


def test_popup_content() -> None:
    """Popups list escaped properties or fall back to the name."""
    assert (
        render.popup_content({"kind": "<b>"})
        == "<strong>kind:</strong> &lt;b&gt;"
    )
    assert render.popup_content({}, "Park") == "<strong>Name:</strong> Park"
    assert (
        render.popup_content(None)
        == "<strong>Name:</strong> Unnamed Feature"
    )


def test_build_feature_overlay_applies_style_and_popup() -> None:
    """Feature overlays carry style, z-index and popup."""
    surface = surface_map.InMemoryMapSurface()
    record = _record(
        "c",
        "Circle",
        "[10,20,50]",
        style='{"color": "#ff0000"}',
        properties='{"owner": "ops"}',
        z_index=4,
    )
    overlay = render.build_feature_overlay(surface, record)
    assert overlay.options["color"] == "#ff0000"
    assert overlay.z_index == render.FEATURE_Z_OFFSET + 4
    assert overlay.popup == "<strong>owner:</strong> ops"


def test_build_feature_overlay_tolerates_bad_bags() -> None:
    """Malformed style and properties do not prevent rendering."""
    surface = surface_map.InMemoryMapSurface()
    record = _record("m", style="{bad", properties="[1]")
    overlay = render.build_feature_overlay(surface, record)
    assert overlay.popup == "<strong>Name:</strong> Feature m"


# ---------------------------------------------------------------------------
# Render passes
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_render_features_skips_bad_and_hidden_rows() -> None:
    """Unparseable rows are skipped and the rest of the batch renders."""
    surface = surface_map.InMemoryMapSurface()
    group = surface_map.OverlayGroup()
    tracked: dict[str, objects.DrawingObject] = {}
    records = [
        _record("a", z_index=0),
        _record("bad", "LineString", "abc"),
        _record("hidden", is_visible=False),
        _record("b", "Circle", "[10,20,50]", z_index=1),
    ]

    rendered = await render.render_features(surface, group, records, tracked)

    assert rendered == 2
    assert sorted(tracked) == ["a", "b"]
    assert [tracked[k].z_index for k in ("a", "b")] == [2000, 2001]
    assert len(group) == 2


@pytest.mark.anyio
async def test_render_features_is_idempotent() -> None:
    """A second pass replaces the overlays of the first."""
    surface = surface_map.InMemoryMapSurface()
    group = surface_map.OverlayGroup()
    tracked: dict[str, objects.DrawingObject] = {}
    records = [_record("a"), _record("b")]

    await render.render_features(surface, group, records, tracked)
    first = dict(tracked)
    await render.render_features(surface, group, records, tracked)

    assert len(group) == 2
    assert all(not group.has_overlay(overlay) for overlay in first.values())


@pytest.mark.anyio
async def test_layers_render_below_features() -> None:
    """Layers use the 1000 offset and features the 2000 offset."""
    surface = surface_map.InMemoryMapSurface()
    group = surface_map.OverlayGroup()
    layer_overlays: dict[str, objects.DrawingObject] = {}
    feature_overlays: dict[str, objects.DrawingObject] = {}

    await render.render_layers(
        surface, [_layer("zones", z_index=5)], layer_overlays
    )
    await render.render_features(
        surface, group, [_record("a", z_index=0)], feature_overlays
    )

    layer_z = layer_overlays["zones"].z_index
    feature_z = feature_overlays["a"].z_index
    assert layer_z == 1005
    assert feature_z == 2000
    assert layer_z < feature_z
    assert surface.has_overlay(layer_overlays["zones"])


@pytest.mark.anyio
async def test_high_layer_z_index_stays_below_features() -> None:
    """Layer zIndex values past the layer band never reach the features."""
    surface = surface_map.InMemoryMapSurface()
    group = surface_map.OverlayGroup()
    layer_overlays: dict[str, objects.DrawingObject] = {}
    feature_overlays: dict[str, objects.DrawingObject] = {}

    await render.render_layers(
        surface, [_layer("zones", z_index=5000)], layer_overlays
    )
    await render.render_features(
        surface, group, [_record("a", z_index=-3)], feature_overlays
    )

    assert layer_overlays["zones"].z_index == 1999
    assert feature_overlays["a"].z_index == 2000
    assert render.layer_z_index(-1) == 1000


@pytest.mark.anyio
async def test_render_layers_skips_bad_and_hidden_layers() -> None:
    """Invalid layer data is skipped; hidden layers are not drawn."""
    surface = surface_map.InMemoryMapSurface()
    tracked: dict[str, objects.DrawingObject] = {}
    layers = [
        _layer("zones"),
        _layer("broken", layer_data='{"type": "Feature"}'),
        _layer("garbage", layer_data="{oops"),
        _layer("hidden", is_visible=False),
    ]

    rendered = await render.render_layers(surface, layers, tracked)

    assert rendered == 1
    assert list(tracked) == ["zones"]


@pytest.mark.anyio
async def test_render_layers_merges_custom_style() -> None:
    """The custom style of a layer overrides its base style."""
    surface = surface_map.InMemoryMapSurface()
    tracked: dict[str, objects.DrawingObject] = {}
    layer = _layer(
        "zones",
        layer_style='{"color": "#111111", "weight": 4}',
        custom_style='{"color": "#00ff00"}',
    )

    await render.render_layers(surface, [layer], tracked)

    assert tracked["zones"].options == {"color": "#00ff00", "weight": 4}


@pytest.mark.anyio
async def test_aborted_signal_renders_nothing() -> None:
    """A pass started with a set signal leaves everything untouched."""
    surface = surface_map.InMemoryMapSurface()
    group = surface_map.OverlayGroup()
    tracked: dict[str, objects.DrawingObject] = {}
    signal = asyncio.Event()
    signal.set()

    assert await render.render_features(
        surface, group, [_record("a")], tracked, signal
    ) == 0
    assert await render.render_layers(surface, [_layer("z")], {}, signal) == 0
    assert len(group) == 0


@pytest.mark.anyio
async def test_signal_cancels_pass_in_flight() -> None:
    """Setting the signal mid-pass stops before the next unit."""
    surface = surface_map.InMemoryMapSurface()
    group = surface_map.OverlayGroup()
    tracked: dict[str, objects.DrawingObject] = {}
    signal = asyncio.Event()
    records = [_record(str(i)) for i in range(5)]

    task = asyncio.create_task(
        render.render_features(surface, group, records, tracked, signal)
    )
    await asyncio.sleep(0)
    signal.set()
    rendered = await task

    assert rendered == 1
    assert len(group) == 1


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


def test_layer_children_publish_zone_events() -> None:
    """Right click and click on a zone publish channel events."""
    surface = surface_map.InMemoryMapSurface()
    channel = events.EventChannel()
    menus: list[events.ZoneContextMenuRequested] = []
    selections: list[events.ZoneSelected] = []
    channel.subscribe(events.ZoneContextMenuRequested, menus.append)
    channel.subscribe(events.ZoneSelected, selections.append)

    overlay = render.build_layer_overlay(surface, _layer("zones"), channel)
    first = overlay.children[0]
    first.fire("contextmenu", {"x": 10, "y": 20})
    first.fire("click")

    assert first.popup == "<strong>name:</strong> North"
    assert overlay.children[1].popup is None
    (menu,) = menus
    assert (menu.layer_id, menu.layer_name, menu.x, menu.y) == (
        "zones",
        "Zones",
        10,
        20,
    )
    assert menu.feature["properties"] == {"name": "North"}
    assert selections[0].layer_id == "zones"


def test_feature_overlay_publishes_click() -> None:
    """Clicking a feature overlay publishes FeatureClicked."""
    surface = surface_map.InMemoryMapSurface()
    channel = events.EventChannel()
    clicks: list[events.FeatureClicked] = []
    channel.subscribe(events.FeatureClicked, clicks.append)

    overlay = render.build_feature_overlay(surface, _record("f-1"), channel)
    overlay.fire("click")

    assert [c.feature_id for c in clicks] == ["f-1"]
    assert clicks[0].overlay is overlay


def test_load_features_builds_display_list() -> None:
    """Every parseable row is listed; only visible ones are drawn."""
    surface = surface_map.InMemoryMapSurface()
    group = surface_map.OverlayGroup()
    records = [
        _record("a"),
        _record("hidden", is_visible=False),
        _record("bad", "Polygon", "[[[0,0]]]"),
    ]

    features = render.load_features(surface, group, records)

    assert [f.feature_id for f in features] == ["a", "hidden"]
    assert features[0].id == "feature-a"
    assert features[1].is_visible is False
    assert len(group) == 1
