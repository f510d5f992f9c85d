"""Rendering of persisted features and bulk layers onto the map surface.

Render passes are full and idempotent: every overlay tracked by a
previous pass is detached first, then the overlays are rebuilt from the
current record list. Rows that cannot be parsed are skipped with a
logged warning; the rest of the batch still renders.

Passes accept an ``asyncio.Event`` as cancellation signal. The signal is
checked between units of work and the pass yields to the event loop after
each unit, so a newer pass can supersede an in-flight one without the old
pass applying its results afterwards.

Z-order is fixed: bulk layers draw at ``LAYER_Z_OFFSET + zIndex`` and
individually drawn features at ``FEATURE_Z_OFFSET + zIndex``, so
annotations always stay selectable above reference geometry. Layer
zIndex values are clamped to the band below the features, and feature
zIndex values to non-negative.

Example:
    Redraw every visible feature of a map:
        >>> tracked = {}
        >>> await render.render_features(surface, group, records, tracked)
        >>> sorted(o.z_index for o in tracked.values())
        [2000, 2001]
"""

from __future__ import annotations

import asyncio
import html
from typing import TYPE_CHECKING, Any

from loguru import logger

from mapsync.core import errors
from mapsync.db import models as db_models
from mapsync.services import events, geometry, store, style
from mapsync.surface import objects

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping

    from mapsync.surface import map as surface_map

LAYER_Z_OFFSET = 1000
FEATURE_Z_OFFSET = 2000


def layer_z_index(z_index: int) -> int:
    """Map a layer zIndex into the layer band, below every feature."""
    band = FEATURE_Z_OFFSET - LAYER_Z_OFFSET - 1
    return LAYER_Z_OFFSET + min(max(z_index, 0), band)


def feature_z_index(z_index: int) -> int:
    return FEATURE_Z_OFFSET + max(z_index, 0)


TEXT_ICON_CLASS = "text-label"


def _aborted(signal: asyncio.Event | None) -> bool:
    return signal is not None and signal.is_set()


def _latlng(position: list[float]) -> objects.LatLng:
    return objects.LatLng(lat=position[1], lng=position[0])


def build_drawing_object(
    surface: surface_map.MapSurfaceProtocol,
    geometry_value: db_models.SerializedGeometry,
) -> objects.DrawingObject:
    """Construct a live drawing object from a normalized geometry.

    The returned object carries the geometry kind as an explicit tag.

    Raises:
        ParseFailureError: If the coordinates do not fit the geometry type,
            or a circle center lies outside the lng/lat range.
    """
    tree = geometry.parse_coordinates(
        geometry_value.geometry_type, geometry_value.coordinates
    )
    geometry_type = geometry_value.geometry_type
    kind = geometry_value.kind

    obj: objects.DrawingObject
    if geometry_type == "Point":
        icon = None
        if kind is db_models.GeometryKind.TEXT:
            icon = objects.Icon(
                html=html.escape(geometry_value.text or ""),
                class_name=TEXT_ICON_CLASS,
            )
        obj = surface.marker(_latlng(tree), icon=icon)
        if geometry_value.text is not None:
            obj.options["text"] = geometry_value.text
    elif geometry_type == "Circle":
        lng, lat, radius = tree
        if not (-180 <= lng <= 180 and -90 <= lat <= 90):
            raise errors.ParseFailureError(
                f"Circle center out of range: lng={lng}, lat={lat}"
            )
        obj = surface.circle(objects.LatLng(lat=lat, lng=lng), radius)
    elif geometry_type == "Rectangle":
        if isinstance(tree[0], list):
            points = [_latlng(p) for p in tree[0]]
            bounds = objects.Bounds.from_points(points)
        else:
            west, south, east, north = tree
            bounds = objects.Bounds(
                south=south, west=west, north=north, east=east
            )
        obj = surface.rectangle(bounds)
    elif geometry_type == "LineString":
        obj = surface.polyline([_latlng(p) for p in tree])
    else:
        obj = surface.polygon([[_latlng(p) for p in ring] for ring in tree])

    obj.kind = kind
    return obj


def popup_content(
    properties: Mapping[str, Any] | None,
    name: str | None = None,
) -> str:
    """Build the popup html of a feature.

    Lists every property as a ``<strong>key:</strong> value`` line, or
    falls back to the feature name when there are no properties.
    """
    if properties:
        return "<br>".join(
            f"<strong>{html.escape(str(key))}:</strong> "
            f"{html.escape(str(value))}"
            for key, value in properties.items()
        )
    return f"<strong>Name:</strong> {html.escape(name or 'Unnamed Feature')}"


def _screen_point(payload: Any) -> tuple[float, float]:
    if isinstance(payload, dict):
        return payload.get("x", 0), payload.get("y", 0)
    return getattr(payload, "x", 0), getattr(payload, "y", 0)


def _on_zone_contextmenu(
    channel: events.EventChannel,
    record: db_models.LayerRecord,
    child: objects.GeoJsonChild,
) -> Callable[[Any], None]:
    def handler(payload: Any) -> None:
        x, y = _screen_point(payload)
        channel.publish(
            events.ZoneContextMenuRequested(
                feature=child.feature,
                layer_id=record.layer_id,
                layer_name=record.name,
                x=x,
                y=y,
                overlay=child,
            )
        )

    return handler


def _on_zone_click(
    channel: events.EventChannel,
    record: db_models.LayerRecord,
    child: objects.GeoJsonChild,
) -> Callable[[Any], None]:
    def handler(_payload: Any) -> None:
        channel.publish(events.ZoneSelected(record.layer_id, child.feature))

    return handler


def build_layer_overlay(
    surface: surface_map.MapSurfaceProtocol,
    record: db_models.LayerRecord,
    channel: events.EventChannel | None = None,
) -> objects.GeoJsonOverlay:
    """Build the composite overlay of a bulk layer.

    Raises:
        ParseFailureError: If ``layer_data`` is not a FeatureCollection.
    """
    data = geometry.parse_json_bag(record.layer_data, "layerData")
    if data.get("type") != "FeatureCollection" or not isinstance(
        data.get("features"), list
    ):
        raise errors.ParseFailureError(
            f"Layer {record.layer_id} data is not a FeatureCollection"
        )

    overlay = surface.geojson(
        data, style.merge_layer_style(record.layer_style, record.custom_style)
    )
    for child in overlay.children:
        properties = child.feature.get("properties")
        if isinstance(properties, dict) and properties:
            child.bind_popup(popup_content(properties))
        if channel is not None:
            child.on("contextmenu", _on_zone_contextmenu(channel, record, child))
            child.on("click", _on_zone_click(channel, record, child))
    overlay.set_z_index(layer_z_index(record.z_index))
    return overlay


def build_feature_overlay(
    surface: surface_map.MapSurfaceProtocol,
    record: db_models.FeatureRecord,
    channel: events.EventChannel | None = None,
) -> objects.DrawingObject:
    """Build the live overlay of a persisted feature.

    Applies the persisted style, the feature z-index and the popup.

    Raises:
        ParseFailureError: If the coordinates cannot be recovered.
    """
    overlay = build_drawing_object(surface, geometry.deserialize(record))
    overlay.set_z_index(feature_z_index(record.z_index))

    try:
        style.apply_style(overlay, geometry.parse_json_bag(record.style, "style"))
    except errors.ParseFailureError as exc:
        logger.warning(f"Ignoring style of feature {record.feature_id}: {exc}")

    try:
        properties = geometry.parse_json_bag(record.properties, "properties")
    except errors.ParseFailureError:
        properties = {}
    overlay.bind_popup(popup_content(properties, record.name))

    if channel is not None:
        feature_id = record.feature_id
        overlay.on(
            "click",
            lambda _payload: channel.publish(
                events.FeatureClicked(feature_id, overlay)
            ),
        )
    return overlay


async def render_layers(
    surface: surface_map.MapSurfaceProtocol,
    layers: Iterable[db_models.LayerRecord],
    tracked: dict[str, objects.DrawingObject],
    signal: asyncio.Event | None = None,
    channel: events.EventChannel | None = None,
) -> int:
    """Redraw every visible bulk layer.

    Args:
        surface: Map surface receiving the layer overlays.
        layers: Persisted layer records.
        tracked: Layer id -> overlay map of the previous pass; cleared and
            refilled in place.
        signal: Optional cancellation signal; set means aborted.
        channel: Optional event channel for zone context menus and clicks.

    Returns:
        Number of layers rendered.
    """
    if _aborted(signal):
        return 0

    for overlay in tracked.values():
        if surface.has_overlay(overlay):
            surface.remove_overlay(overlay)
    tracked.clear()

    rendered = 0
    for record in layers:
        if _aborted(signal):
            logger.debug("Layer render pass superseded")
            break
        if not record.is_visible:
            continue
        try:
            overlay = build_layer_overlay(surface, record, channel)
        except errors.ParseFailureError as exc:
            logger.warning(f"Failed to render layer {record.name}: {exc}")
            continue
        if _aborted(signal):
            break
        surface.add_overlay(overlay)
        tracked[record.layer_id] = overlay
        rendered += 1
        await asyncio.sleep(0)
    return rendered


async def render_features(
    surface: surface_map.MapSurfaceProtocol,
    group: surface_map.OverlayContainer,
    records: Iterable[db_models.FeatureRecord],
    tracked: dict[str, objects.DrawingObject],
    signal: asyncio.Event | None = None,
    channel: events.EventChannel | None = None,
) -> int:
    """Redraw every visible feature into the overlay group.

    Args:
        surface: Map surface providing the drawing object factories.
        group: Overlay group receiving the feature overlays.
        records: Persisted feature records.
        tracked: Feature id -> overlay map of the previous pass; cleared
            and refilled in place.
        signal: Optional cancellation signal; set means aborted.
        channel: Optional event channel for feature clicks.

    Returns:
        Number of features rendered.
    """
    if _aborted(signal):
        return 0

    for overlay in tracked.values():
        if surface.has_overlay(overlay):
            surface.remove_overlay(overlay)
        if group.has_overlay(overlay):
            group.remove_overlay(overlay)
    tracked.clear()

    rendered = 0
    for record in records:
        if _aborted(signal):
            logger.debug("Feature render pass superseded")
            break
        if not record.is_visible:
            continue
        try:
            overlay = build_feature_overlay(surface, record, channel)
        except errors.ParseFailureError as exc:
            logger.warning(f"Skipping feature {record.feature_id}: {exc}")
            continue
        group.add_overlay(overlay)
        tracked[record.feature_id] = overlay
        rendered += 1
        await asyncio.sleep(0)
    return rendered


def load_features(
    surface: surface_map.MapSurfaceProtocol,
    group: surface_map.OverlayContainer,
    records: Iterable[db_models.FeatureRecord],
    channel: events.EventChannel | None = None,
) -> list[store.FeatureData]:
    """Rebuild the feature display list from persisted records.

    Every parseable record gets a live overlay; only visible ones are added
    to the overlay group. Unparseable rows are skipped with a warning.
    """
    features: list[store.FeatureData] = []
    for record in records:
        try:
            overlay = build_feature_overlay(surface, record, channel)
        except errors.ParseFailureError as exc:
            logger.warning(f"Skipping feature {record.feature_id}: {exc}")
            continue
        if record.is_visible:
            group.add_overlay(overlay)
        features.append(
            store.FeatureData(
                id=f"feature-{record.feature_id}",
                name=record.name or f"Feature {len(features) + 1}",
                type=geometry.resolve_kind(overlay),
                layer=overlay,
                is_visible=record.is_visible,
                feature_id=record.feature_id,
            )
        )
    return features
