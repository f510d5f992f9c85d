"""Live drawing objects owned by the interactive map surface.

These classes are the in-process model of the drawing widget's mutable
geometry objects. The synchronization core never relies on the concrete
classes: it reads the same attribute names through ``getattr`` so any
widget object exposing ``latlng``, ``radius``, ``bounds``, ``latlngs``,
``icon`` and ``options`` (plus the optional mutators) is accepted.

All coordinates are held as :class:`LatLng` pairs; serialization flips
them into GeoJSON ``[lng, lat]`` order.

Example:
    Build a circle the way the drawing tool would:
        >>> from mapsync.surface import objects
        >>> circle = objects.Circle(objects.LatLng(lat=20, lng=10), radius=50)
        >>> circle.set_radius(75)
        >>> circle.radius
        75
"""

from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from mapsync.db import models as db_models


@dataclasses.dataclass(frozen=True)
class LatLng:
    lat: float
    lng: float


@dataclasses.dataclass(frozen=True)
class Bounds:
    """Axis-aligned lng/lat bounding box."""

    south: float
    west: float
    north: float
    east: float

    @classmethod
    def from_points(cls, points: Sequence[LatLng]) -> Bounds:
        lats = [p.lat for p in points]
        lngs = [p.lng for p in points]
        return cls(
            south=min(lats),
            west=min(lngs),
            north=max(lats),
            east=max(lngs),
        )

    def corners(self) -> list[LatLng]:
        """Return SW, SE, NE, NW corners."""
        return [
            LatLng(self.south, self.west),
            LatLng(self.south, self.east),
            LatLng(self.north, self.east),
            LatLng(self.north, self.west),
        ]


@dataclasses.dataclass
class Icon:
    """Marker icon metadata (div icons carry inline html)."""

    html: str = ""
    class_name: str = ""
    icon_size: tuple[float, float] | None = None
    icon_anchor: tuple[float, float] | None = None
    popup_anchor: tuple[float, float] | None = None


class DrawingObject:
    """Base class for every overlay the map surface can display.

    Attributes:
        options: Raw option bag (style fields live here).
        kind: Optional explicit geometry tag set at creation time.
        z_index: Current draw order, None until assigned.
        popup: Bound popup html, if any.
        redraw_count: Number of redraw requests received.
    """

    latlng: LatLng | None = None
    radius: float | None = None
    bounds: Bounds | None = None
    latlngs: list[Any] | None = None
    icon: Icon | None = None

    def __init__(
        self,
        options: dict[str, Any] | None = None,
        kind: db_models.GeometryKind | None = None,
    ) -> None:
        self.options: dict[str, Any] = dict(options or {})
        self.kind = kind
        self.z_index: int | None = None
        self.popup: str | None = None
        self.redraw_count = 0
        self._handlers: dict[str, list[Callable[[Any], None]]] = {}

    def redraw(self) -> None:
        self.redraw_count += 1

    def set_z_index(self, z_index: int) -> None:
        self.z_index = z_index

    def bind_popup(self, html: str) -> None:
        self.popup = html

    def on(self, event: str, handler: Callable[[Any], None]) -> None:
        """Register a handler for a widget event ("click", "contextmenu")."""
        self._handlers.setdefault(event, []).append(handler)

    def fire(self, event: str, payload: Any = None) -> None:
        """Dispatch a widget event to the registered handlers."""
        for handler in list(self._handlers.get(event, [])):
            handler(payload)


class Marker(DrawingObject):
    """A point marker, optionally carrying a div icon."""

    def __init__(
        self,
        latlng: LatLng,
        icon: Icon | None = None,
        options: dict[str, Any] | None = None,
        kind: db_models.GeometryKind | None = None,
    ) -> None:
        super().__init__(options, kind)
        self.latlng = latlng
        self.icon = icon

    def set_icon(self, icon: Icon) -> None:
        self.icon = icon
        self.redraw()


class Path(DrawingObject):
    """Vector overlay supporting ``set_style``."""

    def set_style(self, style: dict[str, Any]) -> None:
        self.options.update(style)
        self.redraw()


class Circle(Path):
    """Circle with a radius in meters.

    Circles with a radius of 10 or less are the widget's circle markers
    and are persisted as styled points.
    """

    def __init__(
        self,
        latlng: LatLng,
        radius: float,
        options: dict[str, Any] | None = None,
        kind: db_models.GeometryKind | None = None,
    ) -> None:
        super().__init__({**(options or {}), "radius": radius}, kind)
        self.latlng = latlng
        self.radius = radius

    def set_radius(self, radius: float) -> None:
        self.radius = radius
        self.options["radius"] = radius
        self.redraw()


class Polyline(Path):
    def __init__(
        self,
        latlngs: list[Any],
        options: dict[str, Any] | None = None,
        kind: db_models.GeometryKind | None = None,
    ) -> None:
        super().__init__(options, kind)
        self.latlngs = latlngs
        flat = _flatten(latlngs)
        self.bounds = Bounds.from_points(flat) if flat else None


class Polygon(Polyline):
    """Polygon; ``latlngs`` holds a list of rings."""

    def __init__(
        self,
        rings: list[list[LatLng]],
        options: dict[str, Any] | None = None,
        kind: db_models.GeometryKind | None = None,
    ) -> None:
        super().__init__(rings, options, kind)


class Rectangle(Polygon):
    def __init__(
        self,
        bounds: Bounds,
        options: dict[str, Any] | None = None,
        kind: db_models.GeometryKind | None = None,
    ) -> None:
        super().__init__([bounds.corners()], options, kind)
        self.bounds = bounds


class GeoJsonOverlay(DrawingObject):
    """Composite overlay rendering a whole GeoJSON FeatureCollection.

    Attributes:
        data: The decoded FeatureCollection.
        children: One child overlay per GeoJSON feature.
    """

    def __init__(
        self,
        data: dict[str, Any],
        style: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(style)
        self.data = data
        self.children: list[GeoJsonChild] = [
            GeoJsonChild(feature, self)
            for feature in data.get("features", [])
            if isinstance(feature, dict)
        ]

    def set_style(self, style: dict[str, Any]) -> None:
        self.options.update(style)
        for child in self.children:
            child.options.update(style)
        self.redraw()


class GeoJsonChild(DrawingObject):
    """A single feature rendered inside a GeoJsonOverlay."""

    def __init__(self, feature: dict[str, Any], parent: GeoJsonOverlay) -> None:
        super().__init__(parent.options)
        self.feature = feature
        self.parent = parent


def _flatten(latlngs: list[Any]) -> list[LatLng]:
    flat: list[LatLng] = []
    for item in latlngs:
        if isinstance(item, LatLng):
            flat.append(item)
        elif isinstance(item, list):
            flat.extend(_flatten(item))
    return flat
