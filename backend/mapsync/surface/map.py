"""Map surface and overlay group abstractions.

The map surface is the external drawing widget: it displays overlays and
constructs drawing objects from coordinates. ``MapSurfaceProtocol`` is the
interface the synchronization core consumes; ``InMemoryMapSurface`` is the
in-process implementation used for tests and headless sessions, in the
same spirit as the in-memory repositories in ``mapsync.db.database``.

Example:
    Render a marker into a sketch group:
        >>> from mapsync.surface import map as surface_map
        >>> from mapsync.surface import objects
        >>> surface = surface_map.InMemoryMapSurface()
        >>> group = surface_map.OverlayGroup()
        >>> marker = surface.marker(objects.LatLng(lat=1, lng=2))
        >>> group.add_overlay(marker)
        >>> group.has_overlay(marker)
        True
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

from mapsync.surface import objects

if TYPE_CHECKING:
    from collections.abc import Iterator


class OverlayContainer(Protocol):
    """Anything that holds overlays: the map itself or an overlay group."""

    def add_overlay(self, overlay: objects.DrawingObject) -> None: ...

    def remove_overlay(self, overlay: objects.DrawingObject) -> None: ...

    def has_overlay(self, overlay: objects.DrawingObject) -> bool: ...


class MapSurfaceProtocol(OverlayContainer, Protocol):
    """Interface of the live map widget consumed by the sync engine."""

    def marker(
        self,
        latlng: objects.LatLng,
        icon: objects.Icon | None = None,
    ) -> objects.DrawingObject: ...

    def circle(
        self,
        latlng: objects.LatLng,
        radius: float,
    ) -> objects.DrawingObject: ...

    def polyline(
        self,
        latlngs: list[objects.LatLng],
    ) -> objects.DrawingObject: ...

    def polygon(
        self,
        rings: list[list[objects.LatLng]],
    ) -> objects.DrawingObject: ...

    def rectangle(self, bounds: objects.Bounds) -> objects.DrawingObject: ...

    def geojson(
        self,
        data: dict[str, Any],
        style: dict[str, Any] | None = None,
    ) -> objects.GeoJsonOverlay: ...


class OverlayGroup(OverlayContainer):
    """Ordered, identity-based container of visible drawing objects."""

    def __init__(self) -> None:
        self._overlays: list[objects.DrawingObject] = []

    def add_overlay(self, overlay: objects.DrawingObject) -> None:
        if not self.has_overlay(overlay):
            self._overlays.append(overlay)

    def remove_overlay(self, overlay: objects.DrawingObject) -> None:
        self._overlays = [o for o in self._overlays if o is not overlay]

    def has_overlay(self, overlay: objects.DrawingObject) -> bool:
        return any(o is overlay for o in self._overlays)

    def clear(self) -> None:
        self._overlays.clear()

    def __iter__(self) -> Iterator[objects.DrawingObject]:
        return iter(list(self._overlays))

    def __len__(self) -> int:
        return len(self._overlays)


class InMemoryMapSurface(OverlayGroup, MapSurfaceProtocol):
    """Headless map surface storing overlays in memory."""

    def marker(
        self,
        latlng: objects.LatLng,
        icon: objects.Icon | None = None,
    ) -> objects.Marker:
        return objects.Marker(latlng, icon=icon)

    def circle(self, latlng: objects.LatLng, radius: float) -> objects.Circle:
        return objects.Circle(latlng, radius=radius)

    def polyline(self, latlngs: list[objects.LatLng]) -> objects.Polyline:
        return objects.Polyline(latlngs)

    def polygon(self, rings: list[list[objects.LatLng]]) -> objects.Polygon:
        return objects.Polygon(rings)

    def rectangle(self, bounds: objects.Bounds) -> objects.Rectangle:
        return objects.Rectangle(bounds)

    def geojson(
        self,
        data: dict[str, Any],
        style: dict[str, Any] | None = None,
    ) -> objects.GeoJsonOverlay:
        return objects.GeoJsonOverlay(data, style)
