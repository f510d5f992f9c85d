"""Data models for persisted features, map layers and geometry tags.

This module defines the record types shared by the persistence service
and the client-side synchronization engine. ``FeatureRecord`` and
``LayerRecord`` mirror the persisted rows exactly: coordinates,
properties, style, layer data and styles are kept as opaque JSON strings
at rest and are only parsed by the geometry and style services.

Example:
    Creating a FeatureRecord for a circle annotation:
        >>> from mapsync.db.models import FeatureRecord
        >>> record = FeatureRecord(
        ...     feature_id="f-1",
        ...     map_id="map-1",
        ...     name="Circle",
        ...     annotation_type="Marker",
        ...     geometry_type="Circle",
        ...     coordinates="[10,20,50]",
        ... )
        >>> record.to_wire()["geometryType"]
        'Circle'
"""

from __future__ import annotations

import dataclasses
import datetime
import enum
from typing import Any, Literal

GeometryType = Literal["Point", "LineString", "Polygon", "Circle", "Rectangle"]
AnnotationType = Literal["Marker", "Highlighter", "Text", "Note", "Link", "Video"]
FeatureCategory = Literal["Data", "Annotation"]

GEOMETRY_TYPES: tuple[str, ...] = (
    "Point",
    "LineString",
    "Polygon",
    "Circle",
    "Rectangle",
)


class GeometryKind(str, enum.Enum):
    """Shape kind of a live drawing object."""

    MARKER = "Marker"
    TEXT = "Text"
    CIRCLE = "Circle"
    RECTANGLE = "Rectangle"
    LINE = "Line"
    POLYGON = "Polygon"
    UNKNOWN = "Unknown"


def _now() -> datetime.datetime:
    return datetime.datetime.now(tz=datetime.UTC)


@dataclasses.dataclass
class SerializedGeometry:
    """Normalized, string-encoded geometry of a single feature.

    Attributes:
        geometry_type: Persisted geometry type ("Point", "Circle", ...).
        coordinates: JSON-encoded coordinate tree. Points are ``[lng, lat]``,
            circles ``[lng, lat, radiusMeters]`` and rectangles
            ``[minLng, minLat, maxLng, maxLat]`` or a closed polygon ring.
        annotation_type: Annotation flavour persisted with the feature.
        kind: Shape kind the geometry was produced from.
        text: Inline text recovered from Text annotations.
    """

    geometry_type: GeometryType
    coordinates: str
    annotation_type: AnnotationType
    kind: GeometryKind = GeometryKind.UNKNOWN
    text: str | None = None


@dataclasses.dataclass
class FeatureRecord:
    """A persisted, individually drawn annotation.

    Attributes:
        feature_id: Identity assigned by the remote store (empty until the
            first successful persist).
        map_id: Map the feature belongs to.
        name: Human-readable feature name.
        annotation_type: Annotation flavour ("Marker", "Text", ...).
        geometry_type: Persisted geometry type.
        coordinates: JSON-encoded coordinate tree (see SerializedGeometry).
        properties: JSON-encoded key/value bag, carrying free text for
            Text annotations.
        style: JSON-encoded flat style bag.
        layer_id: Optional owning layer.
        description: Free-form description.
        feature_category: "Annotation" for drawn features, "Data" otherwise.
        is_visible: Whether the feature is rendered.
        z_index: Draw order among features.
        created_at: Creation timestamp.
        updated_at: Last update timestamp, None until first update.
    """

    feature_id: str
    map_id: str
    name: str
    annotation_type: AnnotationType | None
    geometry_type: GeometryType
    coordinates: str
    properties: str = "{}"
    style: str = "{}"
    layer_id: str | None = None
    description: str | None = None
    feature_category: FeatureCategory = "Annotation"
    is_visible: bool = True
    z_index: int = 0
    created_at: datetime.datetime = dataclasses.field(default_factory=_now)
    updated_at: datetime.datetime | None = None

    def to_wire(self) -> dict[str, Any]:
        """Return the camelCase JSON shape used on the wire."""
        return {
            "featureId": self.feature_id,
            "mapId": self.map_id,
            "layerId": self.layer_id,
            "name": self.name,
            "description": self.description,
            "featureCategory": self.feature_category,
            "annotationType": self.annotation_type,
            "geometryType": self.geometry_type,
            "coordinates": self.coordinates,
            "properties": self.properties,
            "style": self.style,
            "isVisible": self.is_visible,
            "zIndex": self.z_index,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": (
                self.updated_at.isoformat() if self.updated_at else None
            ),
        }

    @classmethod
    def from_wire(cls, payload: dict[str, Any]) -> FeatureRecord:
        """Build a record from its camelCase JSON shape."""
        created_at = payload.get("createdAt")
        updated_at = payload.get("updatedAt")
        return cls(
            feature_id=str(payload.get("featureId") or ""),
            map_id=str(payload.get("mapId") or ""),
            layer_id=payload.get("layerId"),
            name=str(payload.get("name") or ""),
            description=payload.get("description"),
            feature_category=payload.get("featureCategory") or "Annotation",
            annotation_type=payload.get("annotationType"),
            geometry_type=payload["geometryType"],
            coordinates=str(payload.get("coordinates") or ""),
            properties=payload.get("properties") or "{}",
            style=payload.get("style") or "{}",
            is_visible=bool(payload.get("isVisible", True)),
            z_index=int(payload.get("zIndex") or 0),
            created_at=(
                datetime.datetime.fromisoformat(created_at)
                if created_at
                else _now()
            ),
            updated_at=(
                datetime.datetime.fromisoformat(updated_at)
                if updated_at
                else None
            ),
        )


@dataclasses.dataclass
class LayerRecord:
    """A bulk GeoJSON layer attached to a map.

    Attributes:
        layer_id: Identity of the layer.
        map_id: Map the layer is attached to.
        name: Human-readable layer name.
        layer_data: JSON-encoded GeoJSON FeatureCollection.
        layer_style: JSON-encoded base style of the layer.
        custom_style: JSON-encoded per-map override; wins when merged.
        filter_config: JSON-encoded filter configuration.
        is_visible: Whether the layer is rendered.
        z_index: Draw order among layers.
    """

    layer_id: str
    map_id: str
    name: str
    layer_data: str = "{}"
    layer_style: str = "{}"
    custom_style: str | None = None
    filter_config: str | None = None
    is_visible: bool = True
    z_index: int = 0

    def to_wire(self) -> dict[str, Any]:
        """Return the camelCase JSON shape used on the wire."""
        return {
            "layerId": self.layer_id,
            "mapId": self.map_id,
            "layerName": self.name,
            "layerData": self.layer_data,
            "layerStyle": self.layer_style,
            "customStyle": self.custom_style,
            "filterConfig": self.filter_config,
            "isVisible": self.is_visible,
            "zIndex": self.z_index,
        }

    @classmethod
    def from_wire(cls, payload: dict[str, Any]) -> LayerRecord:
        """Build a record from its camelCase JSON shape."""
        return cls(
            layer_id=str(payload.get("layerId") or payload.get("id") or ""),
            map_id=str(payload.get("mapId") or ""),
            name=str(payload.get("layerName") or payload.get("name") or ""),
            layer_data=payload.get("layerData") or "{}",
            layer_style=payload.get("layerStyle") or "{}",
            custom_style=payload.get("customStyle"),
            filter_config=payload.get("filterConfig"),
            is_visible=bool(payload.get("isVisible", True)),
            z_index=int(payload.get("zIndex") or 0),
        )
