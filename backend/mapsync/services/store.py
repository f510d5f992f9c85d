"""In-memory display list of drawn features and bulk layers.

The module-level functions are pure, immutable-update list operations:
each returns a new list and never mutates its input. The visibility and
removal helpers are the one exception to purity: they also add or remove
the live overlay from the supplied overlay group or map so that the
rendered surface always matches the list state.

``FeatureStore`` is the single owner of the feature list, the layer list
and the persisted-identity -> overlay tracking maps. The sync engine and
the rendering glue are the only components that mutate it.

Example:
    Track a freshly drawn polygon and rename it:
        >>> from mapsync.services import store
        >>> features = store.add_feature([], polygon)
        >>> features[0].name
        'Polygon 1'
        >>> renamed = store.rename_feature(features, features[0].id, "Park")
        >>> renamed[0].name, features[0].name
        ('Park', 'Polygon 1')
"""

from __future__ import annotations

import dataclasses
import uuid
from typing import TYPE_CHECKING, Any

from mapsync.db import models as db_models
from mapsync.services import geometry

if TYPE_CHECKING:
    from mapsync.surface import map as surface_map
    from mapsync.surface import objects


@dataclasses.dataclass
class FeatureData:
    """Client-side wrapper of a drawn feature.

    Attributes:
        id: Local handle, stable for the lifetime of the session.
        name: Display name.
        type: Geometry kind of the live object.
        layer: Reference to the live drawing object (owned by the map).
        is_visible: Whether the object is in the overlay group.
        feature_id: Remote identity; temporary until the first persist
            succeeds, None for features never sent to the store.
    """

    id: str
    name: str
    type: db_models.GeometryKind
    layer: Any
    is_visible: bool = True
    feature_id: str | None = None


@dataclasses.dataclass
class LayerInfo:
    id: str
    name: str
    type: db_models.GeometryKind
    layer: Any
    is_visible: bool = True


def new_local_id(prefix: str = "feature") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def add_feature(
    features: list[FeatureData],
    layer: objects.DrawingObject,
    name: str | None = None,
    feature_id: str | None = None,
    local_id: str | None = None,
    is_visible: bool = True,
) -> list[FeatureData]:
    kind = geometry.resolve_kind(layer)
    feature = FeatureData(
        id=local_id or new_local_id("feature"),
        name=name or f"{kind.value} {len(features) + 1}",
        type=kind,
        layer=layer,
        is_visible=is_visible,
        feature_id=feature_id,
    )
    return [*features, feature]


def remove_feature(
    features: list[FeatureData],
    local_id: str,
    group: surface_map.OverlayContainer | None = None,
) -> list[FeatureData]:
    """Drop a feature, detaching its overlay from ``group`` if supplied."""
    feature = next((f for f in features if f.id == local_id), None)
    if feature is not None and group is not None:
        group.remove_overlay(feature.layer)
    return [f for f in features if f.id != local_id]


def rename_feature(
    features: list[FeatureData],
    local_id: str,
    new_name: str,
) -> list[FeatureData]:
    return [
        dataclasses.replace(f, name=new_name) if f.id == local_id else f
        for f in features
    ]


def toggle_feature_visibility(
    features: list[FeatureData],
    local_id: str,
    group: surface_map.OverlayContainer | None = None,
) -> list[FeatureData]:
    """Flip visibility and keep the overlay group in step with it."""
    result: list[FeatureData] = []
    for f in features:
        if f.id != local_id:
            result.append(f)
            continue
        visible = not f.is_visible
        if group is not None:
            if visible and not group.has_overlay(f.layer):
                group.add_overlay(f.layer)
            elif not visible:
                group.remove_overlay(f.layer)
        result.append(dataclasses.replace(f, is_visible=visible))
    return result


def replace_feature_id(
    features: list[FeatureData],
    local_id: str,
    feature_id: str,
) -> list[FeatureData]:
    """Promote a feature's temporary identity to the server-assigned one."""
    return [
        dataclasses.replace(f, feature_id=feature_id) if f.id == local_id else f
        for f in features
    ]


def replace_layer(
    features: list[FeatureData],
    local_id: str,
    layer: objects.DrawingObject,
) -> list[FeatureData]:
    return [
        dataclasses.replace(f, layer=layer) if f.id == local_id else f
        for f in features
    ]


def find_feature(
    features: list[FeatureData],
    feature_id: str,
) -> FeatureData | None:
    """Look a feature up by remote identity, then by local handle."""
    for f in features:
        if f.feature_id == feature_id:
            return f
    return next((f for f in features if f.id == feature_id), None)


def add_layer(
    layers: list[LayerInfo],
    layer: objects.DrawingObject,
    name: str | None = None,
    layer_id: str | None = None,
) -> list[LayerInfo]:
    kind = geometry.resolve_kind(layer)
    info = LayerInfo(
        id=layer_id or new_local_id("layer"),
        name=name or f"{kind.value} {len(layers) + 1}",
        type=kind,
        layer=layer,
    )
    return [*layers, info]


def remove_layer(
    layers: list[LayerInfo],
    layer_id: str,
    surface: surface_map.OverlayContainer | None = None,
) -> list[LayerInfo]:
    info = next((item for item in layers if item.id == layer_id), None)
    if info is not None and surface is not None:
        surface.remove_overlay(info.layer)
    return [item for item in layers if item.id != layer_id]


def toggle_layer_visibility(
    layers: list[LayerInfo],
    layer_id: str,
    surface: surface_map.OverlayContainer | None = None,
) -> list[LayerInfo]:
    result: list[LayerInfo] = []
    for item in layers:
        if item.id != layer_id:
            result.append(item)
            continue
        visible = not item.is_visible
        if surface is not None:
            if visible and not surface.has_overlay(item.layer):
                surface.add_overlay(item.layer)
            elif not visible:
                surface.remove_overlay(item.layer)
        result.append(dataclasses.replace(item, is_visible=visible))
    return result


def rename_layer(
    layers: list[LayerInfo],
    layer_id: str,
    new_name: str,
) -> list[LayerInfo]:
    return [
        dataclasses.replace(item, name=new_name) if item.id == layer_id else item
        for item in layers
    ]


class FeatureStore:
    """Owner of the display lists and the overlay tracking maps.

    Attributes:
        features: Current feature list (replaced, never mutated in place).
        layers: Current layer list.
        group: Overlay group holding visible feature overlays.
        surface: Map surface holding bulk layer overlays.
        feature_overlays: Persisted feature id -> rendered overlay.
        layer_overlays: Persisted layer id -> rendered overlay.
    """

    def __init__(
        self,
        group: surface_map.OverlayGroup | None = None,
        surface: surface_map.MapSurfaceProtocol | None = None,
    ) -> None:
        self.features: list[FeatureData] = []
        self.layers: list[LayerInfo] = []
        self.group = group
        self.surface = surface
        self.feature_overlays: dict[str, objects.DrawingObject] = {}
        self.layer_overlays: dict[str, objects.DrawingObject] = {}

    def add_feature(
        self,
        layer: objects.DrawingObject,
        name: str | None = None,
        feature_id: str | None = None,
        local_id: str | None = None,
        is_visible: bool = True,
    ) -> FeatureData:
        self.features = add_feature(
            self.features, layer, name, feature_id, local_id, is_visible
        )
        return self.features[-1]

    def remove_feature(self, local_id: str, detach: bool = True) -> None:
        """Drop a feature; ``detach=False`` leaves its overlay on the group."""
        feature = self.get(local_id)
        self.features = remove_feature(
            self.features, local_id, self.group if detach else None
        )
        if feature is not None and feature.feature_id:
            self.feature_overlays.pop(feature.feature_id, None)

    def rename_feature(self, local_id: str, new_name: str) -> None:
        self.features = rename_feature(self.features, local_id, new_name)

    def toggle_feature_visibility(self, local_id: str) -> None:
        self.features = toggle_feature_visibility(
            self.features, local_id, self.group
        )

    def promote(self, local_id: str, feature_id: str) -> FeatureData | None:
        self.features = replace_feature_id(self.features, local_id, feature_id)
        feature = self.get(local_id)
        if feature is not None:
            self.feature_overlays[feature_id] = feature.layer
        return feature

    def get(self, feature_id: str) -> FeatureData | None:
        return find_feature(self.features, feature_id)

    def add_layer(
        self,
        layer: objects.DrawingObject,
        name: str | None = None,
        layer_id: str | None = None,
    ) -> LayerInfo:
        self.layers = add_layer(self.layers, layer, name, layer_id)
        return self.layers[-1]

    def remove_layer(self, layer_id: str) -> None:
        self.layers = remove_layer(self.layers, layer_id, self.surface)
        self.layer_overlays.pop(layer_id, None)

    def toggle_layer_visibility(self, layer_id: str) -> None:
        self.layers = toggle_layer_visibility(
            self.layers, layer_id, self.surface
        )

    def rename_layer(self, layer_id: str, new_name: str) -> None:
        self.layers = rename_layer(self.layers, layer_id, new_name)

    def replace_layer(self, local_id: str, layer: objects.DrawingObject) -> None:
        """Point a feature at a rebuilt overlay (after a replay or render)."""
        self.features = replace_layer(self.features, local_id, layer)
        feature = self.get(local_id)
        if feature is not None and feature.feature_id:
            self.feature_overlays[feature.feature_id] = layer

    def rebind(self) -> None:
        """Re-point features and layers at the overlays of the last render."""
        self.features = [
            dataclasses.replace(f, layer=self.feature_overlays[f.feature_id])
            if f.feature_id in self.feature_overlays
            else f
            for f in self.features
        ]
        self.layers = [
            dataclasses.replace(item, layer=self.layer_overlays[item.id])
            if item.id in self.layer_overlays
            else item
            for item in self.layers
        ]
