"""Optimistic synchronization of drawn features with the remote store.

``SyncEngine`` is the only component that writes to the remote API and,
together with ``FeatureStore``, the only one that mutates the overlay
group and the persisted-id -> overlay tracking maps.

Write protocol:

* ``save`` serializes and validates before any network call. A valid
  feature is inserted into the store under a temporary ``temp-...``
  identity *before* the create request resolves; success promotes it to
  the server-assigned ``featureId``, failure removes it again so the
  feature list equals its pre-call value.
* ``delete`` and visibility changes go to the remote store first; the
  local state only changes once the remote call succeeded.
* Writes for one feature are serialized with a per-feature
  ``asyncio.Lock`` and applied in call order.

Every user-driven operation reports failure through its return value
(``SaveResult``, ``bool``); none of them raises.

Example:
    Draw a circle, save it and undo the creation:
        >>> engine = SyncEngine(api, "map-1", surface)
        >>> result = await engine.save(circle)
        >>> result.feature.feature_id
        '7d9c...'
        >>> item = engine.history.undo()
        >>> await engine.apply_replay(item)
        True
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import uuid
from typing import TYPE_CHECKING, Any, Literal

from loguru import logger

from mapsync.clients import api as api_client
from mapsync.core import errors
from mapsync.db import models as db_models
from mapsync.services import autosave, geometry, render, store, style, undo
from mapsync.surface import map as surface_map

if TYPE_CHECKING:
    from collections.abc import Iterable

    from mapsync.core import config
    from mapsync.services import events
    from mapsync.surface import objects

TEMP_ID_PREFIX = "temp-"

SaveError = Literal["invalid_geometry", "remote_failure"]

UPDATABLE_FIELDS: frozenset[str] = frozenset(
    {
        "name",
        "description",
        "layerId",
        "featureCategory",
        "annotationType",
        "geometryType",
        "coordinates",
        "properties",
        "style",
        "isVisible",
        "zIndex",
    }
)

LAYER_UPDATABLE_FIELDS: frozenset[str] = frozenset(
    {"isVisible", "zIndex", "customStyle", "filterConfig", "layerName"}
)


@dataclasses.dataclass
class SaveResult:
    """Outcome of ``SyncEngine.save``: the saved feature or an error tag."""

    feature: store.FeatureData | None = None
    error: SaveError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _encode_bags(changes: dict[str, Any]) -> dict[str, Any]:
    """JSON-encode style/properties/customStyle/filterConfig bags."""
    encoded = dict(changes)
    for key in ("style", "properties", "customStyle", "filterConfig"):
        if isinstance(encoded.get(key), dict):
            encoded[key] = json.dumps(encoded[key])
    return encoded


class SyncEngine:
    """Keeps the feature store, the map surface and the remote API in step.

    Attributes:
        api: Remote feature API.
        map_id: Map being edited.
        surface: Live map surface.
        store: Owner of the display lists and overlay tracking maps.
        channel: Optional session event channel.
        history: Optional undo stack fed by every successful edit.
        autosave: Optional queue replaying undo/redo items.
        records: Last known persisted row of every feature, by feature id.
        layer_records: Last known persisted row of every layer, by layer id.
    """

    def __init__(
        self,
        api: api_client.FeatureApiProtocol,
        map_id: str,
        surface: surface_map.MapSurfaceProtocol,
        group: surface_map.OverlayGroup | None = None,
        channel: events.EventChannel | None = None,
        history: undo.UndoStack | None = None,
        rectangle_format: geometry.RectangleFormat = "bounds",
    ) -> None:
        self.api = api
        self.map_id = map_id
        self.surface = surface
        self.store = store.FeatureStore(
            group if group is not None else surface_map.OverlayGroup(),
            surface,
        )
        self.channel = channel
        self.history = history
        self.autosave: autosave.AutoSaveQueue | None = None
        self.rectangle_format = rectangle_format
        self.records: dict[str, db_models.FeatureRecord] = {}
        self.layer_records: dict[str, db_models.LayerRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._aliases: dict[str, str] = {}
        self._render_signal: asyncio.Event | None = None

    @classmethod
    def from_settings(
        cls,
        settings: config.Settings,
        map_id: str,
        surface: surface_map.MapSurfaceProtocol,
        channel: events.EventChannel | None = None,
        api: api_client.FeatureApiProtocol | None = None,
    ) -> SyncEngine:
        """Build an engine with undo history and replay queue wired up.

        Undo/redo items are queued on the auto-save queue, which replays
        them through ``apply_replay``.
        """
        engine = cls(
            api or api_client.HttpFeatureApi.from_settings(settings),
            map_id,
            surface,
            channel=channel,
        )
        engine.autosave = autosave.AutoSaveQueue.from_settings(
            settings, engine.apply_replay, channel=channel
        )
        engine.history = undo.UndoStack.from_settings(
            settings,
            channel=channel,
            on_save_required=engine.autosave.enqueue_item,
        )
        return engine

    @property
    def group(self) -> surface_map.OverlayGroup:
        return self.store.group  # type: ignore[return-value]

    def _lock(self, key: str) -> asyncio.Lock:
        return self._locks.setdefault(key, asyncio.Lock())

    def _resolve(self, feature_id: str) -> str:
        """Follow identities re-assigned by replayed creates."""
        seen: set[str] = set()
        while feature_id in self._aliases and feature_id not in seen:
            seen.add(feature_id)
            feature_id = self._aliases[feature_id]
        return feature_id

    def _record_history(
        self,
        feature_id: str,
        action: undo.UndoAction,
        before: db_models.FeatureRecord | None,
        after: db_models.FeatureRecord | None,
        description: str | None = None,
    ) -> None:
        if self.history is None:
            return
        self.history.push(
            feature_id,
            action,
            before.to_wire() if before is not None else None,
            after.to_wire() if after is not None else None,
            description,
        )

    def _live_fields(
        self,
        obj: objects.DrawingObject,
        existing: db_models.FeatureRecord | None = None,
    ) -> tuple[db_models.SerializedGeometry, dict[str, Any]]:
        """Serialize the live object into wire fields.

        Text annotations carry their text in ``properties``; other keys of
        the existing properties bag are preserved.
        """
        geometry_value = geometry.serialize(obj, self.rectangle_format)
        properties: dict[str, Any] = {}
        if existing is not None:
            try:
                properties = geometry.parse_json_bag(
                    existing.properties, "properties"
                )
            except errors.ParseFailureError as exc:
                logger.warning(f"Replacing malformed properties: {exc}")
        if geometry_value.text is not None:
            properties["text"] = geometry_value.text

        fields = {
            "geometryType": geometry_value.geometry_type,
            "coordinates": geometry_value.coordinates,
            "annotationType": geometry_value.annotation_type,
            "properties": json.dumps(properties),
            "style": json.dumps(style.extract_style(obj)),
        }
        return geometry_value, fields

    # ------------------------------------------------------------------
    # Features
    # ------------------------------------------------------------------

    async def save(
        self,
        obj: objects.DrawingObject,
        layer_id: str | None = None,
        name: str | None = None,
    ) -> SaveResult:
        """Persist a freshly drawn object with optimistic insertion.

        Args:
            obj: Live drawing object produced by the drawing tool.
            layer_id: Optional owning layer.
            name: Optional display name; defaults to "<Kind> <n>".

        Returns:
            SaveResult carrying the promoted FeatureData, or the error tag
            "invalid_geometry" (no network call made) or "remote_failure"
            (optimistic entry rolled back).
        """
        geometry_value, fields = self._live_fields(obj)
        if not geometry.validate(
            geometry_value.geometry_type, geometry_value.coordinates
        ):
            logger.warning(
                f"Refusing to save invalid {geometry_value.geometry_type}: "
                f"{geometry_value.coordinates}"
            )
            return SaveResult(error="invalid_geometry")

        z_index = len(self.store.features)
        was_attached = self.group.has_overlay(obj)
        feature = self.store.add_feature(
            obj,
            name=name,
            feature_id=f"{TEMP_ID_PREFIX}{uuid.uuid4().hex[:12]}",
        )
        if not was_attached:
            self.group.add_overlay(obj)

        record = db_models.FeatureRecord(
            feature_id="",
            map_id=self.map_id,
            layer_id=layer_id,
            name=feature.name,
            annotation_type=geometry_value.annotation_type,
            geometry_type=geometry_value.geometry_type,
            coordinates=fields["coordinates"],
            properties=fields["properties"],
            style=fields["style"],
            z_index=z_index,
        )

        async with self._lock(feature.id):
            try:
                created = await self.api.create_feature(self.map_id, record)
            except errors.RemoteFailureError as exc:
                logger.error(f"Save of {feature.name} failed, rolling back: {exc}")
                self.store.remove_feature(feature.id, detach=not was_attached)
                return SaveResult(error="remote_failure")

            promoted = self.store.promote(feature.id, created.feature_id)
            self.records[created.feature_id] = created
            obj.set_z_index(render.feature_z_index(created.z_index))

        logger.info(f"Saved {feature.name} as {created.feature_id}")
        self._record_history(
            created.feature_id, "create", None, created, f"Created {feature.name}"
        )
        return SaveResult(feature=promoted)

    async def _update(
        self,
        feature_id: str,
        changes: dict[str, Any] | None,
        action: undo.UndoAction,
    ) -> bool:
        feature = self.store.get(self._resolve(feature_id))
        if feature is None:
            logger.warning(f"Cannot update unknown feature {feature_id}")
            return False

        async with self._lock(feature.id):
            feature = self.store.get(feature.id)
            if (
                feature is None
                or not feature.feature_id
                or feature.feature_id.startswith(TEMP_ID_PREFIX)
            ):
                logger.warning(f"Feature {feature_id} is not persisted")
                return False

            remote_id = feature.feature_id
            before = self.records.get(remote_id)
            geometry_value, fields = self._live_fields(feature.layer, before)
            if not geometry.validate(
                geometry_value.geometry_type, geometry_value.coordinates
            ):
                logger.warning(f"Refusing to persist invalid geometry of {remote_id}")
                return False

            payload = {**fields, **_encode_bags(changes or {})}
            try:
                updated = await self.api.update_feature(
                    self.map_id, remote_id, payload
                )
            except errors.RemoteFailureError as exc:
                logger.error(f"Update of {remote_id} failed: {exc}")
                return False

            self.records[remote_id] = updated
            if updated.name and updated.name != feature.name:
                self.store.rename_feature(feature.id, updated.name)

        self._record_history(remote_id, action, before, updated)
        return True

    async def update(
        self,
        feature_id: str,
        changes: dict[str, Any] | None = None,
    ) -> bool:
        """Re-serialize the live object and push it with partial changes.

        Args:
            feature_id: Remote id or local handle of the feature.
            changes: Optional wire-named fields (``name``, ``zIndex``, ...)
                merged over the re-serialized geometry and style.

        Returns:
            True when the remote store accepted the update.
        """
        return await self._update(feature_id, changes, "update")

    async def update_style(
        self,
        feature_id: str,
        style_bag: dict[str, Any],
    ) -> bool:
        """Apply a style bag to the live object, then persist it."""
        feature = self.store.get(self._resolve(feature_id))
        if feature is None:
            logger.warning(f"Cannot style unknown feature {feature_id}")
            return False
        if not style.apply_style(feature.layer, style_bag):
            return False
        return await self._update(feature_id, None, "style")

    async def _delete(
        self,
        feature: store.FeatureData,
        record_history: bool,
    ) -> bool:
        async with self._lock(feature.id):
            current = self.store.get(feature.id)
            if current is None:
                return False
            remote_id = current.feature_id
            if remote_id and not remote_id.startswith(TEMP_ID_PREFIX):
                try:
                    await self.api.delete_feature(self.map_id, remote_id)
                except errors.RemoteFailureError as exc:
                    logger.error(f"Delete of {remote_id} failed: {exc}")
                    return False

            previous = self.records.pop(remote_id, None) if remote_id else None
            self.store.remove_feature(current.id)

        logger.info(f"Deleted {current.name}")
        if record_history and remote_id and previous is not None:
            self._record_history(
                remote_id, "delete", previous, None, f"Deleted {current.name}"
            )
        return True

    async def delete(self, feature_id: str) -> bool:
        """Delete remotely, then locally; nothing changes on failure."""
        feature = self.store.get(self._resolve(feature_id))
        if feature is None:
            logger.warning(f"Cannot delete unknown feature {feature_id}")
            return False
        return await self._delete(feature, record_history=True)

    async def set_feature_visibility(
        self,
        feature_id: str,
        visible: bool,
    ) -> bool:
        """Persist a visibility change, then toggle the overlay."""
        feature = self.store.get(self._resolve(feature_id))
        if feature is None:
            return False

        async with self._lock(feature.id):
            feature = self.store.get(feature.id)
            if feature is None or not feature.feature_id:
                return False
            if feature.is_visible == visible:
                return True
            try:
                updated = await self.api.update_feature(
                    self.map_id, feature.feature_id, {"isVisible": visible}
                )
            except errors.RemoteFailureError as exc:
                logger.error(f"Visibility change of {feature_id} failed: {exc}")
                return False
            self.records[feature.feature_id] = updated
            self.store.toggle_feature_visibility(feature.id)
        return True

    # ------------------------------------------------------------------
    # Rendering and loading
    # ------------------------------------------------------------------

    def _sync_layer_infos(self) -> None:
        self.store.layers = [
            store.LayerInfo(
                id=record.layer_id,
                name=record.name,
                type=db_models.GeometryKind.UNKNOWN,
                layer=self.store.layer_overlays.get(record.layer_id),
                is_visible=record.is_visible,
            )
            for record in self.layer_records.values()
        ]

    async def render_all(
        self,
        features: Iterable[db_models.FeatureRecord] | None = None,
        layers: Iterable[db_models.LayerRecord] | None = None,
        signal: asyncio.Event | None = None,
    ) -> bool:
        """Redraw every layer and feature, superseding any pass in flight.

        Args:
            features: Feature rows to draw; defaults to the known records.
            layers: Layer rows to draw; defaults to the known layer rows.
            signal: Optional external cancellation signal.

        Returns:
            True when the pass completed, False when it was superseded or
            cancelled.
        """
        if self._render_signal is not None:
            self._render_signal.set()
        signal = signal if signal is not None else asyncio.Event()
        self._render_signal = signal

        feature_rows = list(self.records.values() if features is None else features)
        layer_rows = list(self.layer_records.values() if layers is None else layers)

        await render.render_layers(
            self.surface,
            layer_rows,
            self.store.layer_overlays,
            signal,
            self.channel,
        )
        await render.render_features(
            self.surface,
            self.group,
            feature_rows,
            self.store.feature_overlays,
            signal,
            self.channel,
        )
        if signal.is_set():
            return False

        self.store.rebind()
        self._sync_layer_infos()
        if self._render_signal is signal:
            self._render_signal = None
        return True

    async def load(self, map_id: str | None = None) -> bool:
        """Fetch the map's features and layers and rebuild the store."""
        if map_id is not None:
            self.map_id = map_id
        try:
            feature_rows = await self.api.list_features(self.map_id)
            layer_rows = await self.api.list_layers(self.map_id)
        except errors.RemoteFailureError as exc:
            logger.error(f"Loading map {self.map_id} failed: {exc}")
            return False

        for feature in self.store.features:
            self.group.remove_overlay(feature.layer)
        self.records = {row.feature_id: row for row in feature_rows}
        self.layer_records = {row.layer_id: row for row in layer_rows}
        self.store.features = render.load_features(
            self.surface, self.group, feature_rows, self.channel
        )
        self.store.feature_overlays = {
            f.feature_id: f.layer for f in self.store.features if f.feature_id
        }
        await render.render_layers(
            self.surface,
            layer_rows,
            self.store.layer_overlays,
            channel=self.channel,
        )
        self._sync_layer_infos()
        if self.history is not None:
            self.history.clear()
        logger.info(
            f"Loaded {len(self.store.features)} features and "
            f"{len(self.layer_records)} layers of map {self.map_id}"
        )
        return True

    # ------------------------------------------------------------------
    # Layers
    # ------------------------------------------------------------------

    async def _render_layers(self) -> None:
        await render.render_layers(
            self.surface,
            list(self.layer_records.values()),
            self.store.layer_overlays,
            channel=self.channel,
        )
        self._sync_layer_infos()

    async def add_layer(
        self,
        record: db_models.LayerRecord,
    ) -> db_models.LayerRecord | None:
        """Attach a bulk layer to the map and render it."""
        try:
            created = await self.api.add_layer(self.map_id, record)
        except errors.RemoteFailureError as exc:
            logger.error(f"Adding layer {record.name} failed: {exc}")
            return None
        self.layer_records[created.layer_id] = created
        await self._render_layers()
        return created

    async def update_layer(
        self,
        layer_id: str,
        changes: dict[str, Any],
    ) -> bool:
        """Persist layer changes (visibility, zIndex, customStyle, ...).

        The layers are re-rendered once the remote store accepted them.
        """
        if layer_id not in self.layer_records:
            logger.warning(f"Cannot update unknown layer {layer_id}")
            return False
        payload = _encode_bags(
            {k: v for k, v in changes.items() if k in LAYER_UPDATABLE_FIELDS}
        )
        try:
            updated = await self.api.update_layer(self.map_id, layer_id, payload)
        except errors.RemoteFailureError as exc:
            logger.error(f"Update of layer {layer_id} failed: {exc}")
            return False
        self.layer_records[layer_id] = updated
        await self._render_layers()
        return True

    async def remove_layer(self, layer_id: str) -> bool:
        """Detach a layer remotely, then drop its overlay."""
        try:
            await self.api.remove_layer(self.map_id, layer_id)
        except errors.RemoteFailureError as exc:
            logger.error(f"Removal of layer {layer_id} failed: {exc}")
            return False
        self.layer_records.pop(layer_id, None)
        self.store.remove_layer(layer_id)
        return True

    # ------------------------------------------------------------------
    # Undo/redo replay
    # ------------------------------------------------------------------

    def _show(
        self,
        record: db_models.FeatureRecord,
        local_id: str | None = None,
        handle: str | None = None,
    ) -> bool:
        """Rebuild the overlay of a replayed record and track it.

        Replaces the overlay of the entry ``local_id`` when given, otherwise
        adds a new entry under ``handle``.
        """
        try:
            overlay = render.build_feature_overlay(
                self.surface, record, self.channel
            )
        except errors.ParseFailureError as exc:
            logger.warning(f"Replayed feature {record.feature_id} not drawn: {exc}")
            return False

        if local_id is None:
            self.store.add_feature(
                overlay,
                name=record.name or None,
                feature_id=record.feature_id,
                local_id=handle or f"feature-{record.feature_id}",
                is_visible=record.is_visible,
            )
            self.store.feature_overlays[record.feature_id] = overlay
        else:
            current = self.store.get(local_id)
            if current is not None:
                self.group.remove_overlay(current.layer)
            self.store.replace_layer(local_id, overlay)
        if record.is_visible:
            self.group.add_overlay(overlay)
        return True

    async def _replay_create(self, item: undo.AutoSaveQueueItem) -> bool:
        record = db_models.FeatureRecord.from_wire(
            {**item.data, "mapId": self.map_id}
        )
        handle = f"feature-{item.feature_id}"
        async with self._lock(handle):
            try:
                created = await self.api.create_feature(self.map_id, record)
            except errors.RemoteFailureError as exc:
                logger.error(f"Replay create of {item.feature_id} failed: {exc}")
                return False
            if created.feature_id != item.feature_id:
                self._aliases[item.feature_id] = created.feature_id
            self.records[created.feature_id] = created
            self._show(created, handle=handle)
        return True

    async def _replay_update(self, item: undo.AutoSaveQueueItem) -> bool:
        target = self._resolve(item.feature_id)
        feature = self.store.get(target)
        changes = _encode_bags(
            {k: v for k, v in item.data.items() if k in UPDATABLE_FIELDS}
        )
        async with self._lock(feature.id if feature else target):
            try:
                updated = await self.api.update_feature(
                    self.map_id, target, changes
                )
            except errors.RemoteFailureError as exc:
                logger.error(f"Replay update of {target} failed: {exc}")
                return False
            self.records[target] = updated
            if feature is not None:
                self._show(updated, local_id=feature.id)
                self.store.rename_feature(feature.id, updated.name or feature.name)
                if feature.is_visible != updated.is_visible:
                    self.store.toggle_feature_visibility(feature.id)
        return True

    async def _replay_delete(self, item: undo.AutoSaveQueueItem) -> bool:
        target = self._resolve(item.feature_id)
        feature = self.store.get(target)
        if feature is not None:
            return await self._delete(feature, record_history=False)
        try:
            await self.api.delete_feature(self.map_id, target)
        except errors.RemoteFailureError as exc:
            logger.error(f"Replay delete of {target} failed: {exc}")
            return False
        self.records.pop(target, None)
        return True

    async def apply_replay(self, item: undo.AutoSaveQueueItem) -> bool:
        """Execute an undo/redo item as a remote write and reconcile.

        Replays never record history themselves: the undo stack already
        moved the entry between its stacks.
        """
        logger.debug(f"Replaying {item.operation} of {item.feature_id}")
        if item.operation == "create":
            return await self._replay_create(item)
        if item.operation == "update":
            return await self._replay_update(item)
        return await self._replay_delete(item)
