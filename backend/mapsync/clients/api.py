"""Async client for the remote feature and layer API.

The sync engine talks to the persistence service only through
``FeatureApiProtocol``. ``HttpFeatureApi`` implements it over
``httpx.AsyncClient`` against the routes of ``mapsync.api``; every
transport error or non-2xx status is raised as ``RemoteFailureError``.

Example:
    Persist a feature and read the map back:
        >>> api = HttpFeatureApi("http://localhost:8000")
        >>> created = await api.create_feature("map-1", record)
        >>> created.feature_id
        '4f1c...'
        >>> [f.name for f in await api.list_features("map-1")]
        ['Circle 1']

    Route requests to an in-process app (used by the tests):
        >>> transport = httpx.ASGITransport(app=main.create_app())
        >>> api = HttpFeatureApi("http://test", transport=transport)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

import httpx
from loguru import logger

from mapsync.core import errors
from mapsync.db import models as db_models

if TYPE_CHECKING:
    from mapsync.core import config


class FeatureApiProtocol(Protocol):
    """Remote persistence consumed by the sync engine."""

    async def create_feature(
        self,
        map_id: str,
        record: db_models.FeatureRecord,
    ) -> db_models.FeatureRecord: ...

    async def update_feature(
        self,
        map_id: str,
        feature_id: str,
        changes: dict[str, Any],
    ) -> db_models.FeatureRecord: ...

    async def delete_feature(self, map_id: str, feature_id: str) -> None: ...

    async def list_features(
        self,
        map_id: str,
    ) -> list[db_models.FeatureRecord]: ...

    async def add_layer(
        self,
        map_id: str,
        record: db_models.LayerRecord,
    ) -> db_models.LayerRecord: ...

    async def update_layer(
        self,
        map_id: str,
        layer_id: str,
        changes: dict[str, Any],
    ) -> db_models.LayerRecord: ...

    async def remove_layer(self, map_id: str, layer_id: str) -> None: ...

    async def list_layers(self, map_id: str) -> list[db_models.LayerRecord]: ...


class HttpFeatureApi(FeatureApiProtocol):
    """``httpx`` implementation of the remote feature API.

    Args:
        base_url: Base URL of the persistence service.
        timeout: Timeout in seconds applied to every request.
        transport: Optional httpx transport (e.g. ``httpx.ASGITransport``).
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(timeout, connect=timeout),
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: config.Settings) -> HttpFeatureApi:
        return cls(
            str(settings.api_base_url),
            timeout=settings.request_timeout_seconds,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> HttpFeatureApi:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
    ) -> Any:
        """Send one request and decode its JSON body.

        Raises:
            RemoteFailureError: On transport errors, non-2xx statuses or
                an undecodable body.
        """
        try:
            resp = await self._client.request(method, path, json=payload)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error(f"{method} {path} failed: {exc}")
            raise errors.RemoteFailureError(
                f"{method} {path} failed: {exc}"
            ) from exc

        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise errors.RemoteFailureError(
                f"{method} {path} returned invalid JSON"
            ) from exc

    @staticmethod
    def _features_path(map_id: str) -> str:
        return f"/api/maps/{map_id}/features"

    @staticmethod
    def _layers_path(map_id: str) -> str:
        return f"/api/maps/{map_id}/layers"

    async def create_feature(
        self,
        map_id: str,
        record: db_models.FeatureRecord,
    ) -> db_models.FeatureRecord:
        data = await self._request(
            "POST", self._features_path(map_id), record.to_wire()
        )
        return db_models.FeatureRecord.from_wire(data)

    async def update_feature(
        self,
        map_id: str,
        feature_id: str,
        changes: dict[str, Any],
    ) -> db_models.FeatureRecord:
        data = await self._request(
            "PUT", f"{self._features_path(map_id)}/{feature_id}", changes
        )
        return db_models.FeatureRecord.from_wire(data)

    async def delete_feature(self, map_id: str, feature_id: str) -> None:
        await self._request(
            "DELETE", f"{self._features_path(map_id)}/{feature_id}"
        )

    async def list_features(self, map_id: str) -> list[db_models.FeatureRecord]:
        data = await self._request("GET", self._features_path(map_id))
        return [db_models.FeatureRecord.from_wire(item) for item in data or []]

    async def add_layer(
        self,
        map_id: str,
        record: db_models.LayerRecord,
    ) -> db_models.LayerRecord:
        data = await self._request(
            "POST", self._layers_path(map_id), record.to_wire()
        )
        return db_models.LayerRecord.from_wire(data)

    async def update_layer(
        self,
        map_id: str,
        layer_id: str,
        changes: dict[str, Any],
    ) -> db_models.LayerRecord:
        data = await self._request(
            "PATCH", f"{self._layers_path(map_id)}/{layer_id}", changes
        )
        return db_models.LayerRecord.from_wire(data)

    async def remove_layer(self, map_id: str, layer_id: str) -> None:
        await self._request("DELETE", f"{self._layers_path(map_id)}/{layer_id}")

    async def list_layers(self, map_id: str) -> list[db_models.LayerRecord]:
        data = await self._request("GET", self._layers_path(map_id))
        return [db_models.LayerRecord.from_wire(item) for item in data or []]
