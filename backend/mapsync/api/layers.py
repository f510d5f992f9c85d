"""Map layer attachment API endpoints.

Bulk layers are GeoJSON FeatureCollections attached to a map together
with a base style, an optional per-map ``customStyle`` override and a
filter configuration, all stored as JSON-encoded strings.

Example:
    Hide a layer and raise it above its siblings:
        >>> client.patch(
        ...     "/api/maps/map-1/layers/zones",
        ...     json={"isVisible": False, "zIndex": 3},
        ... ).json()["isVisible"]
        False
"""

import dataclasses
import uuid
from typing import Any

import fastapi
import pydantic
from pydantic import alias_generators

from mapsync.core import config
from mapsync.db import database
from mapsync.db import models as db_models

router = fastapi.APIRouter(prefix="/api/maps/{map_id}/layers", tags=["layers"])


class LayerCreateRequest(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(
        alias_generator=alias_generators.to_camel,
        populate_by_name=True,
    )

    layer_id: str | None = None
    name: str = pydantic.Field(default="", alias="layerName")
    layer_data: str = "{}"
    layer_style: str = "{}"
    custom_style: str | None = None
    filter_config: str | None = None
    is_visible: bool = True
    z_index: int = 0


class LayerUpdateRequest(pydantic.BaseModel):
    """Partial layer update; unset fields are left untouched."""

    model_config = pydantic.ConfigDict(
        alias_generator=alias_generators.to_camel,
        populate_by_name=True,
    )

    name: str | None = pydantic.Field(default=None, alias="layerName")
    layer_style: str | None = None
    custom_style: str | None = None
    filter_config: str | None = None
    is_visible: bool | None = None
    z_index: int | None = None


def _get_repo(
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> database.LayerRepositoryProtocol:
    """Resolve the layer repository dependency.

    Args:
        settings: Application settings (injected via FastAPI Depends).

    Returns:
        LayerRepositoryProtocol implementation
            (PostgresLayerRepository in production).
    """
    return database.get_layer_repository(settings)


@router.get("")
async def list_layers(
    map_id: str,
    repo: database.LayerRepositoryProtocol = fastapi.Depends(_get_repo),  # noqa: B008
) -> list[dict[str, Any]]:
    """List the layers attached to a map, ordered by zIndex."""
    return [layer.to_wire() for layer in repo.for_map(map_id)]


@router.post("", status_code=201)
async def add_layer(
    map_id: str,
    body: LayerCreateRequest,
    repo: database.LayerRepositoryProtocol = fastapi.Depends(_get_repo),  # noqa: B008
) -> dict[str, Any]:
    """Attach a layer to a map.

    A missing ``layerId`` is generated. Attaching an existing layer id
    replaces it.
    """
    fields = body.model_dump()
    fields["layer_id"] = fields["layer_id"] or str(uuid.uuid4())
    record = db_models.LayerRecord(map_id=map_id, **fields)
    return repo.add(record).to_wire()


@router.patch("/{layer_id}")
async def update_layer(
    map_id: str,
    layer_id: str,
    body: LayerUpdateRequest,
    repo: database.LayerRepositoryProtocol = fastapi.Depends(_get_repo),  # noqa: B008
) -> dict[str, Any]:
    """Update visibility, zIndex, styles or filter of a layer.

    Raises:
        HTTPException: If the layer is not found (404 status code).
    """
    existing = repo.get(map_id, layer_id)
    if existing is None:
        raise fastapi.HTTPException(status_code=404, detail="Layer not found")
    record = dataclasses.replace(existing, **body.model_dump(exclude_unset=True))
    return repo.add(record).to_wire()


@router.delete("/{layer_id}")
async def remove_layer(
    map_id: str,
    layer_id: str,
    repo: database.LayerRepositoryProtocol = fastapi.Depends(_get_repo),  # noqa: B008
) -> dict[str, str]:
    """Detach a layer from a map.

    Raises:
        HTTPException: If the layer is not found (404 status code).
    """
    if not repo.delete(map_id, layer_id):
        raise fastapi.HTTPException(status_code=404, detail="Layer not found")
    return {"status": "deleted", "layerId": layer_id}
