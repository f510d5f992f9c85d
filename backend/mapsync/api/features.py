"""Map feature persistence API endpoints.

This module provides the REST endpoints the sync engine writes drawn
features through. Request and response bodies use the camelCase wire
names (``featureId``, ``geometryType``, ...); coordinates, properties and
style travel as opaque JSON-encoded strings. Coordinates are validated
structurally before anything is stored.

Example:
    Create a circle feature:
        >>> response = client.post(
        ...     "/api/maps/map-1/features",
        ...     json={
        ...         "name": "Circle 1",
        ...         "annotationType": "Marker",
        ...         "geometryType": "Circle",
        ...         "coordinates": "[10,20,50]",
        ...     },
        ... )
        >>> response.json()["featureId"]
        '0b6f...'

    List the features of a map:
        >>> client.get("/api/maps/map-1/features").json()
        >>> # Returns: [{"featureId": "0b6f...", "name": "Circle 1", ...}]
"""

import dataclasses
import datetime
import uuid
from typing import Any

import fastapi
import pydantic
from pydantic import alias_generators

from mapsync.core import config
from mapsync.db import database
from mapsync.db import models as db_models
from mapsync.services import geometry

router = fastapi.APIRouter(prefix="/api/maps/{map_id}/features", tags=["features"])


class FeatureCreateRequest(pydantic.BaseModel):
    """Body of a feature creation request."""

    model_config = pydantic.ConfigDict(
        alias_generator=alias_generators.to_camel,
        populate_by_name=True,
    )

    name: str = ""
    layer_id: str | None = None
    description: str | None = None
    feature_category: db_models.FeatureCategory = "Annotation"
    annotation_type: db_models.AnnotationType | None = None
    geometry_type: db_models.GeometryType
    coordinates: str
    properties: str = "{}"
    style: str = "{}"
    is_visible: bool = True
    z_index: int = 0


class FeatureUpdateRequest(pydantic.BaseModel):
    """Body of a partial feature update; unset fields are left untouched."""

    model_config = pydantic.ConfigDict(
        alias_generator=alias_generators.to_camel,
        populate_by_name=True,
    )

    name: str | None = None
    layer_id: str | None = None
    description: str | None = None
    feature_category: db_models.FeatureCategory | None = None
    annotation_type: db_models.AnnotationType | None = None
    geometry_type: db_models.GeometryType | None = None
    coordinates: str | None = None
    properties: str | None = None
    style: str | None = None
    is_visible: bool | None = None
    z_index: int | None = None


def _get_repo(
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> database.FeatureRepositoryProtocol:
    """Resolve the feature repository dependency.

    Args:
        settings: Application settings (injected via FastAPI Depends).

    Returns:
        FeatureRepositoryProtocol implementation
            (PostgresFeatureRepository in production).
    """
    return database.get_feature_repository(settings)


def _ensure_valid(geometry_type: str, coordinates: str) -> None:
    if not geometry.validate(geometry_type, coordinates):
        raise fastapi.HTTPException(
            status_code=422,
            detail=f"Invalid coordinates for {geometry_type}",
        )


@router.get("")
async def list_features(
    map_id: str,
    repo: database.FeatureRepositoryProtocol = fastapi.Depends(_get_repo),  # noqa: B008
) -> list[dict[str, Any]]:
    """List the features of a map in draw order.

    Args:
        map_id: Map identifier.
        repo: Feature repository (injected via FastAPI Depends).

    Returns:
        Wire dictionaries of every feature, ordered by zIndex.
    """
    return [feature.to_wire() for feature in repo.for_map(map_id)]


@router.post("", status_code=201)
async def create_feature(
    map_id: str,
    body: FeatureCreateRequest,
    repo: database.FeatureRepositoryProtocol = fastapi.Depends(_get_repo),  # noqa: B008
) -> dict[str, Any]:
    """Persist a new feature and assign its identity.

    Args:
        map_id: Map identifier.
        body: Feature fields.
        repo: Feature repository (injected via FastAPI Depends).

    Returns:
        Wire dictionary of the stored feature, including ``featureId``.

    Raises:
        HTTPException: If the coordinates fail validation (422).
    """
    _ensure_valid(body.geometry_type, body.coordinates)
    record = db_models.FeatureRecord(
        feature_id=str(uuid.uuid4()),
        map_id=map_id,
        **body.model_dump(),
    )
    return repo.add(record).to_wire()


@router.put("/{feature_id}")
async def update_feature(
    map_id: str,
    feature_id: str,
    body: FeatureUpdateRequest,
    repo: database.FeatureRepositoryProtocol = fastapi.Depends(_get_repo),  # noqa: B008
) -> dict[str, Any]:
    """Apply a partial update to a feature.

    Raises:
        HTTPException: If the feature is not found (404) or the resulting
            coordinates fail validation (422).
    """
    existing = repo.get(map_id, feature_id)
    if existing is None:
        raise fastapi.HTTPException(status_code=404, detail="Feature not found")

    changes = body.model_dump(exclude_unset=True)
    record = dataclasses.replace(
        existing,
        **changes,
        updated_at=datetime.datetime.now(datetime.UTC),
    )
    _ensure_valid(record.geometry_type, record.coordinates)
    return repo.add(record).to_wire()


@router.delete("/{feature_id}")
async def delete_feature(
    map_id: str,
    feature_id: str,
    repo: database.FeatureRepositoryProtocol = fastapi.Depends(_get_repo),  # noqa: B008
) -> dict[str, str]:
    """Delete a feature.

    Raises:
        HTTPException: If the feature is not found (404).
    """
    if not repo.delete(map_id, feature_id):
        raise fastapi.HTTPException(status_code=404, detail="Feature not found")
    return {"status": "deleted", "featureId": feature_id}
