"""Database helpers and repositories for map features and layers."""

from __future__ import annotations

import datetime
from typing import TYPE_CHECKING, Protocol, TypeVar, cast

import psycopg2
import psycopg2.extensions
import psycopg2.extras

from mapsync.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Iterable

    from mapsync.core import config


T = TypeVar("T")


def _cast(value: object, dtype: type[T]) -> T | None:  # type: ignore[misc]
    """Cast a value to a specific type, returning None if value is None."""
    if value is None:
        return None

    return cast(T, value)


class FeatureRepositoryProtocol(Protocol):
    """Protocol interface for storing and retrieving map features.

    Implementations provide persistence for FeatureRecord objects,
    supporting both in-memory (testing) and PostgreSQL (production) backends.
    """

    def add(self, feature: db_models.FeatureRecord) -> db_models.FeatureRecord: ...

    def get(
        self,
        map_id: str,
        feature_id: str,
    ) -> db_models.FeatureRecord | None: ...

    def for_map(self, map_id: str) -> Iterable[db_models.FeatureRecord]: ...

    def delete(self, map_id: str, feature_id: str) -> bool: ...


class LayerRepositoryProtocol(Protocol):
    """Protocol interface for storing and retrieving map layers."""

    def add(self, layer: db_models.LayerRecord) -> db_models.LayerRecord: ...

    def get(self, map_id: str, layer_id: str) -> db_models.LayerRecord | None: ...

    def for_map(self, map_id: str) -> Iterable[db_models.LayerRecord]: ...

    def delete(self, map_id: str, layer_id: str) -> bool: ...


class InMemoryFeatureRepository(FeatureRepositoryProtocol):
    """Simple in-memory feature store for tests and local development.

    Stores features in a dictionary keyed by (map_id, feature_id). Data is
    lost when the process exits.
    """

    def __init__(self) -> None:
        self._store: dict[tuple[str, str], db_models.FeatureRecord] = {}

    def add(self, feature: db_models.FeatureRecord) -> db_models.FeatureRecord:
        """Add or replace a feature.

        Args:
            feature: Feature record to store.

        Returns:
            The stored feature record.
        """
        self._store[(feature.map_id, feature.feature_id)] = feature
        return feature

    def get(
        self,
        map_id: str,
        feature_id: str,
    ) -> db_models.FeatureRecord | None:
        return self._store.get((map_id, feature_id))

    def for_map(self, map_id: str) -> Iterable[db_models.FeatureRecord]:
        """Get the features of a map, in draw order.

        Returns:
            Features sorted by z_index, then creation time.
        """
        return sorted(
            (f for (owner, _), f in self._store.items() if owner == map_id),
            key=lambda f: (f.z_index, f.created_at),
        )

    def delete(self, map_id: str, feature_id: str) -> bool:
        return self._store.pop((map_id, feature_id), None) is not None


class InMemoryLayerRepository(LayerRepositoryProtocol):
    """Simple in-memory layer store for tests and local development."""

    def __init__(self) -> None:
        self._store: dict[tuple[str, str], db_models.LayerRecord] = {}

    def add(self, layer: db_models.LayerRecord) -> db_models.LayerRecord:
        self._store[(layer.map_id, layer.layer_id)] = layer
        return layer

    def get(self, map_id: str, layer_id: str) -> db_models.LayerRecord | None:
        return self._store.get((map_id, layer_id))

    def for_map(self, map_id: str) -> Iterable[db_models.LayerRecord]:
        return sorted(
            (layer for (owner, _), layer in self._store.items() if owner == map_id),
            key=lambda layer: layer.z_index,
        )

    def delete(self, map_id: str, layer_id: str) -> bool:
        return self._store.pop((map_id, layer_id), None) is not None


class _PostgresRepository:
    """Shared connection handling of the PostgreSQL repositories."""

    CREATE_TABLE_SQL = ""

    def __init__(self, settings: config.Settings) -> None:
        """Initialize repository with database settings.

        Args:
            settings: Application settings containing database connection URL.
        """
        self.settings = settings
        self._ensure_schema()

    def _connection(self) -> psycopg2.extensions.connection:
        """Create a new database connection.

        Returns:
            psycopg2 connection object.
        """
        return psycopg2.connect(
            self.settings.database_url,
            cursor_factory=psycopg2.extras.RealDictCursor,
        )

    def _ensure_schema(self) -> None:
        """Create the repository table if it doesn't exist."""
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(self.CREATE_TABLE_SQL)
            conn.commit()

    def _delete(self, sql: str, params: tuple[str, str]) -> bool:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(sql, params)
            deleted = cur.rowcount > 0
            conn.commit()
        return deleted


class PostgresFeatureRepository(_PostgresRepository, FeatureRepositoryProtocol):
    """PostgreSQL-backed repository for map features.

    Coordinates, properties and style are stored as opaque JSON text, the
    same way they travel on the wire.
    """

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS map_features (
      feature_id TEXT NOT NULL,
      map_id TEXT NOT NULL,
      layer_id TEXT,
      name TEXT NOT NULL DEFAULT '',
      description TEXT,
      feature_category TEXT NOT NULL DEFAULT 'Annotation',
      annotation_type TEXT,
      geometry_type TEXT NOT NULL,
      coordinates TEXT NOT NULL,
      properties TEXT NOT NULL DEFAULT '{}',
      style TEXT NOT NULL DEFAULT '{}',
      is_visible BOOLEAN NOT NULL DEFAULT TRUE,
      z_index INTEGER NOT NULL DEFAULT 0,
      created_at TIMESTAMPTZ DEFAULT now(),
      updated_at TIMESTAMPTZ,
      PRIMARY KEY (map_id, feature_id)
    );
    """

    def add(self, feature: db_models.FeatureRecord) -> db_models.FeatureRecord:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO map_features (
                    feature_id, map_id, layer_id, name, description,
                    feature_category, annotation_type, geometry_type,
                    coordinates, properties, style, is_visible, z_index,
                    created_at, updated_at
                ) VALUES (%(feature_id)s, %(map_id)s, %(layer_id)s,
                    %(name)s, %(description)s, %(feature_category)s,
                    %(annotation_type)s, %(geometry_type)s, %(coordinates)s,
                    %(properties)s, %(style)s, %(is_visible)s, %(z_index)s,
                    %(created_at)s, %(updated_at)s)
                ON CONFLICT (map_id, feature_id) DO UPDATE SET
                    layer_id = EXCLUDED.layer_id,
                    name = EXCLUDED.name,
                    description = EXCLUDED.description,
                    feature_category = EXCLUDED.feature_category,
                    annotation_type = EXCLUDED.annotation_type,
                    geometry_type = EXCLUDED.geometry_type,
                    coordinates = EXCLUDED.coordinates,
                    properties = EXCLUDED.properties,
                    style = EXCLUDED.style,
                    is_visible = EXCLUDED.is_visible,
                    z_index = EXCLUDED.z_index,
                    updated_at = EXCLUDED.updated_at;
                """,
                self._to_row(feature),
            )
            conn.commit()
        return feature

    def get(
        self,
        map_id: str,
        feature_id: str,
    ) -> db_models.FeatureRecord | None:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                "SELECT * FROM map_features WHERE map_id = %s AND feature_id = %s",
                (map_id, feature_id),
            )
            row = cur.fetchone()
            if row is None:
                return None
            return self._from_row(cast(dict[str, object], row))

    def for_map(self, map_id: str) -> Iterable[db_models.FeatureRecord]:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                "SELECT * FROM map_features WHERE map_id = %s "
                "ORDER BY z_index, created_at",
                (map_id,),
            )
            for row in cur.fetchall():
                yield self._from_row(cast(dict[str, object], row))

    def delete(self, map_id: str, feature_id: str) -> bool:
        return self._delete(
            "DELETE FROM map_features WHERE map_id = %s AND feature_id = %s",
            (map_id, feature_id),
        )

    @staticmethod
    def _to_row(feature: db_models.FeatureRecord) -> dict[str, object]:
        """Convert a FeatureRecord to a parameter dictionary."""
        return {
            "feature_id": feature.feature_id,
            "map_id": feature.map_id,
            "layer_id": feature.layer_id,
            "name": feature.name,
            "description": feature.description,
            "feature_category": feature.feature_category,
            "annotation_type": feature.annotation_type,
            "geometry_type": feature.geometry_type,
            "coordinates": feature.coordinates,
            "properties": feature.properties,
            "style": feature.style,
            "is_visible": feature.is_visible,
            "z_index": feature.z_index,
            "created_at": feature.created_at,
            "updated_at": feature.updated_at,
        }

    @staticmethod
    def _from_row(row: dict[str, object]) -> db_models.FeatureRecord:
        """Convert a database row dictionary to a FeatureRecord.

        Args:
            row: Dictionary from database query result.

        Returns:
            FeatureRecord with all fields populated.
        """
        created_at = _cast(
            row.get("created_at"), datetime.datetime
        ) or datetime.datetime.now(datetime.UTC)
        return db_models.FeatureRecord(
            feature_id=str(row["feature_id"]),
            map_id=str(row["map_id"]),
            layer_id=_cast(row.get("layer_id"), str),
            name=str(row.get("name") or ""),
            description=_cast(row.get("description"), str),
            feature_category=cast(
                db_models.FeatureCategory,
                str(row.get("feature_category") or "Annotation"),
            ),
            annotation_type=cast(
                db_models.AnnotationType | None, row.get("annotation_type")
            ),
            geometry_type=cast(db_models.GeometryType, str(row["geometry_type"])),
            coordinates=str(row["coordinates"]),
            properties=str(row.get("properties") or "{}"),
            style=str(row.get("style") or "{}"),
            is_visible=bool(row.get("is_visible", True)),
            z_index=int(cast(int, row.get("z_index") or 0)),
            created_at=created_at,
            updated_at=_cast(row.get("updated_at"), datetime.datetime),
        )


class PostgresLayerRepository(_PostgresRepository, LayerRepositoryProtocol):
    """PostgreSQL-backed repository for bulk map layers."""

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS map_layers (
      layer_id TEXT NOT NULL,
      map_id TEXT NOT NULL,
      name TEXT NOT NULL DEFAULT '',
      layer_data TEXT NOT NULL DEFAULT '{}',
      layer_style TEXT NOT NULL DEFAULT '{}',
      custom_style TEXT,
      filter_config TEXT,
      is_visible BOOLEAN NOT NULL DEFAULT TRUE,
      z_index INTEGER NOT NULL DEFAULT 0,
      PRIMARY KEY (map_id, layer_id)
    );
    """

    def add(self, layer: db_models.LayerRecord) -> db_models.LayerRecord:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO map_layers (
                    layer_id, map_id, name, layer_data, layer_style,
                    custom_style, filter_config, is_visible, z_index
                ) VALUES (%(layer_id)s, %(map_id)s, %(name)s,
                    %(layer_data)s, %(layer_style)s, %(custom_style)s,
                    %(filter_config)s, %(is_visible)s, %(z_index)s)
                ON CONFLICT (map_id, layer_id) DO UPDATE SET
                    name = EXCLUDED.name,
                    layer_data = EXCLUDED.layer_data,
                    layer_style = EXCLUDED.layer_style,
                    custom_style = EXCLUDED.custom_style,
                    filter_config = EXCLUDED.filter_config,
                    is_visible = EXCLUDED.is_visible,
                    z_index = EXCLUDED.z_index;
                """,
                {
                    "layer_id": layer.layer_id,
                    "map_id": layer.map_id,
                    "name": layer.name,
                    "layer_data": layer.layer_data,
                    "layer_style": layer.layer_style,
                    "custom_style": layer.custom_style,
                    "filter_config": layer.filter_config,
                    "is_visible": layer.is_visible,
                    "z_index": layer.z_index,
                },
            )
            conn.commit()
        return layer

    def get(self, map_id: str, layer_id: str) -> db_models.LayerRecord | None:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                "SELECT * FROM map_layers WHERE map_id = %s AND layer_id = %s",
                (map_id, layer_id),
            )
            row = cur.fetchone()
            if row is None:
                return None
            return self._from_row(cast(dict[str, object], row))

    def for_map(self, map_id: str) -> Iterable[db_models.LayerRecord]:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                "SELECT * FROM map_layers WHERE map_id = %s ORDER BY z_index",
                (map_id,),
            )
            for row in cur.fetchall():
                yield self._from_row(cast(dict[str, object], row))

    def delete(self, map_id: str, layer_id: str) -> bool:
        return self._delete(
            "DELETE FROM map_layers WHERE map_id = %s AND layer_id = %s",
            (map_id, layer_id),
        )

    @staticmethod
    def _from_row(row: dict[str, object]) -> db_models.LayerRecord:
        return db_models.LayerRecord(
            layer_id=str(row["layer_id"]),
            map_id=str(row["map_id"]),
            name=str(row.get("name") or ""),
            layer_data=str(row.get("layer_data") or "{}"),
            layer_style=str(row.get("layer_style") or "{}"),
            custom_style=_cast(row.get("custom_style"), str),
            filter_config=_cast(row.get("filter_config"), str),
            is_visible=bool(row.get("is_visible", True)),
            z_index=int(cast(int, row.get("z_index") or 0)),
        )


def get_feature_repository(
    settings: config.Settings,
) -> FeatureRepositoryProtocol:
    """Factory function to create a feature repository.

    Args:
        settings: Application settings for database connection.

    Returns:
        PostgresFeatureRepository instance for production use.
    """
    return PostgresFeatureRepository(settings)


def get_layer_repository(settings: config.Settings) -> LayerRepositoryProtocol:
    """Factory function to create a layer repository.

    Args:
        settings: Application settings for database connection.

    Returns:
        PostgresLayerRepository instance for production use.
    """
    return PostgresLayerRepository(settings)
