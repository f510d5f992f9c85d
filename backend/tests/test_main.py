"""Tests for the FastAPI main application factory and health checks.

This module validates that:
    - The FastAPI app is correctly instantiated via main.create_app,
    - OpenAPI metadata (title, version) matches the project contract,
    - The feature and layer routers are registered,
    - The /health endpoint returns the expected response.

See Also:
    - backend/mapsync/main.py for the application factory.
"""

from __future__ import annotations

from typing import cast

from fastapi import testclient

from mapsync import main


def test_create_app() -> None:
    """Test that create_app returns a configured FastAPI instance."""
    app = main.create_app()
    assert app is not None
    assert app.title == "Map Sync"
    assert app.version == "0.1.0"


def test_health_endpoint() -> None:
    """Test the health check endpoint returns ok status."""
    app = main.create_app()
    client = testclient.TestClient(app)
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_app_includes_routers() -> None:
    """Test that the feature and layer routers are included in the app."""
    app = main.create_app()
    routes: list[str] = [
        cast(str, getattr(route, "path", ""))
        for route in app.routes  # type: ignore[attr-defined]
        if hasattr(route, "path")
    ]
    assert "/health" in routes
    assert "/api/maps/{map_id}/features" in routes
    assert "/api/maps/{map_id}/features/{feature_id}" in routes
    assert "/api/maps/{map_id}/layers" in routes
    assert "/api/maps/{map_id}/layers/{layer_id}" in routes
