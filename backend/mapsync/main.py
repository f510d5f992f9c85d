"""FastAPI application entrypoint and configuration.

This module provides the application factory of the feature persistence
service: the remote store the sync engine writes features and layers to.
It sets up logging, CORS middleware, the feature and layer routers and a
health check endpoint for monitoring.

Example:
    The application can be run with uvicorn:
        $ uvicorn mapsync.main:app --reload

    Or imported and used programmatically:
        >>> from mapsync.main import app
        >>> # Use app in ASGI server
"""

import fastapi
from fastapi.middleware import cors

from mapsync.api import features, layers
from mapsync.core import config
from mapsync.core import logging as core_logging


def create_app() -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Configures the loguru sink, includes the feature and layer routers and
    adds a health check endpoint. CORS origins are configured from
    settings, allowing cross-origin requests from the editor frontend.

    Returns:
        Configured FastAPI application instance ready for ASGI server.
    """
    settings = config.get_settings()
    core_logging.configure_logging(settings)
    app = fastapi.FastAPI(title="Map Sync", version="0.1.0")

    app.include_router(features.router)
    app.include_router(layers.router)

    app.add_middleware(
        cors.CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict[str, str]:  # type: ignore[misc]
        """Health check endpoint for monitoring and load balancers.

        Returns:
            Dictionary with status "ok" if the service is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
