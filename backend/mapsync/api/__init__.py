"""API router subpackage of the feature persistence service.

Submodules:
    - features: Endpoints for creating, listing, updating and deleting
      the drawn features of a map.
    - layers: Endpoints for attaching, updating and detaching bulk
      GeoJSON layers.

Each module exposes its own APIRouter for composition in the
application's main FastAPI instance.
"""
