"""Persisted record models and repository abstractions.

Example:
    Use in a service or FastAPI dependency:
        >>> from mapsync.db import database
        >>> repo = database.get_feature_repository(settings)
"""
