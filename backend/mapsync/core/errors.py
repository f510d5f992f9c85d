"""Error taxonomy for the feature synchronization core.

These exceptions are raised inside the codec and the remote API client and
caught at the boundary of every user-driven operation. Callers of
``SyncEngine`` and ``style.apply_style`` only ever see return values; the
exceptions exist so that internal layers can signal precisely what went
wrong and so that the boundary can log it.

Example:
    Handle a malformed persisted row:
        >>> from mapsync.core.errors import ParseFailureError
        >>> from mapsync.services import geometry
        >>> try:
        ...     geometry.parse_coordinates("LineString", "abc")
        ... except ParseFailureError as e:
        ...     print(f"Skipping row: {e}")
"""

from __future__ import annotations


class MapSyncError(RuntimeError):
    """Base class for every error raised by the synchronization core."""


class InvalidGeometryError(MapSyncError):
    """Serialized geometry failed structural validation.

    Raised before any network call is made; the feature is never created.
    """


class ParseFailureError(MapSyncError):
    """A persisted coordinates, properties or style string is malformed.

    The offending row or layer is skipped with a logged warning while the
    rest of the batch still renders.
    """


class RemoteFailureError(MapSyncError):
    """The remote feature API failed (network error or non-2xx status).

    Example:
        >>> try:
        ...     await api.delete_feature("map-1", "feature-9")
        ... except RemoteFailureError as e:
        ...     print(f"Delete failed, keeping local copy: {e}")
    """


class StyleApplicationError(MapSyncError):
    """A style bag could not be applied to a live drawing object."""
