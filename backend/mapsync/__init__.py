"""Map feature and layer synchronization package.

This package converts the mutable drawing objects of an interactive map
into persisted feature records and keeps the editor's display list in
step with a remote store.

- Structural classification and string-encoded serialization of markers,
  text labels, circles, rectangles, lines and polygons
- Flat style bags extracted from and applied to live drawing objects
- Optimistic create/update/delete with rollback on remote failure
- Full, cancellable re-rendering of features above bulk GeoJSON layers
- Undo/redo history replayed through a debounced auto-save queue
- A FastAPI persistence service (``mapsync.main``) backed by PostgreSQL

See module sub-docstrings for details on architecture and usage.
"""
