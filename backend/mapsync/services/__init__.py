"""Codec, styling, rendering, synchronization and undo services."""
