"""In-process model of the interactive map widget."""
