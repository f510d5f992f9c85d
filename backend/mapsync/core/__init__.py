"""Configuration, logging and error taxonomy."""
