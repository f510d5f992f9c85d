"""Clients of the remote feature API."""
