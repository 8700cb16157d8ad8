"""Temporal worker entrypoint."""
