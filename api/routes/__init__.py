"""API Routes Package."""

from api.routes import health, sync, errors

__all__ = [
    "health",
    "sync",
    "errors",
]
