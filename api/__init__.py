"""API Package.

FastAPI server for the ERP sync engine.
"""

from api.server import create_app

__all__ = [
    "create_app",
]
