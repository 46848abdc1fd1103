"""Console entry package for the Personal Catalog add-on.

``python -m personalcatalog`` starts the server; importing the package
exposes the FastAPI application for ASGI servers.
"""

from __future__ import annotations

from app.main import app, create_app

__all__ = ["app", "create_app"]
