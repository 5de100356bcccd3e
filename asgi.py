"""
asgi.py -- ASGI entry point for the panel auth API.

Run with:  uvicorn asgi:app --reload

The hosting-resource routers of the wider panel mount here next to the auth
router; they gate their routes with auth.dependencies.require_permission().
"""

from api.main import app

__all__ = ["app"]
