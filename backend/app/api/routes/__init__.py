"""
API route modules.

Import all route modules here for easy access.
"""

from app.api.routes import media, search, usage

__all__ = ["media", "search", "usage"]
