"""
API routes initialization.

This module aggregates all API routers and provides a single router
to include in the main application.
"""

from fastapi import APIRouter

from app.api.routes import media, search, usage

# Create main API router
api_router = APIRouter()

# Media registration, processing state, retry and delete
api_router.include_router(media.router)

# Semantic search and history
api_router.include_router(search.router)

# Spend and allowances
api_router.include_router(usage.router)
