"""Version 1 API endpoints."""

from .endpoints import federation_router

__all__ = ["federation_router"]
