"""API endpoint modules for version 1."""

from .federation import router as federation_router

__all__ = ["federation_router"]
