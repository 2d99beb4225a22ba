"""Main entry point for the Chorus Courier tick service."""

from __future__ import annotations

import logging

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from chorus_courier.api.v1 import federation_router
from chorus_courier.api.v1.dependencies import SessionDep
from chorus_courier.core.settings import settings

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Chorus Courier",
    description="Federation delivery, inbox and follow queues",
    version=settings.app_version,
)

# Include API routers
app.include_router(federation_router, prefix="/api/v1")


@app.get("/health")
async def health_check(db: SessionDep) -> dict[str, str]:
    """Health check endpoint reporting service and database status."""
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Database health check failed")
        return {"status": "degraded", "database": "unavailable"}
    return {"status": "ok", "database": "ok"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("chorus_courier.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
