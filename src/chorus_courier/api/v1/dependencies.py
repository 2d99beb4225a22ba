"""Shared API dependencies for the federation endpoints."""

import secrets
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from chorus_courier.core.settings import Settings, settings
from chorus_courier.db.session import get_db
from chorus_courier.services.ticks import TickCollaborators

# Type alias for database session dependency
SessionDep = Annotated[Session, Depends(get_db)]


def get_settings() -> Settings:
    """Return the process-wide settings object."""
    return settings


def get_tick_collaborators() -> TickCollaborators:
    """Return the collaborators used by tick endpoints.

    Deployments with signing or actor discovery override this dependency.
    """
    return TickCollaborators()


SettingsDep = Annotated[Settings, Depends(get_settings)]
CollaboratorsDep = Annotated[TickCollaborators, Depends(get_tick_collaborators)]


def require_cron_secret(
    config: SettingsDep,
    x_cron_secret: Annotated[str | None, Header()] = None,
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """Reject requests that do not carry the configured scheduler secret.

    The secret is accepted from ``X-Cron-Secret`` or a ``Bearer`` token.

    Raises:
        HTTPException: 503 when no secret is configured, 401 when it does not match
    """
    expected = config.cron_secret
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Tick endpoints are disabled",
        )

    provided = x_cron_secret
    if provided is None and authorization and authorization.lower().startswith("bearer "):
        provided = authorization[7:].strip()

    if provided is None or not secrets.compare_digest(provided, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron secret",
        )
