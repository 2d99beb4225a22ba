"""Federation queue endpoints: statistics and scheduler-triggered ticks."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status

from chorus_courier.api.v1.dependencies import (
    CollaboratorsDep,
    SessionDep,
    SettingsDep,
    require_cron_secret,
)
from chorus_courier.schemas.federation import QueueStatsResponse, TickResponse
from chorus_courier.services.cleanup import queue_stats
from chorus_courier.services.ticks import TICK_NAMES, run_tick

router = APIRouter(prefix="/federation", tags=["federation"])


@router.get("/stats", response_model=QueueStatsResponse)
async def get_queue_stats(db: SessionDep) -> QueueStatsResponse:
    """Return per-status row counts of the delivery and inbox queues."""
    return QueueStatsResponse(**queue_stats(db))


@router.post(
    "/ticks/{name}",
    response_model=TickResponse,
    dependencies=[Depends(require_cron_secret)],
)
async def trigger_tick(
    name: str,
    db: SessionDep,
    config: SettingsDep,
    collaborators: CollaboratorsDep,
    batch_size: Annotated[int | None, Query(ge=1, le=500)] = None,
) -> TickResponse:
    """Run one delivery, inbox or cleanup tick.

    Args:
        name: Tick to run
        db: Database session
        config: Application settings
        collaborators: Signer, resolver and activity factory for the workers
        batch_size: Optional override of the configured batch size

    Returns:
        Tick summary counters
    """
    if name not in TICK_NAMES:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown tick")

    report = await run_tick(name, db, config, collaborators, batch_size=batch_size)
    return TickResponse(name=report.name, ran=report.ran, result=report.result)
