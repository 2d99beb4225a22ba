"""Federation queue Pydantic schemas."""

from typing import Any

from pydantic import BaseModel, Field


class QueueStatsResponse(BaseModel):
    """Per-status row counts of the delivery and inbox queues."""

    delivery: dict[str, int]
    inbox: dict[str, int]


class TickResponse(BaseModel):
    """Summary of one scheduled tick run."""

    name: str
    ran: bool = Field(..., description="False when the tick was skipped, e.g. federation disabled")
    result: dict[str, Any] = Field(default_factory=dict)
