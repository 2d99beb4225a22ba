"""
Pydantic schemas for API request/response models.
"""

from .federation import QueueStatsResponse, TickResponse

__all__ = ["QueueStatsResponse", "TickResponse"]
