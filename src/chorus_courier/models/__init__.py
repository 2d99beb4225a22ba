# src/chorus_courier/models/__init__.py
"""SQLAlchemy models for the federation queues."""

from .actor import RemoteActor
from .delivery import DeliveryQueueItem
from .follow import FollowerRecord, FollowRecord
from .inbox import InboxActivity
from .outbox import OutboxActivity
from .rate_limit import RateLimitEntry

__all__ = [
    "RemoteActor",
    "DeliveryQueueItem",
    "FollowerRecord", "FollowRecord",
    "InboxActivity",
    "OutboxActivity",
    "RateLimitEntry",
]
