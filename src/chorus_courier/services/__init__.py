"""Federation queue services for Chorus Courier."""

from .actor_cache import ActorProfile, RemoteActorCache
from .delivery import DeliveryError, FederationError, InboxDeliveryClient, PolicyDeniedError
from .delivery_queue import DeliveryOutcome, DeliveryQueue
from .follows import FollowerStore, FollowingStore, FollowService
from .inbox_queue import InboundActivity, InboxQueue
from .ingest import ActivityParseError, FederationDisabledError, InboxIngestor
from .outbox import OutboundActivity, OutboxActivityStore
from .policy import FederationPolicy
from .rate_limit import RateLimitConfig, RateLimiter

__all__ = [
    "ActorProfile",
    "RemoteActorCache",
    "DeliveryError",
    "FederationError",
    "InboxDeliveryClient",
    "PolicyDeniedError",
    "DeliveryOutcome",
    "DeliveryQueue",
    "FollowerStore",
    "FollowingStore",
    "FollowService",
    "InboundActivity",
    "InboxQueue",
    "ActivityParseError",
    "FederationDisabledError",
    "InboxIngestor",
    "OutboundActivity",
    "OutboxActivityStore",
    "FederationPolicy",
    "RateLimitConfig",
    "RateLimiter",
]
