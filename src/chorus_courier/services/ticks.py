"""Scheduled entry points wired from application settings.

The CLI and the tick endpoints both go through :func:`run_tick`, which turns
``Settings`` into explicit worker arguments.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any

from sqlalchemy.orm import Session

from chorus_courier.core.settings import Settings
from chorus_courier.db.time import Clock, utcnow
from chorus_courier.services.cleanup import run_cleanup_tick
from chorus_courier.services.collaborators import (
    ActivityFactory,
    ActorResolver,
    InstanceActivityFactory,
    RequestSigner,
)
from chorus_courier.services.delivery import InboxDeliveryClient, load_delivery_config
from chorus_courier.services.delivery_worker import run_delivery_tick
from chorus_courier.services.follows import FollowService
from chorus_courier.services.inbox_worker import run_inbox_tick
from chorus_courier.services.ingest import InboxIngestor
from chorus_courier.services.policy import FederationPolicy, split_domain_list
from chorus_courier.services.rate_limit import inbox_limits_from_settings

logger = logging.getLogger(__name__)

TICK_DELIVERY = "delivery"
TICK_INBOX = "inbox"
TICK_CLEANUP = "cleanup"
TICK_NAMES = (TICK_DELIVERY, TICK_INBOX, TICK_CLEANUP)


class UnknownTickError(ValueError):
    """Raised for a tick name outside :data:`TICK_NAMES`."""


@dataclass
class TickCollaborators:
    """External collaborators handed to the workers; all optional."""

    client: InboxDeliveryClient | None = None
    signer: RequestSigner | None = None
    resolver: ActorResolver | None = None
    activities: ActivityFactory | None = None


@dataclass
class TickReport:
    """Serializable summary of a tick run."""

    name: str
    ran: bool
    result: dict[str, Any] = field(default_factory=dict)


def build_policy(config: Settings) -> FederationPolicy:
    return FederationPolicy.from_lists(
        split_domain_list(config.blocked_instances),
        split_domain_list(config.allowed_instances),
    )


def build_ingestor(session: Session, config: Settings, *, clock: Clock = utcnow) -> InboxIngestor:
    """Return an ingestor carrying the configured policy and inbox rate limits."""
    instance_limit, actor_limit = inbox_limits_from_settings(config)
    return InboxIngestor(
        session,
        policy=build_policy(config),
        instance_limit=instance_limit,
        actor_limit=actor_limit,
        rate_limit_enabled=config.rate_limit_enabled,
        enabled=config.federation_enabled,
        clock=clock,
    )


async def run_tick(
    name: str,
    session: Session,
    config: Settings,
    collaborators: TickCollaborators | None = None,
    *,
    batch_size: int | None = None,
) -> TickReport:
    """Run the tick called ``name`` once.

    Delivery and inbox ticks are skipped while federation is disabled; cleanup
    always runs.
    """
    if name not in TICK_NAMES:
        raise UnknownTickError(f"Unknown tick {name!r}; expected one of {', '.join(TICK_NAMES)}")

    collaborators = collaborators or TickCollaborators()
    if name != TICK_CLEANUP and not config.federation_enabled:
        logger.warning("Federation disabled; skipping %s tick", name)
        return TickReport(name=name, ran=False)

    policy = build_policy(config)

    if name == TICK_DELIVERY:
        client = collaborators.client or InboxDeliveryClient(
            load_delivery_config(config), signer=collaborators.signer
        )
        try:
            delivery = await run_delivery_tick(
                session,
                client,
                batch_size=(
                    config.delivery_batch_size if batch_size is None else batch_size
                ),
                policy=policy,
                concurrency=config.delivery_concurrency,
                stale_minutes=config.delivery_stale_minutes,
                reclaim_guard_minutes=config.delivery_reclaim_guard_minutes,
            )
        finally:
            if collaborators.client is None:
                await client.close()
        return TickReport(name=name, ran=True, result=asdict(delivery))

    if name == TICK_INBOX:
        follows = FollowService(
            session,
            activities=collaborators.activities or InstanceActivityFactory(config.instance_domain),
            resolver=collaborators.resolver,
            auto_accept=config.auto_accept_followers,
            actor_max_age=timedelta(hours=config.actor_cache_max_age_hours),
        )
        inbox = await run_inbox_tick(
            session,
            follows,
            batch_size=config.inbox_batch_size if batch_size is None else batch_size,
            policy=policy,
        )
        return TickReport(name=name, ran=True, result=asdict(inbox))

    cleanup = run_cleanup_tick(
        session,
        inbox_retention=timedelta(days=config.retention_inbox_processed_days),
        rate_limit_retention=timedelta(hours=config.retention_rate_limit_hours),
        stuck_grace_minutes=config.inbox_stuck_grace_minutes,
    )
    return TickReport(name=name, ran=True, result=asdict(cleanup))
