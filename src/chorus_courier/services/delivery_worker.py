"""Periodic delivery of queued outbound activities.

One tick recycles stale claims, claims a batch, posts each payload to its
target inbox and reports every outcome back to the queue.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from chorus_courier.db.time import Clock, utcnow
from chorus_courier.services.delivery import (
    DeliveryConfig,
    DeliveryError,
    InboxDeliveryClient,
    max_retries_for,
)
from chorus_courier.services.delivery_queue import (
    DEFAULT_RECLAIM_GUARD_MINUTES,
    ClaimedDelivery,
    DeliveryOutcome,
    DeliveryQueue,
)
from chorus_courier.services.policy import REASON_BLOCKED, FederationPolicy, is_http_url

logger = logging.getLogger(__name__)

DEFAULT_STALE_MINUTES = 5
DEFAULT_CONCURRENCY = 8


@dataclass
class DeliveryTickResult:
    """Counters describing one delivery tick."""

    reset: int = 0
    claimed: int = 0
    delivered: int = 0
    retried: int = 0
    failed: int = 0


def _policy_error(item: ClaimedDelivery, policy: FederationPolicy) -> str | None:
    if not item.target_inbox_url or not is_http_url(item.target_inbox_url):
        return "invalid inbox url"
    decision = policy.check(item.target_inbox_url)
    if decision.allowed:
        return None
    logger.warning(
        "Blocked delivery to %s (%s)", item.target_inbox_url, decision.hostname or "unknown host"
    )
    return f"blocked by federation policy ({decision.reason or REASON_BLOCKED})"


class DeliveryWorker:
    """Runs delivery ticks against one session and HTTP client."""

    def __init__(
        self,
        session: Session,
        client: InboxDeliveryClient,
        *,
        policy: FederationPolicy | None = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        stale_minutes: int = DEFAULT_STALE_MINUTES,
        reclaim_guard_minutes: int = DEFAULT_RECLAIM_GUARD_MINUTES,
        clock: Clock = utcnow,
    ) -> None:
        self.client = client
        self.policy = policy or FederationPolicy()
        self.concurrency = max(1, concurrency)
        self.stale_minutes = stale_minutes
        self.queue = DeliveryQueue(session, reclaim_guard_minutes=reclaim_guard_minutes, clock=clock)

    @property
    def config(self) -> DeliveryConfig:
        return self.client.config

    async def run_tick(self, batch_size: int) -> DeliveryTickResult:
        result = DeliveryTickResult()
        result.reset = self.queue.reset_stale(self.stale_minutes)

        claimed = self.queue.claim_batch(batch_size)
        result.claimed = len(claimed)
        if not claimed:
            logger.debug("No pending deliveries")
            return result

        logger.info("Processing %d deliveries", len(claimed))
        reported: set[str] = set()
        semaphore = asyncio.Semaphore(self.concurrency)

        async def process(item: ClaimedDelivery) -> None:
            async with semaphore:
                outcome = await self._attempt(item)
            self.queue.report_outcome(item.id, outcome)
            reported.add(item.id)
            if outcome.delivered:
                result.delivered += 1
            elif outcome.permanent:
                result.failed += 1
            else:
                result.retried += 1

        outcomes = await asyncio.gather(
            *(process(item) for item in claimed), return_exceptions=True
        )
        errors = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
        if errors:
            unreported = [item.id for item in claimed if item.id not in reported]
            logger.error(
                "Delivery tick aborted; releasing %d claimed rows",
                len(unreported),
                exc_info=errors[0],
            )
            self.queue.session.rollback()
            self.queue.release(unreported)
            raise errors[0]

        logger.info(
            "Delivery tick finished: %d delivered, %d retrying, %d failed",
            result.delivered,
            result.retried,
            result.failed,
        )
        return result

    async def _attempt(self, item: ClaimedDelivery) -> DeliveryOutcome:
        if not item.activity_json:
            logger.warning("Delivery %s is missing its activity payload", item.id)
            return DeliveryOutcome.failure("missing activity payload", permanent=True)

        blocked = _policy_error(item, self.policy)
        if blocked is not None:
            return DeliveryOutcome.failure(blocked, permanent=True)

        try:
            await self.client.deliver(
                item.target_inbox_url, item.activity_json, item.local_user_id or ""
            )
        except Exception as exc:
            # Signer or client bugs count as failed attempts so a bad row reaches the ceiling.
            if not isinstance(exc, DeliveryError):
                logger.warning(
                    "Unexpected error delivering %s to %s",
                    item.id,
                    item.target_inbox_url,
                    exc_info=True,
                )
            error = str(exc) or exc.__class__.__name__
            max_retries = max_retries_for(item.activity_json, self.config)
            attempts = item.retry_count + 1
            if attempts >= max_retries:
                logger.error(
                    "Delivery to %s failed permanently after %d attempts: %s",
                    item.target_inbox_url,
                    attempts,
                    error,
                )
                return DeliveryOutcome.failure(error, permanent=True)
            logger.warning(
                "Retry %d/%d for %s: %s", attempts, max_retries, item.target_inbox_url, error
            )
            return DeliveryOutcome.failure(error)

        logger.info("Delivered %s to %s", item.activity_type or "activity", item.target_inbox_url)
        return DeliveryOutcome.success()


async def run_delivery_tick(
    session: Session,
    client: InboxDeliveryClient,
    *,
    batch_size: int = 20,
    policy: FederationPolicy | None = None,
    concurrency: int = DEFAULT_CONCURRENCY,
    stale_minutes: int = DEFAULT_STALE_MINUTES,
    reclaim_guard_minutes: int = DEFAULT_RECLAIM_GUARD_MINUTES,
    clock: Clock = utcnow,
) -> DeliveryTickResult:
    """Run one delivery tick; see :class:`DeliveryWorker`."""
    worker = DeliveryWorker(
        session,
        client,
        policy=policy,
        concurrency=concurrency,
        stale_minutes=stale_minutes,
        reclaim_guard_minutes=reclaim_guard_minutes,
        clock=clock,
    )
    return await worker.run_tick(batch_size)
