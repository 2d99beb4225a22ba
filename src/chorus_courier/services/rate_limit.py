"""Sliding-window rate limiting backed by the relational store.

Every admitted event is one row in ``ap_rate_limits``. An admission check
prunes rows that fell out of the window, counts the remaining ones and
inserts a new row only when the count is under the limit.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chorus_courier.core.settings import Settings
from chorus_courier.db.time import Clock, as_utc, utcnow
from chorus_courier.models import RateLimitEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    """Threshold and window for one rate-limited namespace."""

    max_requests: int
    window_seconds: int
    namespace: str

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.window_seconds)


@dataclass(frozen=True)
class RateLimitResult:
    """Admission decision with the values used for rate limit headers."""

    allowed: bool
    limit: int
    remaining: int
    reset: int  # unix seconds when the oldest counted entry leaves the window

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset),
        }


INBOX_PER_INSTANCE = RateLimitConfig(max_requests=100, window_seconds=3600, namespace="inbox:instance")
INBOX_PER_ACTOR = RateLimitConfig(max_requests=20, window_seconds=3600, namespace="inbox:actor")


def inbox_limits_from_settings(settings: Settings) -> tuple[RateLimitConfig, RateLimitConfig]:
    """Return the (per-instance, per-actor) inbox limits configured for this deployment."""
    return (
        RateLimitConfig(
            max_requests=settings.rate_limit_inbox_instance_max,
            window_seconds=settings.rate_limit_inbox_instance_window_seconds,
            namespace=INBOX_PER_INSTANCE.namespace,
        ),
        RateLimitConfig(
            max_requests=settings.rate_limit_inbox_actor_max,
            window_seconds=settings.rate_limit_inbox_actor_window_seconds,
            namespace=INBOX_PER_ACTOR.namespace,
        ),
    )


class RateLimiter:
    """Sliding-window log limiter for a single namespace."""

    def __init__(
        self,
        session: Session,
        config: RateLimitConfig,
        *,
        enabled: bool = True,
        clock: Clock = utcnow,
    ) -> None:
        self.session = session
        self.config = config
        self.enabled = enabled
        self._clock = clock

    def _key(self, key: str) -> str:
        return f"{self.config.namespace}:{key}"

    def _reset_at(self, oldest: datetime | None, now: datetime) -> int:
        anchor = as_utc(oldest) if oldest is not None else now
        return math.floor((anchor + self.config.window).timestamp())

    def check(self, key: str) -> RateLimitResult:
        """Admit or deny one event for ``key``; admitted events are recorded."""
        now = self._clock()
        limit = self.config.max_requests
        if not self.enabled:
            return RateLimitResult(True, limit, limit, self._reset_at(None, now))

        window_start = now - self.config.window
        rate_key = self._key(key)

        try:
            self.session.execute(
                delete(RateLimitEntry)
                .where(
                    RateLimitEntry.key == rate_key,
                    RateLimitEntry.created_at < window_start,
                )
                .execution_options(synchronize_session=False)
            )
            # Count by window start even after pruning; the two statements are not atomic.
            count, oldest = self.session.execute(
                select(func.count(RateLimitEntry.id), func.min(RateLimitEntry.created_at)).where(
                    RateLimitEntry.key == rate_key,
                    RateLimitEntry.created_at >= window_start,
                )
            ).one()
            count = int(count or 0)
            reset = self._reset_at(oldest, now)

            if count >= limit:
                self.session.commit()
                logger.warning("Rate limit exceeded for %s", rate_key)
                return RateLimitResult(False, limit, 0, reset)

            self.session.add(RateLimitEntry(key=rate_key, window_start=now, created_at=now))
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception("Rate limit check failed for %s; allowing request", rate_key)
            return RateLimitResult(True, limit, limit, self._reset_at(None, now))

        return RateLimitResult(True, limit, limit - count - 1, reset)

    def allow(self, key: str) -> bool:
        """Return True if an event for ``key`` is admitted."""
        return self.check(key).allowed


def prune_expired(session: Session, older_than: datetime) -> int:
    """Delete rate limit entries created before ``older_than`` across all keys."""
    result = session.execute(
        delete(RateLimitEntry)
        .where(RateLimitEntry.created_at < older_than)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return int(result.rowcount or 0)
