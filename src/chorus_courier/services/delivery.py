"""HTTP delivery of activities to remote inboxes.

This module provides the InboxDeliveryClient used by the delivery worker and
the retry policy applied to failed deliveries.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from chorus_courier.core.settings import Settings
from chorus_courier.services.collaborators import RequestSigner, UnsignedRequests

# Configure logger for this module
logger = logging.getLogger(__name__)

ACTIVITY_CONTENT_TYPE = "application/activity+json"
PUBLIC_COLLECTION = "https://www.w3.org/ns/activitystreams#Public"
PUBLIC_ALIASES = frozenset({PUBLIC_COLLECTION, "as:Public", "Public"})
ERROR_BODY_EXCERPT = 200

DEFAULT_MAX_RETRIES = 5
DIRECT_MESSAGE_MAX_RETRIES = 2


class FederationError(RuntimeError):
    """Base exception raised for federation failures."""


class DeliveryError(FederationError):
    """Raised when an activity could not be handed to a remote inbox."""


class PolicyDeniedError(FederationError):
    """Raised when federation policy forbids talking to a remote instance."""


@dataclass(frozen=True)
class DeliveryConfig:
    """Immutable configuration for outbound HTTP delivery."""

    user_agent: str
    timeout_seconds: float
    max_retries: int = DEFAULT_MAX_RETRIES
    direct_max_retries: int = DIRECT_MESSAGE_MAX_RETRIES


def load_delivery_config(config: Settings) -> DeliveryConfig:
    """Build configuration object from settings."""

    return DeliveryConfig(
        user_agent=config.user_agent,
        timeout_seconds=float(config.delivery_http_timeout_seconds),
        max_retries=config.delivery_max_retries,
        direct_max_retries=config.delivery_direct_max_retries,
    )


def _as_list(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(item) for item in value if item]
    if value is None or value == "":
        return []
    return [str(value)]


def _recipients(activity: Mapping[str, Any]) -> list[str]:
    obj = activity.get("object")
    obj = obj if isinstance(obj, Mapping) else {}
    found: list[str] = []
    for field_name in ("to", "cc"):
        value = activity.get(field_name)
        found.extend(_as_list(value if value is not None else obj.get(field_name)))
    for field_name in ("bto", "bcc"):
        value = obj.get(field_name)
        found.extend(_as_list(value if value is not None else activity.get(field_name)))
    return found


def is_direct_activity(activity: Mapping[str, Any]) -> bool:
    """Return True for addressed activities with no public or collection audience."""
    recipients = _recipients(activity)
    if not recipients:
        return False
    for recipient in recipients:
        if recipient in PUBLIC_ALIASES:
            return False
        if recipient.endswith("/followers") or recipient.endswith("/following"):
            return False
    return True


def max_retries_for(activity_json: str | None, config: DeliveryConfig) -> int:
    """Return how many failed attempts a delivery of this payload may accumulate."""
    if not activity_json:
        return config.max_retries
    try:
        activity = json.loads(activity_json)
    except ValueError:
        return config.max_retries
    if isinstance(activity, Mapping) and is_direct_activity(activity):
        return config.direct_max_retries
    return config.max_retries


class InboxDeliveryClient:
    """HTTP client wrapper posting signed activities to remote inboxes."""

    def __init__(
        self,
        config: DeliveryConfig,
        *,
        signer: RequestSigner | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.signer = signer or UnsignedRequests()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                    transport=self._transport,
                    follow_redirects=False,
                )
        return self._client

    async def deliver(self, inbox_url: str, activity_json: str, local_user_id: str) -> None:
        """POST ``activity_json`` to ``inbox_url``.

        Raises:
            DeliveryError: On a non-2xx response or a transport failure.
        """
        client = await self._ensure_client()
        body = activity_json.encode("utf-8")
        headers = {
            "Content-Type": ACTIVITY_CONTENT_TYPE,
            "Accept": ACTIVITY_CONTENT_TYPE,
            "User-Agent": self.config.user_agent,
        }
        headers.update(
            self.signer.sign(
                method="POST",
                url=inbox_url,
                body=body,
                headers=headers,
                local_user_id=local_user_id,
            )
        )

        try:
            response = await client.post(inbox_url, content=body, headers=headers)
        except httpx.HTTPError as exc:
            raise DeliveryError(str(exc) or exc.__class__.__name__) from exc

        if not response.is_success:
            excerpt = response.text[:ERROR_BODY_EXCERPT]
            raise DeliveryError(f"HTTP {response.status_code}: {excerpt}")

        logger.debug("Delivered to %s (%d)", inbox_url, response.status_code)

    async def close(self) -> None:
        """Clean up underlying HTTP client resources."""

        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None
