"""Interfaces of the external collaborators the federation queues depend on.

Actor discovery, request signing and activity-content generation live
outside this package. Callers hand in objects satisfying these protocols.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any, Protocol

from chorus_courier.services.actor_cache import ActorProfile


class ActorResolver(Protocol):
    """Fetches a remote actor's profile document over the network."""

    async def fetch_actor(self, actor_uri: str) -> ActorProfile | None: ...


class RequestSigner(Protocol):
    """Produces signature headers for an outbound inbox POST."""

    def sign(
        self,
        *,
        method: str,
        url: str,
        body: bytes,
        headers: Mapping[str, str],
        local_user_id: str,
    ) -> Mapping[str, str]: ...


class ActivityFactory(Protocol):
    """Builds the JSON documents for handshake replies published by a local user."""

    def accept(self, local_user_id: str, follow_activity: Mapping[str, Any]) -> dict[str, Any]: ...

    def reject(self, local_user_id: str, follow_activity: Mapping[str, Any]) -> dict[str, Any]: ...

    def undo(self, local_user_id: str, activity: Mapping[str, Any]) -> dict[str, Any]: ...


class UnsignedRequests:
    """Signer that adds no headers; used when signing is handled by a proxy."""

    def sign(
        self,
        *,
        method: str,
        url: str,
        body: bytes,
        headers: Mapping[str, str],
        local_user_id: str,
    ) -> Mapping[str, str]:
        return {}


ACTIVITYSTREAMS_CONTEXT = "https://www.w3.org/ns/activitystreams"


class InstanceActivityFactory:
    """Minimal handshake documents authored by ``https://<domain>/ap/users/<id>`` actors."""

    def __init__(self, instance_domain: str, *, protocol: str = "https") -> None:
        self.instance_domain = instance_domain
        self.protocol = protocol

    def actor_uri(self, local_user_id: str) -> str:
        return f"{self.protocol}://{self.instance_domain}/ap/users/{local_user_id}"

    def _activity(
        self, kind: str, local_user_id: str, obj: Mapping[str, Any] | str
    ) -> dict[str, Any]:
        return {
            "@context": ACTIVITYSTREAMS_CONTEXT,
            "type": kind,
            "id": (
                f"{self.protocol}://{self.instance_domain}/ap/activities/"
                f"{kind.lower()}-{uuid.uuid4()}"
            ),
            "actor": self.actor_uri(local_user_id),
            "object": obj,
            "published": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        }

    def accept(self, local_user_id: str, follow_activity: Mapping[str, Any]) -> dict[str, Any]:
        return self._activity("Accept", local_user_id, follow_activity.get("id") or dict(follow_activity))

    def reject(self, local_user_id: str, follow_activity: Mapping[str, Any]) -> dict[str, Any]:
        return self._activity("Reject", local_user_id, follow_activity.get("id") or dict(follow_activity))

    def undo(self, local_user_id: str, activity: Mapping[str, Any]) -> dict[str, Any]:
        return self._activity("Undo", local_user_id, dict(activity))
