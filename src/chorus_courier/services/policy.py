"""Instance-level federation policy (blocklist and allowlist)."""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

REASON_BLOCKED = "blocked"
REASON_ALLOWLIST = "allowlist"


def _normalize_entries(items: Iterable[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for item in items:
        normalized = item.strip().lower()
        if normalized:
            seen.setdefault(normalized, None)
    return tuple(seen)


def split_domain_list(value: str | None) -> tuple[str, ...]:
    """Split a comma separated domain list from configuration."""
    if not value:
        return ()
    return _normalize_entries(value.split(","))


def domain_matches(hostname: str, pattern: str) -> bool:
    """Return True if ``hostname`` is ``pattern`` or one of its subdomains."""
    host = hostname.lower()
    pat = pattern.lower()
    return host == pat or host.endswith(f".{pat}")


def extract_hostname(target: str) -> str | None:
    """Return the lower-cased hostname of a URL, or a bare domain as given."""
    if not target or not isinstance(target, str):
        return None
    trimmed = target.strip().lower()
    if not trimmed:
        return None
    if "://" in trimmed:
        try:
            hostname = urlsplit(trimmed).hostname
        except ValueError:
            return None
        return hostname or None
    if "/" not in trimmed and " " not in trimmed:
        return trimmed
    return None


def is_http_url(value: str) -> bool:
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.hostname)


def is_internal_host(hostname: str) -> bool:
    """Return True for hosts that must never be fetched on a remote actor's behalf.

    Covers localhost, loopback, private, link-local and reserved IP literals,
    and single-label names that only resolve inside the local network.
    """
    host = hostname.strip().strip("[]").lower().rstrip(".")
    if not host or host == "localhost" or host.endswith(".localhost"):
        return True
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return "." not in host
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_unspecified
        or address.is_multicast
    )


@dataclass(frozen=True)
class PolicyDecision:
    """Outcome of checking a URL or actor against the federation policy."""

    allowed: bool
    hostname: str | None
    reason: str | None = None


@dataclass(frozen=True)
class FederationPolicy:
    """Blocked and allowed instance patterns.

    A blocked pattern always wins. A non-empty allowlist denies every host
    that does not match one of its entries.
    """

    blocked: tuple[str, ...] = field(default_factory=tuple)
    allow: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_lists(cls, blocked: Iterable[str] = (), allow: Iterable[str] = ()) -> FederationPolicy:
        return cls(blocked=_normalize_entries(blocked), allow=_normalize_entries(allow))

    def check(self, target: str) -> PolicyDecision:
        """Apply the policy to a URL, actor URI or bare domain."""
        hostname = extract_hostname(target)
        if hostname is None:
            if self.allow:
                return PolicyDecision(False, None, REASON_ALLOWLIST)
            return PolicyDecision(True, None)

        if any(domain_matches(hostname, pattern) for pattern in self.blocked):
            return PolicyDecision(False, hostname, REASON_BLOCKED)

        if self.allow and not any(domain_matches(hostname, pattern) for pattern in self.allow):
            return PolicyDecision(False, hostname, REASON_ALLOWLIST)

        return PolicyDecision(True, hostname)

    def allows_actor(self, actor_uri: str) -> bool:
        """Return True if inbound traffic from ``actor_uri`` may be processed."""
        if not is_http_url(actor_uri):
            return False
        hostname = extract_hostname(actor_uri)
        if hostname is None or is_internal_host(hostname):
            logger.warning("Federation denied for %s: internal address", hostname or actor_uri)
            return False
        decision = self.check(actor_uri)
        if not decision.allowed:
            logger.warning(
                "Federation denied for %s: %s",
                decision.hostname,
                "blocked instance" if decision.reason == REASON_BLOCKED else "not on allowlist",
            )
        return decision.allowed
