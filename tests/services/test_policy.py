from __future__ import annotations

import pytest

from chorus_courier.services.policy import (
    REASON_ALLOWLIST,
    REASON_BLOCKED,
    FederationPolicy,
    domain_matches,
    extract_hostname,
    is_internal_host,
    split_domain_list,
)


@pytest.mark.parametrize(
    ("hostname", "pattern", "expected"),
    [
        ("example.com", "example.com", True),
        ("social.example.com", "example.com", True),
        ("EXAMPLE.com", "example.COM", True),
        ("badexample.com", "example.com", False),
        ("example.com.evil", "example.com", False),
    ],
)
def test_domain_matches(hostname: str, pattern: str, expected: bool) -> None:
    assert domain_matches(hostname, pattern) is expected


def test_extract_hostname() -> None:
    assert extract_hostname("https://Mastodon.Social/users/a") == "mastodon.social"
    assert extract_hostname("pleroma.example") == "pleroma.example"
    assert extract_hostname("not a host/at all") is None
    assert extract_hostname("") is None


def test_split_domain_list_normalizes_and_dedupes() -> None:
    assert split_domain_list(" Spam.example, ,spam.example,other.example ") == (
        "spam.example",
        "other.example",
    )
    assert split_domain_list(None) == ()


def test_blocklist_wins_over_allowlist() -> None:
    policy = FederationPolicy.from_lists(blocked=["bad.example"], allow=["bad.example", "good.example"])

    decision = policy.check("https://inbox.bad.example/inbox")
    assert decision.allowed is False
    assert decision.reason == REASON_BLOCKED
    assert policy.check("https://good.example/inbox").allowed is True


def test_allowlist_denies_everything_else() -> None:
    policy = FederationPolicy.from_lists(allow=["good.example"])

    assert policy.check("https://elsewhere.example/inbox").reason == REASON_ALLOWLIST
    assert policy.check("nonsense value").allowed is False
    assert FederationPolicy().check("https://anywhere.example/").allowed is True


def test_allows_actor_requires_http_uri() -> None:
    policy = FederationPolicy.from_lists(blocked=["bad.example"])

    assert policy.allows_actor("https://ok.example/users/a") is True
    assert policy.allows_actor("https://bad.example/users/a") is False
    assert policy.allows_actor("acct:a@ok.example") is False


@pytest.mark.parametrize(
    "actor_uri",
    [
        "http://127.0.0.1/actor",
        "http://[::1]/actor",
        "http://localhost/actor",
        "http://localhost:3000/actor",
        "http://10.0.0.5/actor",
        "https://172.20.1.1/actor",
        "https://192.168.1.10/users/a",
        "http://169.254.169.254/latest",
        "http://intranet/actor",
    ],
)
def test_allows_actor_rejects_internal_addresses(actor_uri: str) -> None:
    assert FederationPolicy().allows_actor(actor_uri) is False


def test_internal_host_detection() -> None:
    assert is_internal_host("::1") is True
    assert is_internal_host("0.0.0.0") is True
    assert is_internal_host("mastodon.social") is False
    assert is_internal_host("93.184.216.34") is False
    assert FederationPolicy().allows_actor("https://remote.example/users/bob") is True
    assert FederationPolicy().allows_actor("https://93.184.216.34/users/bob") is True
