"""
Tests for the Tier Policy Table
"""

import pytest

from infinet.services.tiers import policy, is_developer, TIER_POLICIES


@pytest.mark.parametrize(
    "tier,tokens,requests",
    [
        ("free", 500, 10),
        ("starter", 10_000, 30),
        ("premium", 50_000, 60),
        ("limitless", 100_000, None),
        ("trial", 1_000, 20),
        ("developer", None, None),
    ],
)
def test_policy_table(tier, tokens, requests):
    p = policy(tier)
    assert p.tier == tier
    assert p.monthly_token_quota == tokens
    assert p.daily_request_quota == requests


def test_unknown_tier_fails_closed_to_free(caplog):
    p = policy("platinum")
    assert p is TIER_POLICIES["free"]
    assert "platinum" in caplog.text


def test_missing_tier_is_free():
    assert policy(None).tier == "free"


def test_unlimited_flags():
    assert policy("limitless").unlimited_requests
    assert not policy("limitless").unlimited_tokens
    assert policy("developer").unlimited_tokens


def test_is_developer_by_email_and_id():
    assert is_developer("someone", "dev@infinet.test")
    assert is_developer("someone", "DEV@infinet.test")
    assert is_developer("dev-user", None)
    assert not is_developer("user-1", "user1@example.com")
    assert not is_developer(None, None)
