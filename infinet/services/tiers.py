"""
Tier Policy Table

Static mapping from subscription tier to quotas. ``None`` quotas are
unlimited. Unknown tiers resolve to the free policy.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from infinet.config import settings
from infinet.db.models import SubscriptionTier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierPolicy:
    tier: str
    name: str
    price_usd: int
    monthly_token_quota: Optional[int]  # None = unlimited
    daily_request_quota: Optional[int]  # None = unlimited
    features: List[str] = field(default_factory=list)
    description: str = ""

    @property
    def unlimited_tokens(self) -> bool:
        return self.monthly_token_quota is None

    @property
    def unlimited_requests(self) -> bool:
        return self.daily_request_quota is None


TIER_POLICIES = {
    SubscriptionTier.FREE.value: TierPolicy(
        tier="free",
        name="Free",
        price_usd=0,
        monthly_token_quota=500,
        daily_request_quota=10,
        features=[
            "500 tokens per month",
            "10 requests per day",
            "Text chat only",
            "Basic AI models",
        ],
        description="Get started with Infinet for free",
    ),
    SubscriptionTier.STARTER.value: TierPolicy(
        tier="starter",
        name="Starter",
        price_usd=10,
        monthly_token_quota=10_000,
        daily_request_quota=30,
        features=[
            "10,000 tokens per month",
            "30 requests per day",
            "Text chat only",
            "Basic AI models",
        ],
        description="Great for trying out Infinet",
    ),
    SubscriptionTier.PREMIUM.value: TierPolicy(
        tier="premium",
        name="Premium",
        price_usd=50,
        monthly_token_quota=50_000,
        daily_request_quota=60,
        features=[
            "50,000 tokens per month",
            "60 requests per day",
            "All AI models access",
            "Image generation included",
        ],
        description="Perfect for individuals and small teams",
    ),
    SubscriptionTier.LIMITLESS.value: TierPolicy(
        tier="limitless",
        name="Limitless",
        price_usd=150,
        monthly_token_quota=100_000,
        daily_request_quota=None,
        features=[
            "100,000 tokens per month",
            "Unlimited requests per day",
            "Priority processing speed",
            "API access",
        ],
        description="For power users and businesses",
    ),
    SubscriptionTier.TRIAL.value: TierPolicy(
        tier="trial",
        name="Trial",
        price_usd=0,
        monthly_token_quota=1_000,
        daily_request_quota=20,
        features=["1,000 tokens during the trial"],
    ),
    SubscriptionTier.DEVELOPER.value: TierPolicy(
        tier="developer",
        name="Developer",
        price_usd=0,
        monthly_token_quota=None,
        daily_request_quota=None,
        features=["Unlimited everything"],
    ),
}


def policy(tier: Optional[str]) -> TierPolicy:
    """Look up a tier's policy. Unknown tiers fail closed to free."""
    found = TIER_POLICIES.get(tier or "")
    if found is None:
        logger.warning(f"Unknown subscription tier '{tier}', applying free policy")
        return TIER_POLICIES[SubscriptionTier.FREE.value]
    return found


def is_developer(user_id: Optional[str], email: Optional[str] = None) -> bool:
    """Allow-listed identities bypass every entitlement check."""
    if user_id and user_id in settings.developer_user_ids:
        return True
    if email and email.lower() in {e.lower() for e in settings.developer_emails}:
        return True
    return False
