from infinet.services.auth_service import Identity, create_access_token, decode_access_token
from infinet.services.tiers import TierPolicy, policy, is_developer
from infinet.services.usage_ledger import UsageLedger, LedgerTotals, AnomalyPolicy
from infinet.services.usage_aggregate import UsageAggregateCache
from infinet.services.rate_limiter import RequestRateLimiter
from infinet.services.subscription_service import (
    SubscriptionService, SubscriptionSnapshot, snapshot_for, developer_snapshot
)
from infinet.services.entitlement_gate import EntitlementGate, Allow, Deny, DenyReason
from infinet.services.accounting import UsageAccountant, AccountingResult
from infinet.services.model_client import ModelBackendClient, get_model_client
from infinet.services.reconciler import (
    SubscriptionReconciler, BillingEvent, ReconcileResult, PriceTierMap
)

__all__ = [
    "Identity",
    "create_access_token",
    "decode_access_token",
    # Metering
    "TierPolicy",
    "policy",
    "is_developer",
    "UsageLedger",
    "LedgerTotals",
    "AnomalyPolicy",
    "UsageAggregateCache",
    "RequestRateLimiter",
    "SubscriptionService",
    "SubscriptionSnapshot",
    "snapshot_for",
    "developer_snapshot",
    "EntitlementGate",
    "Allow",
    "Deny",
    "DenyReason",
    "UsageAccountant",
    "AccountingResult",
    # Backends
    "ModelBackendClient",
    "get_model_client",
    # Billing
    "SubscriptionReconciler",
    "BillingEvent",
    "ReconcileResult",
    "PriceTierMap",
]
