"""
Account models.
"""

from billing_core.models.account import (
    AccessTier,
    Account,
    PaymentFailure,
    Severity,
    SubscriptionHistoryEntry,
    SubscriptionPlan,
    SubscriptionStatus,
)
from billing_core.models.account_record import AccountRecord

__all__ = [
    "AccessTier",
    "Account",
    "AccountRecord",
    "PaymentFailure",
    "Severity",
    "SubscriptionHistoryEntry",
    "SubscriptionPlan",
    "SubscriptionStatus",
]
