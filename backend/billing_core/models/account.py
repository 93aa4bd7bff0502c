"""
Account model - canonical subscription state for one user.

Provides:
- SubscriptionStatus: The primary state-machine variable
- AccessTier: The four access tiers the product gates on
- SubscriptionHistoryEntry: Append-only audit snapshot of a billing period
- PaymentFailure: Append-only record of a failed payment attempt
- Account: Immutable snapshot of an account's subscription fields

CRITICAL: Account snapshots are never mutated in place. Every state change
produces a new Account via dataclasses.replace(), and persistence is a
separate step owned by the storage collaborator.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

# Maximum number of notification fingerprints remembered per account
MAX_PROCESSED_NOTIFICATIONS = 50

# Fingerprints derived from payload content rather than a processor event id
PAYLOAD_FINGERPRINT_PREFIX = "sha256:"


class SubscriptionStatus(str, Enum):
    """Subscription status values."""
    BETA_ACCESS = "beta_access"  # Redeemed beta code, time-limited
    TRIAL = "trial"              # Processor-managed trial
    ACTIVE = "active"            # Paid and current
    PAST_DUE = "past_due"        # Payment failed, in dunning
    CANCELED = "canceled"        # Canceled, access until period end
    UNPAID = "unpaid"            # Dunning exhausted or payment incomplete
    NONE = "none"                # Never subscribed


# Statuses that can only be reached through the payment processor
PROCESSOR_STATUSES = frozenset({
    SubscriptionStatus.TRIAL,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.CANCELED,
    SubscriptionStatus.UNPAID,
})


class AccessTier(str, Enum):
    """Access tiers exposed to the rest of the product."""
    BETA = "beta"
    TRIAL = "trial"
    PAID = "paid"
    LAPSED = "lapsed"


class Severity(str, Enum):
    """Severity of a user-facing status message."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


class SubscriptionPlan(str, Enum):
    """Billing plans offered by the processor."""
    MONTHLY = "monthly"
    ANNUAL = "annual"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class SubscriptionHistoryEntry:
    """
    Snapshot of one billing period as reported by the processor.

    Entries are appended, never rewritten, except for the cancellation
    marking performed by mark_canceled().
    """
    status: SubscriptionStatus
    price_id: Optional[str]
    start_date: Optional[datetime]
    end_date: Optional[datetime]
    cancel_at_period_end: bool = False

    @property
    def is_open(self) -> bool:
        return self.status != SubscriptionStatus.CANCELED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "price_id": self.price_id,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "cancel_at_period_end": self.cancel_at_period_end,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubscriptionHistoryEntry":
        return cls(
            status=SubscriptionStatus(data["status"]),
            price_id=data.get("price_id"),
            start_date=_parse_iso(data.get("start_date")),
            end_date=_parse_iso(data.get("end_date")),
            cancel_at_period_end=bool(data.get("cancel_at_period_end", False)),
        )


@dataclass(frozen=True)
class PaymentFailure:
    """A single failed payment attempt."""
    date: datetime
    reason: str
    amount: Optional[int]  # Minor currency units, as reported
    invoice_id: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": _iso(self.date),
            "reason": self.reason,
            "amount": self.amount,
            "invoice_id": self.invoice_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaymentFailure":
        return cls(
            date=_parse_iso(data["date"]),
            reason=data.get("reason") or "",
            amount=data.get("amount"),
            invoice_id=data.get("invoice_id"),
        )


@dataclass(frozen=True)
class Account:
    """
    Immutable snapshot of an account's subscription state.

    Invariants (enforced by the operations that produce new snapshots):
    - payment_retry_count == 0 whenever last_payment_failure_date is None
    - next_payment_retry_date > last_payment_failure_date when both are set
    - beta_expires_at is never cleared once set
    - subscription_history and payment_failures never shrink
    """
    account_id: str
    email: str
    subscription_status: SubscriptionStatus = SubscriptionStatus.NONE

    # Beta access
    beta_access_code: Optional[str] = None
    beta_expires_at: Optional[datetime] = None

    # Processor correlation
    external_customer_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    external_price_id: Optional[str] = None

    # Current billing period
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    subscription_plan: Optional[SubscriptionPlan] = None
    trial_ends_at: Optional[datetime] = None

    # Audit trails
    subscription_history: Tuple[SubscriptionHistoryEntry, ...] = ()
    payment_failures: Tuple[PaymentFailure, ...] = ()

    # Dunning
    payment_retry_count: int = 0
    last_payment_failure_date: Optional[datetime] = None
    next_payment_retry_date: Optional[datetime] = None
    payment_reminder_sent_date: Optional[datetime] = None

    # Redelivery detection and optimistic locking
    processed_notifications: Tuple[str, ...] = field(default=(), repr=False)
    version: int = 0

    def __repr__(self) -> str:
        return (
            f"<Account(account_id={self.account_id}, "
            f"status={self.subscription_status.value}, version={self.version})>"
        )

    @property
    def latest_history_entry(self) -> Optional[SubscriptionHistoryEntry]:
        return self.subscription_history[-1] if self.subscription_history else None

    @property
    def in_dunning(self) -> bool:
        return self.last_payment_failure_date is not None

    def has_processed(self, fingerprint: str) -> bool:
        """
        Whether a notification with this fingerprint was already applied.

        Event ids are unique, so any match in the window is a redelivery.
        A payload hash only identifies content: the same payload may
        legitimately arrive again after a different one, so it counts as a redelivery only when it was the most
        recently applied notification.
        """
        if fingerprint.startswith(PAYLOAD_FINGERPRINT_PREFIX):
            return bool(self.processed_notifications) and self.processed_notifications[-1] == fingerprint
        return fingerprint in self.processed_notifications

    def remember_notification(self, fingerprint: str) -> "Account":
        """Return a copy with fingerprint moved to the end of the bounded window."""
        if self.processed_notifications[-1:] == (fingerprint,):
            return self
        kept = tuple(f for f in self.processed_notifications if f != fingerprint)
        window = (kept + (fingerprint,))[-MAX_PROCESSED_NOTIFICATIONS:]
        return replace(self, processed_notifications=window)
