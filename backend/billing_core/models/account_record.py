"""
AccountRecord model - persistent form of an Account's subscription fields.

CRITICAL: `version` is the optimistic-locking counter. It is only ever
advanced by the repository's compare-and-swap update; business logic never
writes it.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Column, String, Integer, DateTime, Enum, JSON, Index,
)

from billing_core.db_base import Base
from billing_core.models.account import (
    Account,
    PaymentFailure,
    SubscriptionHistoryEntry,
    SubscriptionPlan,
    SubscriptionStatus,
)
from billing_core.models.base import TimestampMixin, generate_uuid
from billing_core.platform.clock import ensure_utc


class AccountRecord(Base, TimestampMixin):
    """
    Subscription state for one user account.

    History, failures and notification fingerprints are stored as JSON
    arrays; they are append-only at the domain level.
    """

    __tablename__ = "billing_accounts"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )
    email = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="Account email, notification address"
    )

    subscription_status = Column(
        Enum(
            *[s.value for s in SubscriptionStatus],
            name="subscription_status"
        ),
        default=SubscriptionStatus.NONE.value,
        nullable=False,
        index=True,
        comment="Primary state-machine variable"
    )

    # Beta access
    beta_access_code = Column(String(100), nullable=True)
    beta_expires_at = Column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
        comment="Set once on beta redemption, never cleared"
    )

    # Processor correlation
    external_customer_id = Column(String(255), nullable=True, unique=True)
    external_subscription_id = Column(String(255), nullable=True)
    external_price_id = Column(String(255), nullable=True)

    # Current billing period
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    subscription_plan = Column(
        Enum(*[p.value for p in SubscriptionPlan], name="subscription_plan"),
        nullable=True
    )
    trial_ends_at = Column(DateTime(timezone=True), nullable=True)

    # Audit trails
    subscription_history = Column(JSON, nullable=False, default=list)
    payment_failures = Column(JSON, nullable=False, default=list)

    # Dunning
    payment_retry_count = Column(Integer, nullable=False, default=0)
    last_payment_failure_date = Column(DateTime(timezone=True), nullable=True)
    next_payment_retry_date = Column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
        comment="Scheduled retry, read by the payment reminder job"
    )
    payment_reminder_sent_date = Column(DateTime(timezone=True), nullable=True)

    processed_notifications = Column(
        JSON,
        nullable=False,
        default=list,
        comment="Recent notification fingerprints for redelivery detection"
    )
    version = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_billing_accounts_status_beta", "subscription_status", "beta_expires_at"),
    )

    def __repr__(self) -> str:
        return f"<AccountRecord(id={self.id}, status={self.subscription_status}, version={self.version})>"


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_utc(value) if value is not None else None


def record_to_account(record: AccountRecord) -> Account:
    """Build an immutable Account snapshot from a persisted record."""
    return Account(
        account_id=record.id,
        email=record.email,
        subscription_status=SubscriptionStatus(record.subscription_status),
        beta_access_code=record.beta_access_code,
        beta_expires_at=_utc(record.beta_expires_at),
        external_customer_id=record.external_customer_id,
        external_subscription_id=record.external_subscription_id,
        external_price_id=record.external_price_id,
        current_period_start=_utc(record.current_period_start),
        current_period_end=_utc(record.current_period_end),
        subscription_plan=SubscriptionPlan(record.subscription_plan) if record.subscription_plan else None,
        trial_ends_at=_utc(record.trial_ends_at),
        subscription_history=tuple(
            _normalize_entry(SubscriptionHistoryEntry.from_dict(e))
            for e in (record.subscription_history or [])
        ),
        payment_failures=tuple(
            PaymentFailure.from_dict(f) for f in (record.payment_failures or [])
        ),
        payment_retry_count=record.payment_retry_count or 0,
        last_payment_failure_date=_utc(record.last_payment_failure_date),
        next_payment_retry_date=_utc(record.next_payment_retry_date),
        payment_reminder_sent_date=_utc(record.payment_reminder_sent_date),
        processed_notifications=tuple(record.processed_notifications or []),
        version=record.version or 0,
    )


def _normalize_entry(entry: SubscriptionHistoryEntry) -> SubscriptionHistoryEntry:
    return SubscriptionHistoryEntry(
        status=entry.status,
        price_id=entry.price_id,
        start_date=_utc(entry.start_date),
        end_date=_utc(entry.end_date),
        cancel_at_period_end=entry.cancel_at_period_end,
    )


def account_to_columns(account: Account) -> dict:
    """Column values for an Account, excluding id and version."""
    return {
        "email": account.email,
        "subscription_status": account.subscription_status.value,
        "beta_access_code": account.beta_access_code,
        "beta_expires_at": account.beta_expires_at,
        "external_customer_id": account.external_customer_id,
        "external_subscription_id": account.external_subscription_id,
        "external_price_id": account.external_price_id,
        "current_period_start": account.current_period_start,
        "current_period_end": account.current_period_end,
        "subscription_plan": account.subscription_plan.value if account.subscription_plan else None,
        "trial_ends_at": account.trial_ends_at,
        "subscription_history": [e.to_dict() for e in account.subscription_history],
        "payment_failures": [f.to_dict() for f in account.payment_failures],
        "payment_retry_count": account.payment_retry_count,
        "last_payment_failure_date": account.last_payment_failure_date,
        "next_payment_retry_date": account.next_payment_retry_date,
        "payment_reminder_sent_date": account.payment_reminder_sent_date,
        "processed_notifications": list(account.processed_notifications),
    }
