"""
Entitlement evaluation.

Decides, for an account snapshot and an instant, whether the product may be
used, which access tier applies and what the user should be told.

Decision table (first match wins, by subscription_status):

    beta_access   now <= beta_expires_at (+ beta grace, default 0)
    trial         always
    active        always
    past_due      now <= current_period_end + grace_period_days
    canceled      now <= current_period_end
    unpaid        never
    none          never

CRITICAL: Evaluation is pure. It never mutates the account, performs no I/O
and is safe to call concurrently from any number of request handlers.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

from billing_core.config.billing_config import BillingConfig
from billing_core.entitlements.grace import days_until, in_grace
from billing_core.models.account import (
    AccessTier,
    Account,
    Severity,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)

_DEFAULT_CONFIG = BillingConfig()


class ReasonCode:
    """Machine-readable reason codes attached to every decision."""
    BETA_ACTIVE = "beta_active"
    BETA_EXPIRING = "beta_expiring"
    BETA_EXPIRED = "beta_expired"
    BETA_MISSING_EXPIRY = "beta_missing_expiry"
    TRIAL_ACTIVE = "trial_active"
    SUBSCRIPTION_ACTIVE = "subscription_active"
    PAYMENT_PAST_DUE = "payment_past_due"
    GRACE_PERIOD_EXPIRED = "grace_period_expired"
    CANCELED_UNTIL_PERIOD_END = "canceled_until_period_end"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    PAYMENT_FAILED = "payment_failed"
    NO_SUBSCRIPTION = "no_subscription"


@dataclass(frozen=True)
class StatusMessage:
    """User-facing status line."""
    severity: Severity
    text: str

    def to_dict(self) -> dict:
        return {"severity": self.severity.value, "text": self.text}


@dataclass(frozen=True)
class AccessDecision:
    """Complete outcome of an entitlement evaluation."""
    access: bool
    tier: AccessTier
    status: SubscriptionStatus
    severity: Severity
    text: str
    reason_code: str
    days_remaining: Optional[int] = None

    @property
    def message(self) -> StatusMessage:
        return StatusMessage(severity=self.severity, text=self.text)

    def to_dict(self) -> dict:
        return {
            "access": self.access,
            "tier": self.tier.value,
            "status": self.status.value,
            "severity": self.severity.value,
            "message": self.text,
            "reason_code": self.reason_code,
            "days_remaining": self.days_remaining,
        }


def _days(n: int) -> str:
    return "1 day" if n == 1 else f"{n} days"


def _date(instant: datetime) -> str:
    return instant.strftime("%B %d, %Y")


def _decision(
    account: Account,
    access: bool,
    tier: AccessTier,
    severity: Severity,
    text: str,
    reason_code: str,
    days_remaining: Optional[int] = None,
) -> AccessDecision:
    return AccessDecision(
        access=access,
        tier=tier if access else AccessTier.LAPSED,
        status=account.subscription_status,
        severity=severity,
        text=text,
        reason_code=reason_code,
        days_remaining=days_remaining,
    )


def _evaluate_beta(account: Account, now: datetime, config: BillingConfig) -> AccessDecision:
    if account.beta_expires_at is None:
        return _decision(
            account, False, AccessTier.BETA, Severity.ERROR,
            "Beta access status without expiration date",
            ReasonCode.BETA_MISSING_EXPIRY,
        )

    window = in_grace(account.beta_expires_at, now, config.beta_grace_days)
    if not window.active:
        return _decision(
            account, False, AccessTier.BETA, Severity.ERROR,
            "Beta access has expired",
            ReasonCode.BETA_EXPIRED, days_remaining=0,
        )

    remaining = days_until(account.beta_expires_at, now)
    if remaining > config.beta_warning_days:
        return _decision(
            account, True, AccessTier.BETA, Severity.INFO,
            f"Beta access valid until {_date(account.beta_expires_at)}",
            ReasonCode.BETA_ACTIVE, days_remaining=remaining,
        )
    if remaining == 0:
        text = "Beta access expires today"
    else:
        text = f"Beta access expires in {_days(remaining)}"
    return _decision(
        account, True, AccessTier.BETA, Severity.WARNING, text,
        ReasonCode.BETA_EXPIRING, days_remaining=remaining,
    )


def _evaluate_trial(account: Account, now: datetime, config: BillingConfig) -> AccessDecision:
    if account.trial_ends_at is not None:
        remaining = days_until(account.trial_ends_at, now)
        return _decision(
            account, True, AccessTier.TRIAL, Severity.INFO,
            f"You are on a trial subscription ({_days(remaining)} remaining)",
            ReasonCode.TRIAL_ACTIVE, days_remaining=remaining,
        )
    return _decision(
        account, True, AccessTier.TRIAL, Severity.INFO,
        "You are on a trial subscription",
        ReasonCode.TRIAL_ACTIVE,
    )


def _evaluate_active(account: Account, now: datetime, config: BillingConfig) -> AccessDecision:
    if account.current_period_end is not None:
        remaining = days_until(account.current_period_end, now)
        return _decision(
            account, True, AccessTier.PAID, Severity.SUCCESS,
            f"Active subscription, renews in {_days(remaining)}",
            ReasonCode.SUBSCRIPTION_ACTIVE, days_remaining=remaining,
        )
    return _decision(
        account, True, AccessTier.PAID, Severity.SUCCESS,
        "Active subscription",
        ReasonCode.SUBSCRIPTION_ACTIVE,
    )


def _evaluate_past_due(account: Account, now: datetime, config: BillingConfig) -> AccessDecision:
    window = in_grace(account.current_period_end, now, config.grace_period_days)
    if window.active:
        return _decision(
            account, True, AccessTier.PAID, Severity.WARNING,
            "Payment past due. Please update your payment method "
            f"({_days(window.days_remaining)} of access remaining).",
            ReasonCode.PAYMENT_PAST_DUE, days_remaining=window.days_remaining,
        )
    return _decision(
        account, False, AccessTier.PAID, Severity.ERROR,
        "Payment past due and the grace period has ended. "
        "Please update your payment method to restore access.",
        ReasonCode.GRACE_PERIOD_EXPIRED, days_remaining=0,
    )


def _evaluate_canceled(account: Account, now: datetime, config: BillingConfig) -> AccessDecision:
    window = in_grace(account.current_period_end, now, grace_days=0)
    if window.active:
        return _decision(
            account, True, AccessTier.PAID, Severity.WARNING,
            "Your subscription has been canceled but you have access until "
            f"{_date(account.current_period_end)} ({_days(window.days_remaining)} remaining)",
            ReasonCode.CANCELED_UNTIL_PERIOD_END, days_remaining=window.days_remaining,
        )
    return _decision(
        account, False, AccessTier.PAID, Severity.ERROR,
        "Your subscription has been canceled",
        ReasonCode.SUBSCRIPTION_CANCELED, days_remaining=0,
    )


def _evaluate_unpaid(account: Account, now: datetime, config: BillingConfig) -> AccessDecision:
    return _decision(
        account, False, AccessTier.PAID, Severity.ERROR,
        "Your subscription is inactive due to payment failure",
        ReasonCode.PAYMENT_FAILED,
    )


def _evaluate_none(account: Account, now: datetime, config: BillingConfig) -> AccessDecision:
    return _decision(
        account, False, AccessTier.LAPSED, Severity.ERROR,
        "No active subscription",
        ReasonCode.NO_SUBSCRIPTION,
    )


# Explicit transition table: one rule per status, no string branching
ACCESS_RULES: Dict[SubscriptionStatus, Callable[[Account, datetime, BillingConfig], AccessDecision]] = {
    SubscriptionStatus.BETA_ACCESS: _evaluate_beta,
    SubscriptionStatus.TRIAL: _evaluate_trial,
    SubscriptionStatus.ACTIVE: _evaluate_active,
    SubscriptionStatus.PAST_DUE: _evaluate_past_due,
    SubscriptionStatus.CANCELED: _evaluate_canceled,
    SubscriptionStatus.UNPAID: _evaluate_unpaid,
    SubscriptionStatus.NONE: _evaluate_none,
}


def evaluate(
    account: Account,
    now: datetime,
    config: Optional[BillingConfig] = None,
) -> AccessDecision:
    """
    Evaluate an account's entitlement at an instant.

    Args:
        account: Account snapshot
        now: Current instant (timezone-aware UTC)
        config: Billing config (grace windows); defaults apply when omitted

    Returns:
        AccessDecision with access flag, tier and user-facing message
    """
    rule = ACCESS_RULES[account.subscription_status]
    return rule(account, now, config or _DEFAULT_CONFIG)


def has_access(
    account: Account,
    now: datetime,
    config: Optional[BillingConfig] = None,
) -> bool:
    """Check whether the account may use gated functionality at now."""
    return evaluate(account, now, config).access


def status_message(
    account: Account,
    now: datetime,
    config: Optional[BillingConfig] = None,
) -> StatusMessage:
    """Return the severity and human-readable status for the account."""
    return evaluate(account, now, config).message
