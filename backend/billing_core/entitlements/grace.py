"""
Grace period policy.

The "extra days after lapse" rule is defined here once and reused by beta,
past_due and canceled handling. Boundaries are inclusive: access holds at the
exact instant the window closes.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from billing_core.config.billing_config import DEFAULT_GRACE_PERIOD_DAYS

SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class GraceWindow:
    """Result of a grace window check."""
    active: bool
    days_remaining: int
    ends_at: Optional[datetime] = None


def days_until(instant: datetime, now: datetime) -> int:
    """
    Whole days from now until instant, rounded up and clamped to >= 0.

    Corrupted or past timestamps never produce negative counts.
    """
    seconds = (instant - now).total_seconds()
    return max(0, math.ceil(seconds / SECONDS_PER_DAY))


def in_grace(
    expiry: Optional[datetime],
    now: datetime,
    grace_days: int = DEFAULT_GRACE_PERIOD_DAYS,
) -> GraceWindow:
    """
    Check whether now falls within grace_days after expiry.

    Args:
        expiry: Instant the entitlement formally expired (or expires)
        now: Current instant
        grace_days: Length of the window after expiry

    Returns:
        GraceWindow; inactive with zero days when expiry is unknown
    """
    if expiry is None:
        return GraceWindow(active=False, days_remaining=0)

    ends_at = expiry + timedelta(days=grace_days)
    return GraceWindow(
        active=now <= ends_at,
        days_remaining=days_until(ends_at, now),
        ends_at=ends_at,
    )
