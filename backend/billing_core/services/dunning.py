"""
Dunning tracker - payment failure history and retry scheduling.

Each failure is appended to the account's history and schedules the next
retry with bounded exponential backoff: 1, 2, 4, then 7 days for every
further retry. The tracker only records schedule intent; the reminder job
reads next_payment_retry_date, nothing here triggers a retry.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional

from billing_core.config.billing_config import DEFAULT_MAX_RETRY_INTERVAL_DAYS
from billing_core.models.account import Account, PaymentFailure

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_REASON = "Payment method declined"


@dataclass(frozen=True)
class FailureRecord:
    """Inbound description of a failed payment."""
    reason: Optional[str] = None
    amount_due: Optional[int] = None
    invoice_id: Optional[str] = None


def retry_delay(retry_count: int, cap_days: int = DEFAULT_MAX_RETRY_INTERVAL_DAYS) -> timedelta:
    """
    Delay before the next retry for the given post-increment retry count.

    retry_count 1 -> 1 day, 2 -> 2 days, 3 -> 4 days, 4+ -> cap_days.
    """
    if retry_count < 1:
        raise ValueError(f"retry_count must be >= 1, got {retry_count}")
    # Exponent is bounded so huge counts never build huge integers
    exponent = min(retry_count - 1, cap_days.bit_length())
    return timedelta(days=min(2 ** exponent, cap_days))


def record_failure(
    account: Account,
    failure: FailureRecord,
    now: datetime,
    cap_days: int = DEFAULT_MAX_RETRY_INTERVAL_DAYS,
) -> Account:
    """
    Record a payment failure and schedule the next retry.

    All dunning fields change in a single replace().

    Args:
        account: Account snapshot
        failure: Failure details from the processor
        now: Instant of the failure
        cap_days: Maximum retry interval

    Returns:
        New Account with the failure appended
    """
    retry_count = account.payment_retry_count + 1
    entry = PaymentFailure(
        date=now,
        reason=failure.reason or DEFAULT_FAILURE_REASON,
        amount=failure.amount_due,
        invoice_id=failure.invoice_id,
    )
    next_retry = now + retry_delay(retry_count, cap_days)

    logger.info("Payment failure recorded", extra={
        "account_id": account.account_id,
        "invoice_id": failure.invoice_id,
        "retry_count": retry_count,
        "next_payment_retry_date": next_retry.isoformat(),
    })

    return replace(
        account,
        payment_failures=account.payment_failures + (entry,),
        payment_retry_count=retry_count,
        last_payment_failure_date=now,
        next_payment_retry_date=next_retry,
    )


def reset_dunning(account: Account) -> Account:
    """
    Clear all dunning state after a successful payment.

    Partial resets are never produced: count and all three timestamps are
    cleared together. Failure history is preserved.
    """
    if (
        account.payment_retry_count == 0
        and account.last_payment_failure_date is None
        and account.next_payment_retry_date is None
        and account.payment_reminder_sent_date is None
    ):
        return account

    logger.info("Dunning state reset", extra={
        "account_id": account.account_id,
        "previous_retry_count": account.payment_retry_count,
    })

    return replace(
        account,
        payment_retry_count=0,
        last_payment_failure_date=None,
        next_payment_retry_date=None,
        payment_reminder_sent_date=None,
    )


def mark_reminder_sent(account: Account, now: datetime) -> Account:
    """Record that a payment retry reminder went out."""
    return replace(account, payment_reminder_sent_date=now)


def reminder_due(account: Account) -> bool:
    """
    Check whether a payment retry reminder is owed for the latest failure.

    A reminder is owed once per failure: when none was sent yet, or the last
    one predates the most recent failure.
    """
    if account.last_payment_failure_date is None or account.next_payment_retry_date is None:
        return False
    if account.payment_reminder_sent_date is None:
        return True
    return account.payment_reminder_sent_date < account.last_payment_failure_date
