"""
Customer-initiated cancellation.

Entry point for the account settings cancel action. Access continues until
the end of the paid period; the processor's own cancellation events later
arrive through the webhook handler and are reconciled as usual.
"""

import logging
from typing import Optional

from billing_core.config.billing_config import BillingConfig, get_billing_config
from billing_core.errors import CancellationError
from billing_core.models.account import Account, SubscriptionStatus
from billing_core.platform.clock import Clock, get_clock
from billing_core.repositories.account_repository import AccountStore, apply_with_retry
from billing_core.services.reconciliation import mark_canceled

logger = logging.getLogger(__name__)

CANCELABLE_STATUSES = frozenset({
    SubscriptionStatus.TRIAL,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.UNPAID,
})


def cancel_subscription(
    store: AccountStore,
    account_id: str,
    clock: Optional[Clock] = None,
    config: Optional[BillingConfig] = None,
) -> Account:
    """
    Cancel an account's subscription at period end.

    Cancelling an already canceled account is a no-op.

    Args:
        store: Account storage
        account_id: Account to cancel
        clock: Source of "now"
        config: Billing config (conflict retries)

    Returns:
        The persisted Account

    Raises:
        AccountNotFoundError: Account does not exist
        CancellationError: Account has no processor subscription
        ConflictError: Concurrent writers exhausted the retries
    """
    clock = clock or get_clock()
    config = config or get_billing_config()
    now = clock.now()

    def mutate(current: Account) -> Account:
        if current.subscription_status == SubscriptionStatus.CANCELED:
            return current
        if current.subscription_status not in CANCELABLE_STATUSES:
            raise CancellationError(
                f"Account with status '{current.subscription_status.value}' has no subscription to cancel"
            )
        return mark_canceled(current, now)

    try:
        return apply_with_retry(store, account_id, mutate, config.max_conflict_retries)
    except CancellationError:
        logger.warning("Cancellation refused", extra={"account_id": account_id})
        raise
