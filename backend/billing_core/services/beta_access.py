"""
Beta access code redemption.

Valid codes and their expiries come from an injected BetaCodeLookup (owned by
the billing config), never from a table inside the evaluator.
"""

import logging
from dataclasses import replace
from typing import Optional

from billing_core.config.billing_config import BetaCodeLookup, get_billing_config
from billing_core.errors import BetaRedemptionError, InvalidBetaCodeError
from billing_core.models.account import PROCESSOR_STATUSES, Account, SubscriptionStatus

logger = logging.getLogger(__name__)


def redeem_beta_code(
    account: Account,
    code: str,
    lookup: Optional[BetaCodeLookup] = None,
) -> Account:
    """
    Grant beta access from a code.

    Args:
        account: Account snapshot
        code: Code entered by the user
        lookup: Code -> expiry table (defaults to the configured table)

    Returns:
        New Account in beta_access with beta_expires_at set

    Raises:
        InvalidBetaCodeError: Code is unknown
        BetaRedemptionError: Account already has a processor-managed subscription
    """
    lookup = lookup if lookup is not None else get_billing_config().beta_codes

    if account.subscription_status in PROCESSOR_STATUSES:
        logger.warning("Beta redemption refused for subscribed account", extra={
            "account_id": account.account_id,
            "status": account.subscription_status.value,
        })
        raise BetaRedemptionError(
            f"Account with status '{account.subscription_status.value}' cannot redeem a beta code"
        )

    expires_at = lookup.lookup(code)
    if expires_at is None:
        logger.info("Invalid beta code submitted", extra={"account_id": account.account_id})
        raise InvalidBetaCodeError("Invalid beta access code")

    logger.info("Beta code redeemed", extra={
        "account_id": account.account_id,
        "beta_expires_at": expires_at.isoformat(),
    })

    return replace(
        account,
        subscription_status=SubscriptionStatus.BETA_ACCESS,
        beta_access_code=code.strip(),
        beta_expires_at=expires_at,
    )
