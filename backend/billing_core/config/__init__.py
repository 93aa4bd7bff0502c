"""Billing configuration."""

from billing_core.config.billing_config import (
    BetaCodeLookup,
    BillingConfig,
    get_billing_config,
)

__all__ = ["BetaCodeLookup", "BillingConfig", "get_billing_config"]
