"""
Error taxonomy for the billing core.

Stale and duplicate notifications are not errors: the reducer reports them
as skipped results. Collaborator failures inside batch jobs are counted by
the job, never raised.
"""

from typing import Any, Dict, List, Optional


class BillingCoreError(Exception):
    """Base exception for billing core errors."""
    pass


class ReconciliationError(BillingCoreError):
    """
    Raised when an inbound billing notification is malformed.

    The notification is rejected without any state change.
    """

    def __init__(self, message: str, details: Optional[List[Dict[str, Any]]] = None):
        self.details = details or []
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": "reconciliation_error",
            "message": str(self),
            "details": self.details,
        }


class ConflictError(BillingCoreError):
    """Raised when compare-and-swap retries are exhausted for an account."""

    def __init__(self, account_id: str, attempts: int):
        self.account_id = account_id
        self.attempts = attempts
        super().__init__(
            f"Concurrent update conflict on account {account_id} "
            f"after {attempts} attempts"
        )


class AccountNotFoundError(BillingCoreError):
    """Requested account does not exist."""

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}")


class BetaCodeError(BillingCoreError):
    """Base exception for beta code redemption errors."""
    pass


class InvalidBetaCodeError(BetaCodeError):
    """Beta code is not in the configured lookup."""
    pass


class BetaRedemptionError(BetaCodeError):
    """Account is not eligible for beta redemption."""
    pass


class CancellationError(BillingCoreError):
    """Account has no processor subscription to cancel."""
    pass


class ConfigurationError(BillingCoreError):
    """Billing configuration is invalid."""
    pass
