"""
Structured error classes for entitlement enforcement.
"""

from fastapi import status

from billing_core.entitlements.evaluator import AccessDecision


class EntitlementError(Exception):
    """Base exception for entitlement errors."""
    pass


class EntitlementDeniedError(EntitlementError):
    """
    Raised when an access check fails.

    Carries the full decision so the calling layer can render an actionable
    prompt (upgrade, update payment method, redeem a new code).
    """

    def __init__(
        self,
        decision: AccessDecision,
        http_status: int = status.HTTP_402_PAYMENT_REQUIRED,
    ):
        """
        Initialize entitlement denied error.

        Args:
            decision: The denying AccessDecision
            http_status: HTTP status code (default 402)
        """
        self.decision = decision
        self.http_status = http_status
        super().__init__(f"Access denied ({decision.status.value}): {decision.text}")

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": "entitlement_denied",
            "status": self.decision.status.value,
            "tier": self.decision.tier.value,
            "severity": self.decision.severity.value,
            "message": self.decision.text,
            "machine_readable": {
                "code": self.decision.reason_code,
                "status": self.decision.status.value,
                "action": self._get_action(),
            },
        }

    def _get_action(self) -> str:
        """Suggested next step for the user."""
        code = self.decision.reason_code
        if code in ("payment_past_due", "grace_period_expired", "payment_failed"):
            return "update_payment_method"
        if code in ("beta_expired", "beta_missing_expiry"):
            return "subscribe"
        if code == "subscription_canceled":
            return "resubscribe"
        return "subscribe"
