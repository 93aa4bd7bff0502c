"""
Entitlement evaluation for subscription access.

Usage:
    from billing_core.entitlements import evaluate

    decision = evaluate(account, clock.now())
    if not decision.access:
        raise EntitlementDeniedError(decision)
"""

from billing_core.entitlements.errors import (
    EntitlementDeniedError,
    EntitlementError,
)
from billing_core.entitlements.evaluator import (
    AccessDecision,
    ReasonCode,
    StatusMessage,
    evaluate,
    has_access,
    status_message,
)
from billing_core.entitlements.grace import GraceWindow, in_grace

__all__ = [
    "AccessDecision",
    "EntitlementDeniedError",
    "EntitlementError",
    "GraceWindow",
    "ReasonCode",
    "StatusMessage",
    "evaluate",
    "has_access",
    "in_grace",
    "status_message",
]
