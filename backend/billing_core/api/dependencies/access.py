"""
Access check dependencies.

Provides the FastAPI dependency that gates protected routes on the
entitlement evaluator. The caller's account id is expected on
request.state.account_id (set by the auth layer).
"""

import logging

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from billing_core.config.billing_config import get_billing_config
from billing_core.database.session import get_db_session_sync
from billing_core.entitlements.errors import EntitlementDeniedError
from billing_core.entitlements.evaluator import AccessDecision, evaluate
from billing_core.platform.clock import get_clock
from billing_core.repositories.account_repository import AccountStore, SqlAlchemyAccountStore


logger = logging.getLogger(__name__)


def get_account_store(db_session: Session = Depends(get_db_session_sync)) -> AccountStore:
    """Dependency returning the request-scoped account store."""
    return SqlAlchemyAccountStore(db_session)


def require_access(
    request: Request,
    store: AccountStore = Depends(get_account_store),
) -> AccessDecision:
    """
    Dependency to enforce subscription access.

    Raises 401 if the request carries no known account, 402 Payment Required
    with an actionable body if the account has no access.
    Returns the AccessDecision if access is granted.
    """
    account_id = getattr(request.state, "account_id", None)
    if not account_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )

    account = store.get(account_id)
    if account is None:
        logger.warning("Access check for unknown account", extra={"account_id": account_id})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown account",
        )

    decision = evaluate(account, get_clock().now(), get_billing_config())
    if not decision.access:
        error = EntitlementDeniedError(decision)
        logger.warning(
            "Access denied - no entitlement",
            extra={
                "account_id": account_id,
                "status": decision.status.value,
                "reason_code": decision.reason_code,
            },
        )
        raise HTTPException(status_code=error.http_status, detail=error.to_dict())

    request.state.access_decision = decision
    return decision
