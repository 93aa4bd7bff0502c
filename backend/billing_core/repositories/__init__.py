"""Account storage with optimistic locking."""

from billing_core.repositories.account_repository import (
    AccountStore,
    InMemoryAccountStore,
    SqlAlchemyAccountStore,
    apply_with_retry,
)

__all__ = [
    "AccountStore",
    "InMemoryAccountStore",
    "SqlAlchemyAccountStore",
    "apply_with_retry",
]
