"""
Account repository - the storage collaborator for account snapshots.

All writes go through compare-and-swap on the record version so that two
concurrent read-modify-write cycles on the same account can never interleave
into a hybrid state. Different accounts never contend.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from threading import Lock
from typing import Callable, Dict, List, Optional

from sqlalchemy import and_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_core.config.billing_config import DEFAULT_MAX_CONFLICT_RETRIES
from billing_core.errors import AccountNotFoundError, ConflictError
from billing_core.models.account import Account, SubscriptionStatus
from billing_core.models.account_record import (
    AccountRecord,
    account_to_columns,
    record_to_account,
)
from billing_core.models.base import generate_uuid

logger = logging.getLogger(__name__)

# Statuses in which a scheduled payment retry is still meaningful
DUNNING_STATUSES = (SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID)


class AccountStore(ABC):
    """Key-value access to account snapshots by account id."""

    @abstractmethod
    def get(self, account_id: str) -> Optional[Account]:
        """Get the current snapshot, or None if the account does not exist."""
        pass

    @abstractmethod
    def create(self, account: Account) -> Account:
        """Insert a new account at version 0."""
        pass

    @abstractmethod
    def compare_and_swap(self, account_id: str, expected_version: int, new_account: Account) -> bool:
        """
        Replace the stored snapshot iff its version equals expected_version.

        Returns:
            True if written (version becomes expected_version + 1),
            False on conflict
        """
        pass

    @abstractmethod
    def find_by_customer_id(self, customer_id: str) -> Optional[Account]:
        """Find the account linked to a processor customer id."""
        pass

    @abstractmethod
    def find_beta_expiring(self, start: datetime, end: datetime) -> List[Account]:
        """Beta accounts whose beta_expires_at lies in [start, end]."""
        pass

    @abstractmethod
    def find_payment_retries_due(self, start: datetime, end: datetime) -> List[Account]:
        """Dunning accounts whose next_payment_retry_date lies in [start, end]."""
        pass


class SqlAlchemyAccountStore(AccountStore):
    """
    AccountStore backed by the billing_accounts table.

    Each successful write commits immediately; callers never hold a
    transaction open across a compare-and-swap.
    """

    def __init__(self, db_session: Session):
        """
        Initialize repository with database session.

        Args:
            db_session: SQLAlchemy database session
        """
        self.db = db_session

    def get(self, account_id: str) -> Optional[Account]:
        record = self.db.query(AccountRecord).filter(
            AccountRecord.id == account_id
        ).populate_existing().first()
        return record_to_account(record) if record else None

    def create(self, account: Account) -> Account:
        record = AccountRecord(
            id=account.account_id or generate_uuid(),
            version=0,
            **account_to_columns(account),
        )
        self.db.add(record)
        try:
            self.db.commit()
            self.db.refresh(record)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Failed to create account", extra={
                "account_id": account.account_id,
                "error": str(e),
            })
            raise

        logger.info("Account created", extra={"account_id": record.id})
        return record_to_account(record)

    def compare_and_swap(self, account_id: str, expected_version: int, new_account: Account) -> bool:
        stmt = (
            update(AccountRecord)
            .where(and_(
                AccountRecord.id == account_id,
                AccountRecord.version == expected_version,
            ))
            .values(version=expected_version + 1, **account_to_columns(new_account))
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Account update failed", extra={
                "account_id": account_id,
                "error": str(e),
            })
            raise

        written = result.rowcount == 1
        if not written:
            logger.info("Account version conflict", extra={
                "account_id": account_id,
                "expected_version": expected_version,
            })
        return written

    def find_by_customer_id(self, customer_id: str) -> Optional[Account]:
        record = self.db.query(AccountRecord).filter(
            AccountRecord.external_customer_id == customer_id
        ).populate_existing().first()
        return record_to_account(record) if record else None

    def find_beta_expiring(self, start: datetime, end: datetime) -> List[Account]:
        records = self.db.query(AccountRecord).filter(
            AccountRecord.subscription_status == SubscriptionStatus.BETA_ACCESS.value,
            AccountRecord.beta_expires_at.isnot(None),
            AccountRecord.beta_expires_at >= start,
            AccountRecord.beta_expires_at <= end,
        ).order_by(AccountRecord.id).populate_existing().all()
        return [record_to_account(r) for r in records]

    def find_payment_retries_due(self, start: datetime, end: datetime) -> List[Account]:
        records = self.db.query(AccountRecord).filter(
            AccountRecord.subscription_status.in_([s.value for s in DUNNING_STATUSES]),
            AccountRecord.next_payment_retry_date.isnot(None),
            AccountRecord.next_payment_retry_date >= start,
            AccountRecord.next_payment_retry_date <= end,
        ).order_by(AccountRecord.id).populate_existing().all()
        return [record_to_account(r) for r in records]


class InMemoryAccountStore(AccountStore):
    """Lock-protected in-memory AccountStore for tests and local runs."""

    def __init__(self):
        self._accounts: Dict[str, Account] = {}
        self._lock = Lock()

    def get(self, account_id: str) -> Optional[Account]:
        with self._lock:
            return self._accounts.get(account_id)

    def create(self, account: Account) -> Account:
        with self._lock:
            account_id = account.account_id or generate_uuid()
            if account_id in self._accounts:
                raise ValueError(f"Account already exists: {account_id}")
            stored = replace(account, account_id=account_id, version=0)
            self._accounts[account_id] = stored
            return stored

    def compare_and_swap(self, account_id: str, expected_version: int, new_account: Account) -> bool:
        with self._lock:
            current = self._accounts.get(account_id)
            if current is None or current.version != expected_version:
                return False
            self._accounts[account_id] = replace(
                new_account, account_id=account_id, version=expected_version + 1
            )
            return True

    def find_by_customer_id(self, customer_id: str) -> Optional[Account]:
        with self._lock:
            for account in self._accounts.values():
                if account.external_customer_id == customer_id:
                    return account
        return None

    def find_beta_expiring(self, start: datetime, end: datetime) -> List[Account]:
        with self._lock:
            matches = [
                a for a in self._accounts.values()
                if a.subscription_status == SubscriptionStatus.BETA_ACCESS
                and a.beta_expires_at is not None
                and start <= a.beta_expires_at <= end
            ]
        return sorted(matches, key=lambda a: a.account_id)

    def find_payment_retries_due(self, start: datetime, end: datetime) -> List[Account]:
        with self._lock:
            matches = [
                a for a in self._accounts.values()
                if a.subscription_status in DUNNING_STATUSES
                and a.next_payment_retry_date is not None
                and start <= a.next_payment_retry_date <= end
            ]
        return sorted(matches, key=lambda a: a.account_id)


def apply_with_retry(
    store: AccountStore,
    account_id: str,
    mutate: Callable[[Account], Account],
    max_attempts: int = DEFAULT_MAX_CONFLICT_RETRIES,
) -> Account:
    """
    Read-modify-write an account under optimistic locking.

    mutate receives a fresh snapshot on every attempt and must be free of
    side effects. Returning the same object means "no change" and skips the
    write.

    Args:
        store: Storage collaborator
        account_id: Account to update
        mutate: Pure function from current snapshot to new snapshot
        max_attempts: Compare-and-swap attempts before giving up

    Returns:
        The snapshot as persisted

    Raises:
        AccountNotFoundError: Account does not exist
        ConflictError: Every attempt lost the race
    """
    for attempt in range(1, max_attempts + 1):
        current = store.get(account_id)
        if current is None:
            raise AccountNotFoundError(account_id)

        updated = mutate(current)
        if updated is current:
            return current

        if store.compare_and_swap(account_id, current.version, updated):
            return replace(updated, version=current.version + 1)

        logger.info("Retrying account update after conflict", extra={
            "account_id": account_id,
            "attempt": attempt,
            "max_attempts": max_attempts,
        })

    logger.error("Account update conflict retries exhausted", extra={
        "account_id": account_id,
        "attempts": max_attempts,
    })
    raise ConflictError(account_id, max_attempts)
