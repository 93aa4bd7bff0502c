"""
Tests for account storage and optimistic locking.

Every storage test runs against both the SQLAlchemy store (SQLite) and the
in-memory store.
"""

from dataclasses import replace
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from billing_core.errors import AccountNotFoundError, ConflictError
from billing_core.models.account import (
    PaymentFailure,
    SubscriptionHistoryEntry,
    SubscriptionPlan,
    SubscriptionStatus,
)
from billing_core.repositories.account_repository import (
    AccountStore,
    SqlAlchemyAccountStore,
    apply_with_retry,
)


@pytest.fixture(params=["memory", "sqlalchemy"])
def store(request) -> AccountStore:
    if request.param == "memory":
        return request.getfixturevalue("memory_store")
    return SqlAlchemyAccountStore(request.getfixturevalue("db_session"))


class TestCreateAndGet:

    def test_round_trip_preserves_all_fields(self, store, make_account, now):
        account = make_account(
            subscription_status=SubscriptionStatus.PAST_DUE,
            external_customer_id="cus_rt",
            external_subscription_id="sub_rt",
            external_price_id="price_monthly",
            current_period_start=now - timedelta(days=30),
            current_period_end=now,
            subscription_plan=SubscriptionPlan.MONTHLY,
            subscription_history=(
                SubscriptionHistoryEntry(
                    status=SubscriptionStatus.ACTIVE,
                    price_id="price_monthly",
                    start_date=now - timedelta(days=30),
                    end_date=now,
                ),
            ),
            payment_failures=(
                PaymentFailure(date=now, reason="card_declined", amount=1999, invoice_id="in_1"),
            ),
            payment_retry_count=1,
            last_payment_failure_date=now,
            next_payment_retry_date=now + timedelta(days=1),
            processed_notifications=("evt:evt_1",),
        )

        created = store.create(account)
        fetched = store.get(account.account_id)

        assert created.version == 0
        assert fetched == replace(account, version=0)

    def test_get_missing_returns_none(self, store):
        assert store.get("acct_missing") is None


class TestCompareAndSwap:

    def test_matching_version_writes_and_increments(self, store, make_account):
        created = store.create(make_account())

        ok = store.compare_and_swap(
            created.account_id, 0,
            replace(created, subscription_status=SubscriptionStatus.ACTIVE),
        )

        assert ok is True
        fetched = store.get(created.account_id)
        assert fetched.version == 1
        assert fetched.subscription_status == SubscriptionStatus.ACTIVE

    def test_stale_version_is_rejected(self, store, make_account):
        created = store.create(make_account())
        store.compare_and_swap(created.account_id, 0, replace(created, payment_retry_count=1))

        ok = store.compare_and_swap(created.account_id, 0, replace(created, payment_retry_count=5))

        assert ok is False
        fetched = store.get(created.account_id)
        assert fetched.payment_retry_count == 1
        assert fetched.version == 1


class TestApplyWithRetry:

    def test_applies_mutation(self, store, make_account):
        created = store.create(make_account())

        result = apply_with_retry(
            store, created.account_id,
            lambda a: replace(a, subscription_status=SubscriptionStatus.TRIAL),
        )

        assert result.version == 1
        assert store.get(created.account_id).subscription_status == SubscriptionStatus.TRIAL

    def test_no_change_skips_write(self, store, make_account):
        created = store.create(make_account())

        result = apply_with_retry(store, created.account_id, lambda a: a)

        assert result.version == 0
        assert store.get(created.account_id).version == 0

    def test_retries_on_concurrent_write(self, store, make_account):
        created = store.create(make_account())
        calls = []

        def mutate(current):
            calls.append(current.version)
            if len(calls) == 1:
                # A competing writer lands between our read and our write
                store.compare_and_swap(
                    current.account_id, current.version,
                    replace(current, payment_retry_count=current.payment_retry_count + 1),
                )
            return replace(current, payment_retry_count=current.payment_retry_count + 1)

        result = apply_with_retry(store, created.account_id, mutate)

        assert calls == [0, 1]
        assert result.payment_retry_count == 2
        assert store.get(created.account_id).payment_retry_count == 2

    def test_missing_account_raises(self, store):
        with pytest.raises(AccountNotFoundError):
            apply_with_retry(store, "acct_missing", lambda a: a)

    def test_exhausted_retries_raise_conflict(self, make_account):
        account = make_account()
        store = MagicMock(spec=AccountStore)
        store.get.return_value = account
        store.compare_and_swap.return_value = False

        with pytest.raises(ConflictError) as exc_info:
            apply_with_retry(
                store, account.account_id,
                lambda a: replace(a, payment_retry_count=1),
                max_attempts=3,
            )

        assert exc_info.value.attempts == 3
        assert store.compare_and_swap.call_count == 3


class TestQueries:

    def test_find_by_customer_id(self, store, make_account):
        store.create(make_account(external_customer_id="cus_a"))
        target = store.create(make_account(external_customer_id="cus_b"))

        assert store.find_by_customer_id("cus_b").account_id == target.account_id
        assert store.find_by_customer_id("cus_zzz") is None

    def test_find_beta_expiring_window_is_inclusive(self, store, make_account, now):
        start = now.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=7)
        end = start + timedelta(days=1) - timedelta(microseconds=1)

        at_start = store.create(make_account(
            subscription_status=SubscriptionStatus.BETA_ACCESS, beta_expires_at=start,
        ))
        at_end = store.create(make_account(
            subscription_status=SubscriptionStatus.BETA_ACCESS, beta_expires_at=end,
        ))
        store.create(make_account(
            subscription_status=SubscriptionStatus.BETA_ACCESS,
            beta_expires_at=end + timedelta(microseconds=1),
        ))
        store.create(make_account(
            subscription_status=SubscriptionStatus.ACTIVE, beta_expires_at=start,
        ))

        found = {a.account_id for a in store.find_beta_expiring(start, end)}

        assert found == {at_start.account_id, at_end.account_id}

    def test_find_payment_retries_due_only_in_dunning(self, store, make_account, now):
        due = store.create(make_account(
            subscription_status=SubscriptionStatus.PAST_DUE,
            last_payment_failure_date=now - timedelta(days=1),
            next_payment_retry_date=now,
            payment_retry_count=1,
        ))
        store.create(make_account(
            subscription_status=SubscriptionStatus.ACTIVE,
            next_payment_retry_date=now,
        ))

        found = store.find_payment_retries_due(now - timedelta(hours=1), now + timedelta(hours=1))

        assert [a.account_id for a in found] == [due.account_id]
