"""
Tests for the dunning tracker.
"""

from datetime import timedelta

import pytest

from billing_core.services.dunning import (
    DEFAULT_FAILURE_REASON,
    FailureRecord,
    mark_reminder_sent,
    record_failure,
    reminder_due,
    reset_dunning,
    retry_delay,
)


class TestRetryDelay:

    @pytest.mark.parametrize("retry_count,days", [
        (1, 1),
        (2, 2),
        (3, 4),
        (4, 7),
        (5, 7),
        (1000, 7),
    ])
    def test_bounded_backoff(self, retry_count, days):
        assert retry_delay(retry_count) == timedelta(days=days)

    def test_cap_is_configurable(self):
        assert retry_delay(4, cap_days=3) == timedelta(days=3)

    def test_rejects_zero(self):
        with pytest.raises(ValueError):
            retry_delay(0)


class TestRecordFailure:

    def test_four_failures_schedule_1_2_4_7(self, make_account, now):
        account = make_account()
        offsets = []

        for i in range(4):
            failed_at = now + timedelta(days=10 * i)
            account = record_failure(account, FailureRecord(invoice_id=f"in_{i}"), failed_at)
            offsets.append(account.next_payment_retry_date - failed_at)

        assert offsets == [timedelta(days=d) for d in (1, 2, 4, 7)]
        assert account.payment_retry_count == 4
        assert len(account.payment_failures) == 4

    def test_failure_entry_contents(self, make_account, now):
        account = record_failure(
            make_account(),
            FailureRecord(reason="card_declined", amount_due=1999, invoice_id="in_1"),
            now,
        )

        entry = account.payment_failures[-1]
        assert entry.date == now
        assert entry.reason == "card_declined"
        assert entry.amount == 1999
        assert entry.invoice_id == "in_1"
        assert account.last_payment_failure_date == now
        assert account.next_payment_retry_date > account.last_payment_failure_date

    def test_missing_reason_uses_default(self, make_account, now):
        account = record_failure(make_account(), FailureRecord(), now)
        assert account.payment_failures[-1].reason == DEFAULT_FAILURE_REASON

    def test_does_not_mutate_input(self, make_account, now):
        original = make_account()
        record_failure(original, FailureRecord(), now)

        assert original.payment_retry_count == 0
        assert original.payment_failures == ()


class TestResetDunning:

    def test_clears_all_fields_together(self, make_account, now):
        account = record_failure(make_account(), FailureRecord(), now)
        account = mark_reminder_sent(account, now)

        reset = reset_dunning(account)

        assert reset.payment_retry_count == 0
        assert reset.last_payment_failure_date is None
        assert reset.next_payment_retry_date is None
        assert reset.payment_reminder_sent_date is None
        # History is kept
        assert len(reset.payment_failures) == 1

    def test_clean_account_is_returned_unchanged(self, make_account):
        account = make_account()
        assert reset_dunning(account) is account


class TestReminderDue:

    def test_not_due_without_failure(self, make_account):
        assert reminder_due(make_account()) is False

    def test_due_once_per_failure(self, make_account, now):
        account = record_failure(make_account(), FailureRecord(), now)
        assert reminder_due(account) is True

        account = mark_reminder_sent(account, now + timedelta(hours=1))
        assert reminder_due(account) is False

        account = record_failure(account, FailureRecord(), now + timedelta(days=2))
        assert reminder_due(account) is True
