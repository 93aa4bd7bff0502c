"""
Tests for the reminder schedulers.

Test classes:
- TestExpiryReminders: Lead-time buckets, exact-day matching, failure isolation
- TestAbort: Units not yet started are skipped once abort is signalled
- TestPaymentRetryReminders: One reminder per failure, recorded on the account
"""

import asyncio
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from billing_core.config.billing_config import BillingConfig
from billing_core.models.account import SubscriptionStatus
from billing_core.repositories.account_repository import AccountStore
from billing_core.services.dunning import FailureRecord, record_failure
from billing_core.services.notifications import (
    NotificationDispatcher,
    NotificationKind,
    RecordingDispatcher,
)
from billing_core.services.reminder_scheduler import (
    ExpiryReminderScheduler,
    PaymentRetryReminderScheduler,
)


def _beta(make_account, expires_at, **overrides):
    return make_account(
        subscription_status=SubscriptionStatus.BETA_ACCESS,
        beta_expires_at=expires_at,
        **overrides,
    )


@pytest.fixture
def scheduler(memory_store, dispatcher, clock, billing_config):
    return ExpiryReminderScheduler(memory_store, dispatcher, clock, billing_config)


class TestExpiryReminders:

    @pytest.mark.asyncio
    async def test_exactly_seven_days_out_gets_one_reminder(
        self, scheduler, memory_store, make_account, dispatcher, now
    ):
        account = memory_store.create(_beta(make_account, now + timedelta(days=7)))

        result = await scheduler.run_daily_reminders()

        assert result.sent == 1
        assert result.failed == 0
        assert len(result.commands) == 1
        command = result.commands[0]
        assert command.kind == NotificationKind.BETA_EXPIRY_REMINDER
        assert command.account_id == account.account_id
        assert command.payload["days_until_expiry"] == 7
        assert [p["days_until_expiry"] for _, _, p in dispatcher.sent] == [7]

    @pytest.mark.asyncio
    async def test_each_lead_bucket_is_matched(self, scheduler, memory_store, make_account, now):
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        for lead in (30, 14, 7, 3, 1):
            memory_store.create(_beta(make_account, day_start + timedelta(days=lead, hours=23)))
        # Not a lead day
        memory_store.create(_beta(make_account, day_start + timedelta(days=5)))

        result = await scheduler.run_daily_reminders()

        assert sorted(c.payload["days_until_expiry"] for c in result.commands) == [1, 3, 7, 14, 30]

    @pytest.mark.asyncio
    async def test_day_is_utc_calendar_day(self, scheduler, memory_store, make_account, now):
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        memory_store.create(_beta(make_account, day_start + timedelta(days=7)))
        memory_store.create(_beta(make_account, day_start + timedelta(days=8) - timedelta(microseconds=1)))
        memory_store.create(_beta(make_account, day_start + timedelta(days=8)))

        result = await scheduler.run_daily_reminders(now=day_start + timedelta(hours=23, minutes=59))

        assert result.sent == 2

    @pytest.mark.asyncio
    async def test_non_beta_accounts_ignored(self, scheduler, memory_store, make_account, now):
        memory_store.create(make_account(
            subscription_status=SubscriptionStatus.ACTIVE,
            beta_expires_at=now + timedelta(days=7),
        ))

        result = await scheduler.run_daily_reminders()

        assert result.sent == 0
        assert result.commands == []

    @pytest.mark.asyncio
    async def test_failed_send_does_not_stop_batch(self, memory_store, make_account, clock, billing_config, now):
        failing = memory_store.create(_beta(make_account, now + timedelta(days=7)))
        memory_store.create(_beta(make_account, now + timedelta(days=3)))
        memory_store.create(_beta(make_account, now + timedelta(days=1)))
        dispatcher = RecordingDispatcher(fail_for=[failing.email])

        result = await ExpiryReminderScheduler(
            memory_store, dispatcher, clock, billing_config
        ).run_daily_reminders()

        assert result.sent == 2
        assert result.failed == 1
        assert len(result.commands) == 3

    @pytest.mark.asyncio
    async def test_raising_dispatcher_counts_as_failure(self, memory_store, make_account, clock, billing_config, now):
        memory_store.create(_beta(make_account, now + timedelta(days=14)))
        dispatcher = MagicMock(spec=NotificationDispatcher)

        async def boom(*args, **kwargs):
            raise ConnectionError("provider unreachable")
        dispatcher.send = boom

        result = await ExpiryReminderScheduler(
            memory_store, dispatcher, clock, billing_config
        ).run_daily_reminders()

        assert result.failed == 1
        assert result.sent == 0

    @pytest.mark.asyncio
    async def test_bucket_query_failure_isolated(self, make_account, dispatcher, clock, now):
        account = _beta(make_account, now + timedelta(days=3))
        store = MagicMock(spec=AccountStore)

        def find(start, end):
            if (start - now).days >= 6:
                raise RuntimeError("db timeout")
            return [account]
        store.find_beta_expiring.side_effect = find
        config = BillingConfig(reminder_lead_days=(7, 3))

        result = await ExpiryReminderScheduler(store, dispatcher, clock, config).run_daily_reminders()

        assert result.failed == 1
        assert result.sent == 1

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, memory_store, make_account, clock, billing_config, now):
        for _ in range(12):
            memory_store.create(_beta(make_account, now + timedelta(days=30)))
        in_flight = 0
        peak = 0

        class SlowDispatcher(NotificationDispatcher):
            async def send(self, kind, to_email, payload):
                nonlocal in_flight, peak
                in_flight += 1
                peak = max(peak, in_flight)
                await asyncio.sleep(0.01)
                in_flight -= 1
                return True

        result = await ExpiryReminderScheduler(
            memory_store, SlowDispatcher(), clock, billing_config, max_concurrency=3
        ).run_daily_reminders()

        assert result.sent == 12
        assert peak <= 3

    def test_rejects_zero_concurrency(self, memory_store, dispatcher, clock):
        with pytest.raises(ValueError):
            ExpiryReminderScheduler(memory_store, dispatcher, clock, BillingConfig(), max_concurrency=0)


class TestAbort:

    @pytest.mark.asyncio
    async def test_preset_abort_sends_nothing(self, scheduler, memory_store, make_account, dispatcher, now):
        memory_store.create(_beta(make_account, now + timedelta(days=7)))
        abort_event = asyncio.Event()
        abort_event.set()

        result = await scheduler.run_daily_reminders(abort_event=abort_event)

        assert result.aborted is True
        assert result.sent == 0
        assert dispatcher.sent == []

    @pytest.mark.asyncio
    async def test_abort_mid_run_keeps_sent(self, memory_store, make_account, clock, billing_config, now):
        for _ in range(5):
            memory_store.create(_beta(make_account, now + timedelta(days=7)))
        abort_event = asyncio.Event()

        class AbortingDispatcher(RecordingDispatcher):
            async def send(self, kind, to_email, payload):
                ok = await super().send(kind, to_email, payload)
                abort_event.set()
                return ok

        dispatcher = AbortingDispatcher()
        result = await ExpiryReminderScheduler(
            memory_store, dispatcher, clock, billing_config, max_concurrency=1
        ).run_daily_reminders(abort_event=abort_event)

        assert result.aborted is True
        assert result.sent == 1
        assert len(dispatcher.sent) == 1


class TestPaymentRetryReminders:

    @pytest.fixture
    def dunning_account(self, memory_store, make_account, now):
        account = make_account(subscription_status=SubscriptionStatus.PAST_DUE)
        account = record_failure(account, FailureRecord(amount_due=500), now - timedelta(days=1))
        return memory_store.create(account)

    @pytest.mark.asyncio
    async def test_reminder_sent_and_recorded(self, memory_store, dispatcher, clock, billing_config, dunning_account, now):
        scheduler = PaymentRetryReminderScheduler(memory_store, dispatcher, clock, billing_config)

        result = await scheduler.run()

        assert result.sent == 1
        kind, _, payload = dispatcher.sent[0]
        assert kind == NotificationKind.PAYMENT_RETRY_REMINDER
        assert payload["amount_due"] == 500
        stored = memory_store.get(dunning_account.account_id)
        assert stored.payment_reminder_sent_date == now

    @pytest.mark.asyncio
    async def test_second_run_same_failure_is_silent(self, memory_store, dispatcher, clock, billing_config, dunning_account):
        scheduler = PaymentRetryReminderScheduler(memory_store, dispatcher, clock, billing_config)

        await scheduler.run()
        result = await scheduler.run()

        assert result.sent == 0
        assert len(dispatcher.sent) == 1

    @pytest.mark.asyncio
    async def test_failed_send_not_recorded(self, memory_store, clock, billing_config, dunning_account):
        dispatcher = RecordingDispatcher(fail_for=[dunning_account.email])
        scheduler = PaymentRetryReminderScheduler(memory_store, dispatcher, clock, billing_config)

        result = await scheduler.run()

        assert result.failed == 1
        assert memory_store.get(dunning_account.account_id).payment_reminder_sent_date is None

    @pytest.mark.asyncio
    async def test_retry_on_another_day_not_selected(self, memory_store, dispatcher, clock, billing_config, dunning_account, now):
        scheduler = PaymentRetryReminderScheduler(memory_store, dispatcher, clock, billing_config)

        result = await scheduler.run(now=now + timedelta(days=2))

        assert result.sent == 0

    @pytest.mark.parametrize("max_concurrency", [0, -1])
    def test_rejects_non_positive_concurrency(self, memory_store, dispatcher, clock, max_concurrency):
        with pytest.raises(ValueError):
            PaymentRetryReminderScheduler(
                memory_store, dispatcher, clock, BillingConfig(), max_concurrency=max_concurrency
            )
