"""
Reminder schedulers.

ExpiryReminderScheduler finds beta accounts whose access ends exactly N
days from today (UTC) for each configured lead time and sends one reminder
each. PaymentRetryReminderScheduler warns dunning accounts on the day their
payment retry is scheduled.

Sends run concurrently up to max_concurrency. Every (account, lead) unit
returns its own outcome and the outcomes are merged after gather, so no
counter is shared between tasks. A failed send never stops the batch.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from billing_core.config.billing_config import BillingConfig, get_billing_config
from billing_core.errors import AccountNotFoundError, ConflictError
from billing_core.models.account import Account
from billing_core.platform.clock import Clock, ensure_utc, get_clock, utc_day_bounds
from billing_core.repositories.account_repository import AccountStore, apply_with_retry
from billing_core.services.dunning import mark_reminder_sent, reminder_due
from billing_core.services.notifications import (
    NotificationCommand,
    NotificationDispatcher,
    NotificationKind,
    dispatch_command,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 10


@dataclass
class ReminderRunResult:
    """Outcome of one reminder run."""
    sent: int = 0
    failed: int = 0
    aborted: bool = False
    commands: List[NotificationCommand] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "sent": self.sent,
            "failed": self.failed,
            "aborted": self.aborted,
            "commands": len(self.commands),
        }


@dataclass(frozen=True)
class _UnitOutcome:
    command: Optional[NotificationCommand]
    sent: bool = False
    skipped: bool = False


def _merge(result: ReminderRunResult, outcomes: List[_UnitOutcome]) -> None:
    for outcome in outcomes:
        if outcome.skipped:
            result.aborted = True
            continue
        if outcome.command is not None:
            result.commands.append(outcome.command)
        if outcome.sent:
            result.sent += 1
        else:
            result.failed += 1


def _checked_concurrency(max_concurrency: int) -> int:
    if max_concurrency < 1:
        raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
    return max_concurrency


class ExpiryReminderScheduler:
    """Daily beta expiry reminder batch."""

    def __init__(
        self,
        store: AccountStore,
        dispatcher: NotificationDispatcher,
        clock: Optional[Clock] = None,
        config: Optional[BillingConfig] = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.clock = clock or get_clock()
        self.config = config or get_billing_config()
        self.max_concurrency = _checked_concurrency(max_concurrency)

    def _bucket_window(self, day_start: datetime, lead_days: int) -> tuple:
        start = day_start + timedelta(days=lead_days)
        return start, start + timedelta(days=1) - timedelta(microseconds=1)

    def _build_command(self, account: Account, lead_days: int) -> NotificationCommand:
        return NotificationCommand(
            kind=NotificationKind.BETA_EXPIRY_REMINDER,
            account_id=account.account_id,
            email=account.email,
            payload={
                "days_until_expiry": lead_days,
                "beta_expires_at": account.beta_expires_at.date().isoformat(),
                "action_path": "/account/billing",
            },
        )

    async def run_daily_reminders(
        self,
        now: Optional[datetime] = None,
        abort_event: Optional[asyncio.Event] = None,
    ) -> ReminderRunResult:
        """
        Send beta expiry reminders for today.

        Args:
            now: Instant whose UTC day defines "today" (defaults to the clock)
            abort_event: When set, units not yet started are skipped

        Returns:
            ReminderRunResult with sent/failed counts and the commands attempted
        """
        now = ensure_utc(now) if now is not None else self.clock.now()
        day_start, _ = utc_day_bounds(now)
        semaphore = asyncio.Semaphore(self.max_concurrency)
        result = ReminderRunResult()

        logger.info("Starting beta expiry reminder run", extra={
            "day": day_start.date().isoformat(),
            "lead_days": list(self.config.reminder_lead_days),
        })

        units = []
        for lead_days in self.config.reminder_lead_days:
            start, end = self._bucket_window(day_start, lead_days)
            try:
                accounts = self.store.find_beta_expiring(start, end)
            except Exception as e:
                logger.error("Failed to select reminder bucket", extra={
                    "lead_days": lead_days,
                    "window_start": start.isoformat(),
                    "error": str(e),
                })
                result.failed += 1
                continue

            logger.info("Reminder bucket selected", extra={
                "lead_days": lead_days,
                "account_count": len(accounts),
            })
            for account in accounts:
                units.append(self._send_one(account, lead_days, semaphore, abort_event))

        outcomes = await asyncio.gather(*units)
        _merge(result, outcomes)

        logger.info("Beta expiry reminder run completed", extra=result.to_dict())
        return result

    async def _send_one(
        self,
        account: Account,
        lead_days: int,
        semaphore: asyncio.Semaphore,
        abort_event: Optional[asyncio.Event],
    ) -> _UnitOutcome:
        async with semaphore:
            if abort_event is not None and abort_event.is_set():
                return _UnitOutcome(command=None, skipped=True)
            command = self._build_command(account, lead_days)
            sent = await dispatch_command(self.dispatcher, command)
            return _UnitOutcome(command=command, sent=sent)


class PaymentRetryReminderScheduler:
    """Daily reminder for accounts whose payment retry is scheduled today."""

    def __init__(
        self,
        store: AccountStore,
        dispatcher: NotificationDispatcher,
        clock: Optional[Clock] = None,
        config: Optional[BillingConfig] = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.clock = clock or get_clock()
        self.config = config or get_billing_config()
        self.max_concurrency = _checked_concurrency(max_concurrency)

    async def run(
        self,
        now: Optional[datetime] = None,
        abort_event: Optional[asyncio.Event] = None,
    ) -> ReminderRunResult:
        now = ensure_utc(now) if now is not None else self.clock.now()
        start, end = utc_day_bounds(now)
        result = ReminderRunResult()

        accounts = [a for a in self.store.find_payment_retries_due(start, end) if reminder_due(a)]
        logger.info("Payment retry reminders due", extra={
            "day": start.date().isoformat(),
            "account_count": len(accounts),
        })

        semaphore = asyncio.Semaphore(self.max_concurrency)
        outcomes = await asyncio.gather(*[
            self._remind(account, now, semaphore, abort_event) for account in accounts
        ])
        _merge(result, outcomes)

        logger.info("Payment retry reminder run completed", extra=result.to_dict())
        return result

    async def _remind(
        self,
        account: Account,
        now: datetime,
        semaphore: asyncio.Semaphore,
        abort_event: Optional[asyncio.Event],
    ) -> _UnitOutcome:
        async with semaphore:
            if abort_event is not None and abort_event.is_set():
                return _UnitOutcome(command=None, skipped=True)

            last_failure = account.payment_failures[-1] if account.payment_failures else None
            command = NotificationCommand(
                kind=NotificationKind.PAYMENT_RETRY_REMINDER,
                account_id=account.account_id,
                email=account.email,
                payload={
                    "next_payment_retry_date": account.next_payment_retry_date.date().isoformat(),
                    "retry_count": account.payment_retry_count,
                    "amount_due": last_failure.amount if last_failure else None,
                },
            )
            if not await dispatch_command(self.dispatcher, command):
                return _UnitOutcome(command=command, sent=False)

            def mutate(current: Account) -> Account:
                if not reminder_due(current):
                    return current
                return mark_reminder_sent(current, now)

            try:
                apply_with_retry(
                    self.store, account.account_id, mutate, self.config.max_conflict_retries
                )
            except (ConflictError, AccountNotFoundError) as e:
                logger.error("Failed to record payment reminder", extra={
                    "account_id": account.account_id,
                    "error": str(e),
                })
                return _UnitOutcome(command=command, sent=False)

            return _UnitOutcome(command=command, sent=True)
