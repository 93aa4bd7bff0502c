"""
Reconciliation reducer.

Folds an inbound billing-status notification into an account snapshot,
producing a new snapshot and the notification commands it implies.

Guarantees:
- Redelivery: a notification whose fingerprint was already applied is a
  no-op, so retry counts are never double-incremented and history is never
  duplicated.
- Ordering: a notification whose period starts before the account's current
  period is stale and rejected without mutation.
- The processor is the source of truth for ids, period bounds and status;
  among non-stale notifications the last one received wins.
- Commands are recommendations. Dispatch happens after the state is
  persisted and its failure never rolls the state back.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from billing_core.config.billing_config import BillingConfig
from billing_core.models.account import (
    Account,
    SubscriptionHistoryEntry,
    SubscriptionStatus,
)
from billing_core.platform.clock import Clock, get_clock
from billing_core.schemas.billing_notification import BillingNotification, parse_notification
from billing_core.services.dunning import FailureRecord, record_failure, reset_dunning
from billing_core.services.notifications import NotificationCommand, NotificationKind

logger = logging.getLogger(__name__)


class SkipReason:
    """Why a notification was not applied."""
    DUPLICATE = "duplicate"
    STALE = "stale"


@dataclass(frozen=True)
class ReconciliationResult:
    """Outcome of folding one notification into an account."""
    account: Account
    commands: List[NotificationCommand] = field(default_factory=list)
    applied: bool = True
    skipped_reason: Optional[str] = None


class ReconciliationReducer:
    """
    Pure reducer over (account, notification).

    Holds only a clock and configuration; safe to share across threads.
    """

    def __init__(self, clock: Optional[Clock] = None, config: Optional[BillingConfig] = None):
        """
        Initialize reducer.

        Args:
            clock: Source of "now" for dunning timestamps
            config: Billing config (retry backoff cap)
        """
        self.clock = clock or get_clock()
        self.config = config or BillingConfig()

    def reconcile(
        self,
        account: Account,
        notification: Union[BillingNotification, Dict[str, Any]],
    ) -> ReconciliationResult:
        """
        Fold a notification into an account.

        Args:
            account: Current account snapshot
            notification: Validated notification, or a raw payload to validate

        Returns:
            ReconciliationResult with the new snapshot and commands

        Raises:
            ReconciliationError: If a raw payload is malformed
        """
        if not isinstance(notification, BillingNotification):
            notification = parse_notification(notification)

        fingerprint = notification.fingerprint()

        if account.has_processed(fingerprint):
            logger.info("Duplicate billing notification skipped", extra={
                "account_id": account.account_id,
                "subscription_id": notification.subscription_id,
                "fingerprint": fingerprint,
            })
            return ReconciliationResult(
                account=account, applied=False, skipped_reason=SkipReason.DUPLICATE
            )

        if self._is_stale(account, notification):
            logger.info("Stale billing notification skipped", extra={
                "account_id": account.account_id,
                "subscription_id": notification.subscription_id,
                "notification_period_start": notification.current_period_start.isoformat(),
                "account_period_start": account.current_period_start.isoformat(),
            })
            return ReconciliationResult(
                account=account, applied=False, skipped_reason=SkipReason.STALE
            )

        previous = account
        new_status = notification.local_status

        updated = replace(
            account,
            external_subscription_id=notification.subscription_id,
            external_price_id=notification.price_id,
            current_period_start=notification.current_period_start,
            current_period_end=notification.current_period_end,
            subscription_status=new_status,
            subscription_plan=notification.resolved_plan(),
            trial_ends_at=notification.trial_end or account.trial_ends_at,
            subscription_history=account.subscription_history + (
                SubscriptionHistoryEntry(
                    status=new_status,
                    price_id=notification.price_id,
                    start_date=notification.current_period_start,
                    end_date=notification.current_period_end,
                    cancel_at_period_end=notification.cancel_at_period_end,
                ),
            ),
        )

        if new_status == SubscriptionStatus.ACTIVE:
            updated = reset_dunning(updated)
        elif new_status in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID) and notification.failure:
            updated = record_failure(
                updated,
                FailureRecord(
                    reason=notification.failure.reason,
                    amount_due=notification.failure.amount_due,
                    invoice_id=notification.failure.invoice_id,
                ),
                now=self.clock.now(),
                cap_days=self.config.max_retry_interval_days,
            )

        updated = updated.remember_notification(fingerprint)
        commands = self._commands_for(previous, updated, notification)

        logger.info("Billing notification applied", extra={
            "account_id": account.account_id,
            "subscription_id": notification.subscription_id,
            "from_status": previous.subscription_status.value,
            "to_status": new_status.value,
            "commands": [c.kind.value for c in commands],
        })

        return ReconciliationResult(account=updated, commands=commands)

    @staticmethod
    def _is_stale(account: Account, notification: BillingNotification) -> bool:
        if account.current_period_start is None:
            return False
        return notification.current_period_start < account.current_period_start

    def _commands_for(
        self,
        previous: Account,
        updated: Account,
        notification: BillingNotification,
    ) -> List[NotificationCommand]:
        """Zero or one command implied by the transition."""
        status = updated.subscription_status

        if status == SubscriptionStatus.ACTIVE:
            period_advanced = (
                previous.current_period_start is not None
                and notification.current_period_start > previous.current_period_start
            )
            if previous.subscription_status in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID):
                kind = NotificationKind.RENEWAL
            elif previous.subscription_status == SubscriptionStatus.ACTIVE:
                if not period_advanced:
                    return []
                kind = NotificationKind.RENEWAL
            else:
                kind = NotificationKind.SUBSCRIPTION_CONFIRMED

            payload = {
                "plan": updated.subscription_plan.value if updated.subscription_plan else None,
                "price_id": updated.external_price_id,
                "next_billing_date": updated.current_period_end.date().isoformat(),
            }
            return [self._command(kind, updated, payload)]

        if notification.requires_action:
            return [self._command(
                NotificationKind.ACTION_REQUIRED,
                updated,
                {"subscription_id": notification.subscription_id},
            )]

        if status in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID) and notification.failure:
            return [self._command(
                NotificationKind.PAYMENT_FAILED,
                updated,
                {
                    "reason": notification.failure.reason,
                    "amount_due": notification.failure.amount_due,
                    "invoice_id": notification.failure.invoice_id,
                    "next_payment_retry_date": (
                        updated.next_payment_retry_date.date().isoformat()
                        if updated.next_payment_retry_date else None
                    ),
                },
            )]

        return []

    @staticmethod
    def _command(kind: NotificationKind, account: Account, payload: Dict[str, Any]) -> NotificationCommand:
        return NotificationCommand(
            kind=kind,
            account_id=account.account_id,
            email=account.email,
            payload=payload,
        )


def reconcile(
    account: Account,
    notification: Union[BillingNotification, Dict[str, Any]],
    clock: Optional[Clock] = None,
    config: Optional[BillingConfig] = None,
) -> ReconciliationResult:
    """Fold a notification into an account with a one-off reducer."""
    return ReconciliationReducer(clock=clock, config=config).reconcile(account, notification)


def mark_canceled(account: Account, now: datetime) -> Account:
    """
    Record a customer-initiated cancellation at period end.

    Sets status to canceled and patches the most recent open history entry
    for the current price. This is the only rewrite ever applied to an
    existing history entry.
    """
    history = list(account.subscription_history)
    for index in range(len(history) - 1, -1, -1):
        entry = history[index]
        if entry.is_open and entry.price_id == account.external_price_id:
            history[index] = replace(
                entry,
                status=SubscriptionStatus.CANCELED,
                cancel_at_period_end=True,
            )
            break

    logger.info("Subscription marked canceled at period end", extra={
        "account_id": account.account_id,
        "subscription_id": account.external_subscription_id,
        "canceled_at": now.isoformat(),
        "access_until": account.current_period_end.isoformat() if account.current_period_end else None,
    })

    return replace(
        account,
        subscription_status=SubscriptionStatus.CANCELED,
        subscription_history=tuple(history),
    )
