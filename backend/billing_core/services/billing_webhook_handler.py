"""
Billing webhook handler with idempotency support.

Processes payment-processor billing events with:
- Event deduplication using the processor event ID (remembered per account)
- Out-of-order subscription updates rejected by billing period
- Optimistic-lock retries on concurrent updates to the same account
- Notification dispatch only after the state change is persisted
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from billing_core.config.billing_config import BillingConfig, get_billing_config
from billing_core.errors import AccountNotFoundError, ConflictError, ReconciliationError
from billing_core.models.account import PAYLOAD_FINGERPRINT_PREFIX, Account, SubscriptionStatus
from billing_core.platform.clock import Clock, get_clock
from billing_core.repositories.account_repository import AccountStore, apply_with_retry
from billing_core.schemas.billing_notification import parse_notification
from billing_core.services.dunning import FailureRecord, record_failure
from billing_core.services.notifications import (
    NotificationCommand,
    NotificationDispatcher,
    NotificationKind,
    dispatch_commands,
)
from billing_core.services.reconciliation import ReconciliationReducer

logger = logging.getLogger(__name__)


@dataclass
class WebhookProcessingResult:
    """Result of webhook processing."""
    processed: bool
    message: str
    account_id: Optional[str] = None
    skipped_reason: Optional[str] = None
    error: Optional[str] = None
    commands: List[NotificationCommand] = field(default_factory=list)


def event_fingerprint(event: Dict[str, Any]) -> str:
    """Redelivery identity of a raw processor event."""
    event_id = event.get("id")
    if event_id:
        return f"evt:{event_id}"
    payload_str = json.dumps(event, sort_keys=True, default=str)
    return PAYLOAD_FINGERPRINT_PREFIX + hashlib.sha256(payload_str.encode()).hexdigest()


def subscription_to_notification(subscription: Dict[str, Any], event_id: Optional[str]) -> Dict[str, Any]:
    """
    Flatten a processor subscription object into a notification payload.

    Missing pieces are left out so that validation reports them.
    """
    items = (subscription.get("items") or {}).get("data") or []
    price = (items[0].get("price") or {}) if items else {}
    recurring = price.get("recurring") or {}

    payload = {
        "subscription_id": subscription.get("id"),
        "price_id": price.get("id"),
        "status": subscription.get("status"),
        "current_period_start": subscription.get("current_period_start"),
        "current_period_end": subscription.get("current_period_end"),
        "cancel_at_period_end": bool(subscription.get("cancel_at_period_end", False)),
        "trial_end": subscription.get("trial_end"),
        "interval": recurring.get("interval"),
        "event_id": event_id,
    }
    return {k: v for k, v in payload.items() if v is not None}


def _failure_reason(invoice: Dict[str, Any]) -> Optional[str]:
    error = invoice.get("last_payment_error") or invoice.get("last_finalization_error") or {}
    return error.get("message")


class BillingWebhookHandler:
    """
    Handler for processor billing webhooks.

    Subscription lifecycle events go through the reconciliation reducer;
    invoice events adjust dunning state or only produce notifications.
    """

    SUBSCRIPTION_EVENTS = frozenset({
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    })

    def __init__(
        self,
        store: AccountStore,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Optional[Clock] = None,
        config: Optional[BillingConfig] = None,
    ):
        """
        Initialize webhook handler.

        Args:
            store: Account storage
            dispatcher: Notification transport; commands are only returned when None
            clock: Source of "now"
            config: Billing config
        """
        self.store = store
        self.dispatcher = dispatcher
        self.clock = clock or get_clock()
        self.config = config or get_billing_config()
        self.reducer = ReconciliationReducer(clock=self.clock, config=self.config)

    async def handle_event(self, event: Dict[str, Any]) -> WebhookProcessingResult:
        """
        Route one processor event.

        Args:
            event: Event envelope with id, type and data.object

        Returns:
            WebhookProcessingResult
        """
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}

        try:
            if event_type in self.SUBSCRIPTION_EVENTS:
                result = self._handle_subscription_change(event, obj)
            elif event_type == "invoice.payment_failed":
                result = self._handle_payment_failed(event, obj)
            elif event_type == "invoice.payment_action_required":
                result = self._handle_invoice_notice(event, obj, self._action_required_command)
            elif event_type == "invoice.payment_succeeded":
                result = self._handle_payment_succeeded(event, obj)
            elif event_type == "customer.subscription.trial_will_end":
                result = self._handle_trial_will_end(event, obj)
            else:
                logger.info("Unhandled billing event type", extra={
                    "event_id": event.get("id"),
                    "event_type": event_type,
                })
                return WebhookProcessingResult(
                    processed=False,
                    message=f"Unhandled event type: {event_type}",
                    skipped_reason="unhandled_event"
                )

        except ReconciliationError as e:
            logger.warning("Malformed billing event", extra={
                "event_id": event.get("id"),
                "event_type": event_type,
                "details": e.details,
            })
            return WebhookProcessingResult(
                processed=False,
                message=str(e),
                error="invalid_payload"
            )

        except ConflictError as e:
            return WebhookProcessingResult(
                processed=False,
                message=str(e),
                account_id=e.account_id,
                error="conflict"
            )

        except AccountNotFoundError as e:
            return WebhookProcessingResult(
                processed=False,
                message=str(e),
                account_id=e.account_id,
                error="account_not_found"
            )

        if result.processed and result.commands and self.dispatcher is not None:
            summary = await dispatch_commands(self.dispatcher, result.commands)
            logger.info("Webhook notifications dispatched", extra={
                "event_id": event.get("id"),
                "account_id": result.account_id,
                **summary.to_dict(),
            })

        return result

    def _find_account(self, customer_id: Optional[str], event: Dict[str, Any]) -> Optional[Account]:
        if not customer_id:
            return None
        account = self.store.find_by_customer_id(customer_id)
        if account is None:
            logger.warning("No account found for customer", extra={
                "customer_id": customer_id,
                "event_id": event.get("id"),
                "event_type": event.get("type"),
            })
        return account

    @staticmethod
    def _unknown_customer() -> WebhookProcessingResult:
        return WebhookProcessingResult(
            processed=False,
            message="No account for customer",
            skipped_reason="unknown_customer"
        )

    @staticmethod
    def _duplicate(account_id: str) -> WebhookProcessingResult:
        return WebhookProcessingResult(
            processed=False,
            message="Duplicate webhook - already processed",
            account_id=account_id,
            skipped_reason="duplicate"
        )

    def _handle_subscription_change(self, event: Dict[str, Any], subscription: Dict[str, Any]) -> WebhookProcessingResult:
        notification = parse_notification(subscription_to_notification(subscription, event.get("id")))

        account = self._find_account(subscription.get("customer"), event)
        if account is None:
            return self._unknown_customer()

        outcome = {}

        def mutate(current: Account) -> Account:
            result = self.reducer.reconcile(current, notification)
            outcome["result"] = result
            return result.account if result.applied else current

        apply_with_retry(self.store, account.account_id, mutate, self.config.max_conflict_retries)
        result = outcome["result"]

        if not result.applied:
            return WebhookProcessingResult(
                processed=False,
                message=f"Notification skipped: {result.skipped_reason}",
                account_id=account.account_id,
                skipped_reason=result.skipped_reason
            )

        return WebhookProcessingResult(
            processed=True,
            message=f"Subscription status: {result.account.subscription_status.value}",
            account_id=account.account_id,
            commands=result.commands
        )

    def _handle_payment_failed(self, event: Dict[str, Any], invoice: Dict[str, Any]) -> WebhookProcessingResult:
        if not invoice.get("subscription"):
            return WebhookProcessingResult(
                processed=False,
                message="Invoice not related to a subscription",
                skipped_reason="not_subscription_invoice"
            )

        account = self._find_account(invoice.get("customer"), event)
        if account is None:
            return self._unknown_customer()

        fingerprint = event_fingerprint(event)
        failure = FailureRecord(
            reason=_failure_reason(invoice),
            amount_due=invoice.get("amount_due"),
            invoice_id=invoice.get("id"),
        )
        outcome = {"duplicate": False}

        def mutate(current: Account) -> Account:
            if current.has_processed(fingerprint):
                outcome["duplicate"] = True
                return current
            outcome["duplicate"] = False
            updated = record_failure(
                current, failure, now=self.clock.now(),
                cap_days=self.config.max_retry_interval_days,
            )
            if updated.subscription_status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL):
                updated = replace(updated, subscription_status=SubscriptionStatus.PAST_DUE)
            return updated.remember_notification(fingerprint)

        updated = apply_with_retry(self.store, account.account_id, mutate, self.config.max_conflict_retries)
        if outcome["duplicate"]:
            return self._duplicate(account.account_id)

        command = NotificationCommand(
            kind=NotificationKind.PAYMENT_FAILED,
            account_id=updated.account_id,
            email=updated.email,
            payload={
                "reason": updated.payment_failures[-1].reason,
                "amount_due": failure.amount_due,
                "currency": invoice.get("currency"),
                "invoice_id": failure.invoice_id,
                "next_payment_retry_date": updated.next_payment_retry_date.date().isoformat(),
            },
        )
        return WebhookProcessingResult(
            processed=True,
            message="Payment failure recorded",
            account_id=updated.account_id,
            commands=[command]
        )

    def _handle_invoice_notice(
        self,
        event: Dict[str, Any],
        invoice: Dict[str, Any],
        build_command: Callable[[Account, Dict[str, Any]], Optional[NotificationCommand]],
    ) -> WebhookProcessingResult:
        """Invoice events that only notify; the event is remembered so redelivery stays silent."""
        if not invoice.get("subscription"):
            return WebhookProcessingResult(
                processed=False,
                message="Invoice not related to a subscription",
                skipped_reason="not_subscription_invoice"
            )

        account = self._find_account(invoice.get("customer"), event)
        if account is None:
            return self._unknown_customer()

        fingerprint = event_fingerprint(event)
        outcome = {"duplicate": False}

        def mutate(current: Account) -> Account:
            outcome["duplicate"] = current.has_processed(fingerprint)
            if outcome["duplicate"]:
                return current
            return current.remember_notification(fingerprint)

        updated = apply_with_retry(self.store, account.account_id, mutate, self.config.max_conflict_retries)
        if outcome["duplicate"]:
            return self._duplicate(account.account_id)

        command = build_command(updated, invoice)
        return WebhookProcessingResult(
            processed=True,
            message=f"Invoice event processed: {event.get('type')}",
            account_id=updated.account_id,
            commands=[command] if command else []
        )

    @staticmethod
    def _action_required_command(account: Account, invoice: Dict[str, Any]) -> NotificationCommand:
        return NotificationCommand(
            kind=NotificationKind.ACTION_REQUIRED,
            account_id=account.account_id,
            email=account.email,
            payload={
                "amount_due": invoice.get("amount_due"),
                "currency": invoice.get("currency"),
                "invoice_url": invoice.get("hosted_invoice_url"),
            },
        )

    def _handle_payment_succeeded(self, event: Dict[str, Any], invoice: Dict[str, Any]) -> WebhookProcessingResult:
        """
        Acknowledge a paid invoice.

        Renewal and recovery notices come from the subscription update that
        advances the period or returns the status to active, so the invoice
        itself neither changes state nor notifies.
        """
        if not invoice.get("subscription"):
            return WebhookProcessingResult(
                processed=False,
                message="Invoice not related to a subscription",
                skipped_reason="not_subscription_invoice"
            )

        account = self._find_account(invoice.get("customer"), event)
        if account is None:
            return self._unknown_customer()

        logger.info("Invoice payment succeeded", extra={
            "account_id": account.account_id,
            "event_id": event.get("id"),
            "invoice_id": invoice.get("id"),
            "billing_reason": invoice.get("billing_reason"),
            "amount_paid": invoice.get("amount_paid"),
        })
        return WebhookProcessingResult(
            processed=True,
            message="Invoice payment acknowledged",
            account_id=account.account_id
        )

    def _handle_trial_will_end(self, event: Dict[str, Any], subscription: Dict[str, Any]) -> WebhookProcessingResult:
        account = self._find_account(subscription.get("customer"), event)
        if account is None:
            return self._unknown_customer()

        logger.info("Subscription trial ending soon", extra={
            "account_id": account.account_id,
            "event_id": event.get("id"),
            "subscription_id": subscription.get("id"),
            "trial_end": subscription.get("trial_end"),
        })
        return WebhookProcessingResult(
            processed=True,
            message="Trial ending notice acknowledged",
            account_id=account.account_id
        )


def get_webhook_handler(
    store: AccountStore,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> BillingWebhookHandler:
    """
    Factory function to create a BillingWebhookHandler.

    Args:
        store: Account storage
        dispatcher: Notification transport

    Returns:
        Configured BillingWebhookHandler instance
    """
    return BillingWebhookHandler(store, dispatcher=dispatcher)
