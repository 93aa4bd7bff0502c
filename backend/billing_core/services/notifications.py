"""
Notification commands and dispatch.

The core only decides that a notification should fire and when; rendering
and transport belong to the dispatcher. Dispatch is never transactional with
state: a failed send is logged and counted, it never rolls back the state
change that produced it and never halts a batch.
"""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from billing_core.services.email_sender import EmailMessage, EmailSender, get_email_sender

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    """Kinds of outbound notifications the core can request."""
    RENEWAL = "renewal"
    PAYMENT_FAILED = "payment_failed"
    ACTION_REQUIRED = "action_required"
    BETA_EXPIRY_REMINDER = "beta_expiry_reminder"
    SUBSCRIPTION_CONFIRMED = "subscription_confirmed"
    PAYMENT_RETRY_REMINDER = "payment_retry_reminder"


@dataclass(frozen=True)
class NotificationCommand:
    """A recommendation to notify one account."""
    kind: NotificationKind
    account_id: str
    email: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DispatchSummary:
    """Outcome counts of a dispatch pass."""
    sent: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return {"sent": self.sent, "failed": self.failed}


class NotificationDispatcher(ABC):
    """Outbound notification collaborator."""

    @abstractmethod
    async def send(self, kind: NotificationKind, to_email: str, payload: Dict[str, Any]) -> bool:
        """
        Deliver one notification.

        Returns:
            True on success, False on failure. May also raise; callers
            treat an exception as a failure.
        """
        pass


# Subject lines by kind
EMAIL_SUBJECTS = {
    NotificationKind.SUBSCRIPTION_CONFIRMED: "Your WriteLikeYou.ai Subscription Confirmation",
    NotificationKind.RENEWAL: "Your WriteLikeYou.ai Subscription Has Been Renewed",
    NotificationKind.PAYMENT_FAILED: "Action Required: Payment Failed for Your WriteLikeYou.ai Subscription",
    NotificationKind.ACTION_REQUIRED: "Action Required: Complete Your WriteLikeYou.ai Payment",
    NotificationKind.PAYMENT_RETRY_REMINDER: "Reminder: We Will Retry Your WriteLikeYou.ai Payment Soon",
}


def _subject(kind: NotificationKind, payload: Dict[str, Any]) -> str:
    if kind == NotificationKind.BETA_EXPIRY_REMINDER:
        days = payload.get("days_until_expiry")
        return f"Your WriteLikeYou.ai Beta Access Expires in {days} Days"
    return EMAIL_SUBJECTS[kind]


def _summary_lines(kind: NotificationKind, payload: Dict[str, Any]) -> List[str]:
    """Plain-language body lines for a notification."""
    if kind == NotificationKind.SUBSCRIPTION_CONFIRMED:
        return ["Thank you for subscribing. Your subscription is now active."]
    if kind == NotificationKind.RENEWAL:
        lines = ["Your subscription has been renewed."]
        if payload.get("next_billing_date"):
            lines.append(f"Next billing date: {payload['next_billing_date']}")
        return lines
    if kind == NotificationKind.PAYMENT_FAILED:
        return [
            "We were unable to process your latest payment.",
            f"Reason: {payload.get('reason') or 'Payment method declined'}",
            "Please update your payment method to keep your access.",
        ]
    if kind == NotificationKind.ACTION_REQUIRED:
        return ["Your bank requires an extra step to complete your payment."]
    if kind == NotificationKind.PAYMENT_RETRY_REMINDER:
        return [
            f"We will retry your payment on {payload.get('next_payment_retry_date')}.",
            "Please make sure your payment method is up to date.",
        ]
    return [
        f"Your beta access expires in {payload.get('days_until_expiry')} days "
        f"({payload.get('beta_expires_at')}).",
        "Subscribe to keep writing without interruption.",
    ]


class EmailNotificationDispatcher(NotificationDispatcher):
    """Dispatcher that renders a minimal email per kind and hands it to an EmailSender."""

    def __init__(self, sender: Optional[EmailSender] = None, base_url: Optional[str] = None):
        self.sender = sender or get_email_sender()
        self.base_url = base_url or os.getenv("APP_BASE_URL", "https://app.example.com")

    def build_message(self, kind: NotificationKind, to_email: str, payload: Dict[str, Any]) -> EmailMessage:
        lines = _summary_lines(kind, payload)
        link = f"{self.base_url}{payload.get('action_path', '/account/billing')}"
        text_body = "\n\n".join(lines + [f"Manage your subscription: {link}"])
        html_body = "".join(f"<p>{line}</p>" for line in lines)
        html_body += f'<p><a href="{link}">Manage your subscription</a></p>'
        return EmailMessage(
            to_email=to_email,
            to_name=to_email.split("@")[0],
            subject=_subject(kind, payload),
            html_body=html_body,
            text_body=text_body,
            tags=["billing", kind.value],
        )

    async def send(self, kind: NotificationKind, to_email: str, payload: Dict[str, Any]) -> bool:
        return await self.sender.send(self.build_message(kind, to_email, payload))


class RecordingDispatcher(NotificationDispatcher):
    """Dispatcher that records sends in memory (tests and dry runs)."""

    def __init__(self, fail_for: Iterable[str] = ()):
        self.sent: List[Tuple[NotificationKind, str, Dict[str, Any]]] = []
        self.fail_for = set(fail_for)

    async def send(self, kind: NotificationKind, to_email: str, payload: Dict[str, Any]) -> bool:
        if to_email in self.fail_for:
            return False
        self.sent.append((kind, to_email, dict(payload)))
        return True


async def dispatch_command(dispatcher: NotificationDispatcher, command: NotificationCommand) -> bool:
    """
    Send one command, converting any failure into False.

    Never raises for a dispatcher failure.
    """
    try:
        ok = await dispatcher.send(command.kind, command.email, command.payload)
    except Exception as e:
        logger.error("Notification dispatch raised", extra={
            "account_id": command.account_id,
            "kind": command.kind.value,
            "error": str(e),
        }, exc_info=True)
        return False

    if not ok:
        logger.error("Notification dispatch failed", extra={
            "account_id": command.account_id,
            "kind": command.kind.value,
        })
        return False

    logger.info("Notification dispatched", extra={
        "account_id": command.account_id,
        "kind": command.kind.value,
    })
    return True


async def dispatch_commands(
    dispatcher: NotificationDispatcher,
    commands: Iterable[NotificationCommand],
) -> DispatchSummary:
    """Send commands in order; failures are counted, not raised."""
    summary = DispatchSummary()
    for command in commands:
        if await dispatch_command(dispatcher, command):
            summary.sent += 1
        else:
            summary.failed += 1
    return summary
