"""
Email sender abstraction for billing notification delivery.

Supports two providers:
- SendGrid (production)
- Mock (testing)
"""

import os
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, List

import httpx

logger = logging.getLogger(__name__)

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"


@dataclass
class EmailMessage:
    """Email message data."""
    to_email: str
    to_name: Optional[str]
    subject: str
    html_body: str
    text_body: Optional[str] = None
    from_email: Optional[str] = None
    from_name: Optional[str] = None
    reply_to: Optional[str] = None
    tags: Optional[List[str]] = None


class EmailSender(ABC):
    """Abstract base class for email sending."""

    @abstractmethod
    async def send(self, message: EmailMessage) -> bool:
        """
        Send an email asynchronously.

        Args:
            message: Email message to send

        Returns:
            True on success, False on failure
        """
        pass


class SendGridEmailSender(EmailSender):
    """SendGrid email sender implementation."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        from_email: Optional[str] = None,
        from_name: Optional[str] = None,
        timeout: float = 30.0,
    ):
        """
        Initialize SendGrid sender.

        Args:
            api_key: SendGrid API key (or from SENDGRID_API_KEY env var)
            from_email: Default sender email (or from NOTIFICATION_FROM_EMAIL env var)
            from_name: Default sender name (or from NOTIFICATION_FROM_NAME env var)
            timeout: Request timeout in seconds
        """
        self.api_key = api_key or os.getenv("SENDGRID_API_KEY")
        self.from_email = from_email or os.getenv(
            "NOTIFICATION_FROM_EMAIL", "billing@writelikeyou.ai"
        )
        self.from_name = from_name or os.getenv(
            "NOTIFICATION_FROM_NAME", "WriteLikeYou.ai"
        )
        self.timeout = timeout

        if not self.api_key:
            logger.warning("SendGrid API key not configured")

    def _build_payload(self, message: EmailMessage) -> dict:
        payload = {
            "personalizations": [
                {
                    "to": [{"email": message.to_email, "name": message.to_name or ""}],
                }
            ],
            "from": {
                "email": message.from_email or self.from_email,
                "name": message.from_name or self.from_name,
            },
            "subject": message.subject,
            "content": [
                {"type": "text/html", "value": message.html_body},
            ],
        }

        if message.text_body:
            payload["content"].insert(0, {"type": "text/plain", "value": message.text_body})

        if message.reply_to:
            payload["reply_to"] = {"email": message.reply_to}

        if message.tags:
            payload["categories"] = message.tags

        return payload

    async def send(self, message: EmailMessage) -> bool:
        """Send email via SendGrid API."""
        if not self.api_key:
            logger.error("Cannot send email: SendGrid API key not configured")
            return False

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    SENDGRID_SEND_URL,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=self._build_payload(message),
                )
        except httpx.HTTPError as e:
            logger.error(
                "Failed to send email via SendGrid",
                extra={
                    "subject": message.subject,
                    "error": str(e),
                },
                exc_info=True,
            )
            return False

        if response.status_code in (200, 202):
            logger.info(
                "Email sent successfully",
                extra={"subject": message.subject},
            )
            return True

        logger.error(
            "SendGrid API error",
            extra={
                "status_code": response.status_code,
                "response": response.text,
                "subject": message.subject,
            },
        )
        return False


class MockEmailSender(EmailSender):
    """Mock email sender for testing."""

    def __init__(self):
        """Initialize mock sender."""
        self.sent_messages: List[EmailMessage] = []

    async def send(self, message: EmailMessage) -> bool:
        """Record email in sent_messages list."""
        self.sent_messages.append(message)
        logger.info(
            "Mock email sent",
            extra={"subject": message.subject},
        )
        return True

    def clear(self) -> None:
        """Clear sent messages."""
        self.sent_messages.clear()


def get_email_sender() -> EmailSender:
    """
    Get configured email sender based on environment.

    Returns:
        Appropriate EmailSender implementation
    """
    provider = os.getenv("NOTIFICATION_EMAIL_PROVIDER", "sendgrid").lower()

    if provider == "mock":
        return MockEmailSender()
    return SendGridEmailSender()
