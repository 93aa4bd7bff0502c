"""
Payment retry reminder job.

Runs daily to warn accounts in dunning that their card will be retried
today. Each failure gets at most one reminder.

Usage:
    python -m billing_core.jobs.payment_retry_reminders
"""

import os
import sys
import asyncio
import logging

from billing_core.config.billing_config import get_billing_config
from billing_core.database.session import get_db_session_sync
from billing_core.jobs.beta_expiry_reminders import install_abort_handlers
from billing_core.repositories.account_repository import SqlAlchemyAccountStore
from billing_core.services.notifications import EmailNotificationDispatcher
from billing_core.services.reminder_scheduler import (
    DEFAULT_MAX_CONCURRENCY,
    PaymentRetryReminderScheduler,
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def run_payment_retry_reminders() -> dict:
    """
    Run the payment retry reminder job.

    Returns:
        Statistics dictionary with job results
    """
    logger.info("Starting payment retry reminder job")

    max_concurrency = int(os.getenv("REMINDER_MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY))
    abort_event = install_abort_handlers()

    for session in get_db_session_sync():
        scheduler = PaymentRetryReminderScheduler(
            store=SqlAlchemyAccountStore(session),
            dispatcher=EmailNotificationDispatcher(),
            config=get_billing_config(),
            max_concurrency=max_concurrency,
        )
        result = await scheduler.run(abort_event=abort_event)

    stats = result.to_dict()
    logger.info("Payment retry reminder job completed", extra=stats)
    return stats


def main():
    """Entry point for running the reminder job from command line."""
    try:
        result = asyncio.run(run_payment_retry_reminders())
        print(f"Payment retry reminders completed: {result}")
        sys.exit(1 if result["failed"] else 0)
    except Exception as e:
        logger.error("Payment retry reminder job crashed", extra={"error": str(e)})
        print(f"Payment retry reminders failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
