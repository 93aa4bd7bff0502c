"""
Beta expiry reminder job.

Runs daily to email beta users whose access ends in 30, 14, 7, 3 or 1 days
(lead times come from config/billing.yml).

Usage:
    python -m billing_core.jobs.beta_expiry_reminders

SIGTERM/SIGINT stop the run between accounts; reminders already sent are kept.
"""

import os
import sys
import signal
import asyncio
import logging

from billing_core.config.billing_config import get_billing_config
from billing_core.database.session import get_db_session_sync
from billing_core.repositories.account_repository import SqlAlchemyAccountStore
from billing_core.services.notifications import EmailNotificationDispatcher
from billing_core.services.reminder_scheduler import (
    DEFAULT_MAX_CONCURRENCY,
    ExpiryReminderScheduler,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def install_abort_handlers() -> asyncio.Event:
    """Return an event that is set on SIGTERM/SIGINT."""
    abort_event = asyncio.Event()

    def _handle_signal(sig, _frame):
        logger.info("Received signal %s, stopping after in-flight reminders", sig)
        abort_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)
    return abort_event


async def run_beta_expiry_reminders() -> dict:
    """
    Run the beta expiry reminder job.

    Returns:
        Statistics dictionary with job results
    """
    logger.info("Starting beta expiry reminder job")

    max_concurrency = int(os.getenv("REMINDER_MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY))
    abort_event = install_abort_handlers()

    for session in get_db_session_sync():
        scheduler = ExpiryReminderScheduler(
            store=SqlAlchemyAccountStore(session),
            dispatcher=EmailNotificationDispatcher(),
            config=get_billing_config(),
            max_concurrency=max_concurrency,
        )
        result = await scheduler.run_daily_reminders(abort_event=abort_event)

    stats = result.to_dict()
    logger.info("Beta expiry reminder job completed", extra=stats)
    return stats


def main():
    """Entry point for running the reminder job from command line."""
    try:
        result = asyncio.run(run_beta_expiry_reminders())
        print(f"Beta expiry reminders completed: {result}")
        sys.exit(1 if result["failed"] else 0)
    except Exception as e:
        logger.error("Beta expiry reminder job crashed", extra={"error": str(e)})
        print(f"Beta expiry reminders failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
