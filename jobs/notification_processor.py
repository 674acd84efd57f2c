"""
Notification Queue Processor
Delivers queued user notifications every 2 minutes.
"""

import logging
from typing import Dict

from services.notification_queue import NotificationQueueService
from utils.job_guard import JobRunGuard

logger = logging.getLogger(__name__)

notification_guard = JobRunGuard("notification_processor")


def run_notification_processor() -> Dict[str, int]:
    """Process pending notifications; errors are logged, never raised to the scheduler"""
    stats = {"processed": 0, "sent": 0, "retried": 0, "failed": 0}

    with notification_guard.hold() as acquired:
        if not acquired:
            return stats
        try:
            stats = NotificationQueueService.process_pending_notifications()
        except Exception as e:
            logger.error(f"Error processing notification queue: {e}", exc_info=True)
            return stats

    if stats["processed"] > 0:
        logger.info(
            f"📧 Notification queue processed: {stats['processed']} notifications, "
            f"{stats['sent']} sent, {stats['retried']} to retry, {stats['failed']} failed"
        )
    return stats
