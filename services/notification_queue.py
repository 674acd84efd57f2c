"""
Notification Outbox
Notifications are written to the notification_queue table inside the same
transaction as the state change that caused them, then delivered by a
background processor. A delivery failure never rolls back a payment or
contract transition.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from config import Config
from database import managed_session
from models import NotificationQueue, NotificationStatus
from services.notification_dispatcher import NotificationDispatcher
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class NotificationQueueService:
    """Enqueue and drain user notifications"""

    @classmethod
    def enqueue(
        cls,
        session: Session,
        user_id: int,
        template: str,
        data: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        priority: int = 2,
    ) -> NotificationQueue:
        """
        Queue a notification in the caller's transaction.

        A repeated idempotency_key returns the existing row instead of queuing twice.
        """
        if idempotency_key:
            session.flush()
            existing = session.query(NotificationQueue).filter(
                NotificationQueue.idempotency_key == idempotency_key
            ).first()
            if existing:
                logger.info(f"📧 Duplicate notification prevented: {idempotency_key} (existing: {existing.status})")
                return existing

        notification = NotificationQueue(
            user_id=user_id,
            template=template,
            template_data=data or {},
            status=NotificationStatus.PENDING.value,
            priority=priority,
            retry_count=0,
            idempotency_key=idempotency_key,
        )
        session.add(notification)
        session.flush()

        logger.debug(f"📥 Notification queued: {template} for user {user_id} (ID: {notification.id})")
        return notification

    @classmethod
    def process_pending_notifications(
        cls,
        batch_size: Optional[int] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ) -> Dict[str, int]:
        """
        Deliver a batch of pending notifications.

        Returns:
            Dict with counts: processed, sent, retried, failed
        """
        batch_size = batch_size or Config.NOTIFICATION_BATCH_SIZE
        dispatcher = dispatcher or NotificationDispatcher()
        stats = {"processed": 0, "sent": 0, "retried": 0, "failed": 0}

        with managed_session() as session:
            pending = (
                session.query(NotificationQueue)
                .filter(NotificationQueue.status == NotificationStatus.PENDING.value)
                .order_by(NotificationQueue.priority, NotificationQueue.created_at, NotificationQueue.id)
                .limit(batch_size)
                .all()
            )

            for notification in pending:
                stats["processed"] += 1
                try:
                    dispatcher.notify(notification.user_id, notification.template, notification.template_data or {})
                except Exception as e:
                    notification.retry_count += 1
                    notification.error_message = str(e)[:1000]
                    if notification.retry_count >= Config.NOTIFICATION_MAX_RETRIES:
                        notification.status = NotificationStatus.FAILED.value
                        stats["failed"] += 1
                        logger.error(
                            f"❌ Notification {notification.id} failed permanently after "
                            f"{notification.retry_count} attempts: {e}"
                        )
                    else:
                        stats["retried"] += 1
                        logger.warning(f"⚠️ Notification {notification.id} delivery failed, will retry: {e}")
                    continue

                notification.status = NotificationStatus.SENT.value
                notification.sent_at = get_naive_utc_now()
                notification.error_message = None
                stats["sent"] += 1

        return stats
