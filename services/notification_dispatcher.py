"""
Notification Dispatcher
Delivers one rendered notification to a user. Used only by the outbox
processor; financial code paths enqueue instead of calling this directly.
"""

import logging
from typing import Any, Dict, Optional

import requests

from config import Config

logger = logging.getLogger(__name__)


TEMPLATES: Dict[str, Dict[str, str]] = {
    "payment_held": {
        "title": "Payment secured",
        "body": "Payment for contract #{contract_id} is held in escrow. You can start the work.",
    },
    "contract_completed": {
        "title": "Contract completed",
        "body": "Contract #{contract_id} was confirmed by both parties and is now completed.",
    },
    "contract_auto_confirmed": {
        "title": "Contract auto-confirmed",
        "body": "Contract #{contract_id} was confirmed automatically after the confirmation window expired.",
    },
    "payment_pending_payout": {
        "title": "Payment on its way",
        "body": "{amount} {currency} for contract #{contract_id} is pending payout verification.",
    },
    "confirmation_reminder": {
        "title": "Confirm the job",
        "body": "The job for contract #{contract_id} has ended. Please confirm it was completed.",
    },
    "contract_cancelled": {
        "title": "Contract cancelled",
        "body": "Contract #{contract_id} was cancelled.",
    },
    "contract_disputed": {
        "title": "Dispute opened",
        "body": "A dispute was opened on contract #{contract_id}. Funds stay in escrow until it is resolved.",
    },
    "escrow_refund_review": {
        "title": "Refund under review",
        "body": "Contract #{contract_id} was cancelled with funds in escrow. An admin will review the refund.",
    },
    "escrow_released": {
        "title": "Escrow released",
        "body": "Escrow for contract #{contract_id} was released.",
    },
    "payment_refunded": {
        "title": "Payment refunded",
        "body": "{amount} {currency} was refunded for contract #{contract_id}.",
    },
    "payout_credited": {
        "title": "Balance credited",
        "body": "{amount} was added to your balance.",
    },
    "allocation_increased": {
        "title": "Allocation increased",
        "body": "Your share for job #{job_id} is now {amount}.",
    },
    "removed_from_job": {
        "title": "Removed from job",
        "body": "You were removed from job #{job_id}. Your contract was cancelled.",
    },
    "referral_reward": {
        "title": "Referral reward",
        "body": "One of your referrals completed a contract: {reward}.",
    },
    "referral_discount_expired": {
        "title": "Referral discount ended",
        "body": "Your referral commission discount expired. Your rate is back to {rate}%.",
    },
}


class _SafeDict(dict):
    def __missing__(self, key):
        return "{" + key + "}"


def render(template: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
    """Fill a template with data; unknown templates render generically"""
    layout = TEMPLATES.get(template, {"title": template.replace("_", " ").capitalize(), "body": ""})
    values = _SafeDict(data or {})
    return {
        "title": layout["title"].format_map(values),
        "body": layout["body"].format_map(values),
    }


class NotificationDispatcher:
    """Posts notifications to the delivery webhook, or logs them when none is configured"""

    def __init__(self, webhook_url: Optional[str] = None, timeout: Optional[int] = None):
        self.webhook_url = webhook_url if webhook_url is not None else Config.NOTIFICATION_WEBHOOK_URL
        self.timeout = timeout or Config.NOTIFICATION_TIMEOUT_SECONDS

    def notify(self, user_id: int, template: str, data: Optional[Dict[str, Any]] = None) -> bool:
        """
        Deliver a notification.

        Raises requests.exceptions.RequestException on delivery failure so the
        outbox processor can count a retry.
        """
        rendered = render(template, data)

        if not self.webhook_url:
            logger.info(f"📨 NOTIFY (log only): user={user_id} template={template} title={rendered['title']!r}")
            return True

        payload = {
            "user_id": user_id,
            "template": template,
            "title": rendered["title"],
            "body": rendered["body"],
            "data": data or {},
        }
        try:
            response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.error(f"❌ NOTIFY_HTTP_ERROR: user={user_id} template={template} error={e}")
            raise

        logger.info(f"✅ NOTIFY_SENT: user={user_id} template={template}")
        return True
