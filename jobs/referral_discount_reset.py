"""
Daily referral discount expiry.
Clears expired referral discounts and restores each user's tier rate.
"""

import logging
from datetime import datetime
from typing import Dict, Optional

from database import managed_session
from services.referral_service import ReferralService
from utils.datetime_helpers import resolve_now
from utils.job_guard import JobRunGuard

logger = logging.getLogger(__name__)

referral_reset_guard = JobRunGuard("referral_discount_reset")


def run_referral_discount_reset(now: Optional[datetime] = None) -> Dict[str, int]:
    stats = {"checked": 0, "reset": 0, "errors": 0}

    with referral_reset_guard.hold() as acquired:
        if not acquired:
            return stats

        now = resolve_now(now)
        try:
            with managed_session() as session:
                user_ids = ReferralService.find_expired_discounts(session, now)
        except Exception as e:
            logger.error(f"❌ REFERRAL_RESET: failed to load expired discounts: {e}", exc_info=True)
            stats["errors"] += 1
            return stats

        for user_id in user_ids:
            stats["checked"] += 1
            try:
                with managed_session() as session:
                    if ReferralService.reset_expired_discount(session, user_id, now):
                        stats["reset"] += 1
            except Exception as e:
                stats["errors"] += 1
                logger.error(f"❌ REFERRAL_RESET_FAILED: user={user_id}: {e}", exc_info=True)

    if stats["checked"]:
        logger.info(f"⏳ Referral discount reset: {stats['reset']}/{stats['checked']} users, {stats['errors']} errors")
    return stats
