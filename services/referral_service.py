"""
Referral rewards and referral-discount expiry.

A referred user's first completed contract counts once towards their
referrer. Rewards by the referrer's completed referral count:
    1st -> free contracts (REFERRAL_FIRST_REWARD_FREE_CONTRACTS)
    2nd -> free contracts (REFERRAL_SECOND_REWARD_FREE_CONTRACTS)
    3rd -> reduced commission rate for REFERRAL_DISCOUNT_DAYS
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import Config
from models import User
from services.commission_service import tier_rate
from services.notification_queue import NotificationQueueService
from utils.datetime_helpers import resolve_now
from utils.exceptions import NotFoundError

logger = logging.getLogger(__name__)


class ReferralRewardType:
    TWO_FREE = "two_free_contracts"
    ONE_FREE = "one_free_contract"
    REDUCED_COMMISSION = "reduced_commission"


class ReferralService:

    @classmethod
    def process_completed_contract(
        cls, session: Session, user_id: int, now: Optional[datetime] = None
    ) -> Optional[Dict[str, Any]]:
        """Credit the referrer the first time a referred user completes a contract"""
        user = session.get(User, user_id)
        if user is None or user.referred_by_id is None or user.referral_credited:
            return None

        claimed = session.execute(
            update(User)
            .where(User.id == user_id, User.referral_credited.is_(False))
            .values(referral_credited=True)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 0:
            return None
        session.get(User, user_id, populate_existing=True)

        logger.info(f"🤝 REFERRAL_COMPLETED: user={user_id} referred by {user.referred_by_id}")
        return cls.grant_referrer_reward(session, user.referred_by_id, now)

    @classmethod
    def grant_referrer_reward(
        cls, session: Session, referrer_id: int, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        if session.get(User, referrer_id) is None:
            raise NotFoundError(f"Referrer {referrer_id} not found")

        session.execute(
            update(User)
            .where(User.id == referrer_id)
            .values(completed_referrals=User.completed_referrals + 1)
            .execution_options(synchronize_session=False)
        )
        completed = session.execute(
            select(User.completed_referrals).where(User.id == referrer_id)
        ).scalar_one()
        referrer = session.get(User, referrer_id, populate_existing=True)

        reward_type = None
        free_contracts = 0
        if completed == 1:
            reward_type = ReferralRewardType.TWO_FREE
            free_contracts = Config.REFERRAL_FIRST_REWARD_FREE_CONTRACTS
        elif completed == 2:
            reward_type = ReferralRewardType.ONE_FREE
            free_contracts = Config.REFERRAL_SECOND_REWARD_FREE_CONTRACTS
        elif completed == 3:
            reward_type = ReferralRewardType.REDUCED_COMMISSION
            referrer.has_referral_discount = True
            referrer.referral_discount_expires_at = resolve_now(now) + timedelta(days=Config.REFERRAL_DISCOUNT_DAYS)
            referrer.current_commission_rate = min(Config.REFERRAL_DISCOUNT_RATE, tier_rate(referrer.membership_tier))

        if free_contracts:
            referrer.free_contracts_remaining = (referrer.free_contracts_remaining or 0) + free_contracts

        if reward_type:
            NotificationQueueService.enqueue(
                session, referrer_id, "referral_reward",
                {"reward": reward_type, "completed_referrals": completed},
                idempotency_key=f"referral:{referrer_id}:reward:{completed}",
            )
            logger.info(f"🎁 REFERRAL_REWARD: referrer={referrer_id} #{completed} -> {reward_type}")
        session.flush()

        return {
            "reward_type": reward_type,
            "free_contracts_added": free_contracts,
            "completed_referrals": completed,
        }

    @classmethod
    def find_expired_discounts(cls, session: Session, now: Optional[datetime] = None) -> List[int]:
        now = resolve_now(now)
        rows = session.execute(
            select(User.id).where(
                User.has_referral_discount.is_(True),
                User.referral_discount_expires_at.is_not(None),
                User.referral_discount_expires_at <= now,
            ).order_by(User.id)
        ).scalars().all()
        return list(rows)

    @classmethod
    def reset_expired_discount(cls, session: Session, user_id: int, now: Optional[datetime] = None) -> bool:
        """Clear one user's expired discount and restore their tier rate"""
        now = resolve_now(now)
        user = session.get(User, user_id)
        if user is None:
            return False

        restored_rate = tier_rate(user.membership_tier)
        result = session.execute(
            update(User)
            .where(
                User.id == user_id,
                User.has_referral_discount.is_(True),
                User.referral_discount_expires_at <= now,
            )
            .values(
                has_referral_discount=False,
                referral_discount_expires_at=None,
                current_commission_rate=restored_rate,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return False
        session.get(User, user_id, populate_existing=True)

        NotificationQueueService.enqueue(
            session, user_id, "referral_discount_expired",
            {"rate": str(restored_rate)},
            idempotency_key=f"referral:{user_id}:discount_expired:{now.date().isoformat()}",
        )
        logger.info(f"⏳ REFERRAL_DISCOUNT_RESET: user={user_id} rate -> {restored_rate}%")
        return True
