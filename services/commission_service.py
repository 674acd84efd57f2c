"""
Commission Calculator
Computes the platform commission a payer owes on top of a contract's base price.

Rate precedence (first match wins):
1. Family plan                      -> COMMISSION_RATE_FAMILY (0%)
2. Free contract credit available   -> 0%
3. Membership tier default          -> free 8%, pro 3%, super_pro 2%
   lowered to REFERRAL_DISCOUNT_RATE while a referral discount is active

An expired referral discount silently falls back to the tier rate.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from config import Config
from models import User, MembershipTier
from utils.datetime_helpers import resolve_now, ensure_naive_datetime
from utils.decimal_precision import MonetaryDecimal, Numeric
from utils.exceptions import ValidationError, NotFoundError

logger = logging.getLogger(__name__)


class RateSource:
    TIER = "tier"
    REFERRAL_DISCOUNT = "referral_discount"
    FAMILY_PLAN = "family_plan"
    FREE_CONTRACT = "free_contract"


@dataclass(frozen=True)
class CommissionProfile:
    """The payer attributes that determine their commission rate"""
    membership_tier: str = MembershipTier.FREE.value
    has_referral_discount: bool = False
    referral_discount_expires_at: Optional[datetime] = None
    has_family_plan: bool = False
    free_contracts_remaining: int = 0

    @classmethod
    def from_user(cls, user: User) -> "CommissionProfile":
        return cls(
            membership_tier=user.membership_tier,
            has_referral_discount=bool(user.has_referral_discount),
            referral_discount_expires_at=user.referral_discount_expires_at,
            has_family_plan=bool(user.has_family_plan),
            free_contracts_remaining=user.free_contracts_remaining or 0,
        )


@dataclass(frozen=True)
class CommissionQuote:
    base_amount: Decimal
    rate: Decimal
    commission: Decimal
    total_price: Decimal
    rate_source: str

    @property
    def uses_free_contract(self) -> bool:
        return self.rate_source == RateSource.FREE_CONTRACT

    def to_dict(self) -> dict:
        return {
            "rate": self.rate,
            "commission": self.commission,
            "totalPrice": self.total_price,
            "rate_source": self.rate_source,
        }


def tier_rate(membership_tier: str) -> Decimal:
    """Default commission rate for a membership tier"""
    rates = Config.tier_commission_rates()
    if membership_tier not in rates:
        raise ValidationError(f"Unknown membership tier: {membership_tier}")
    return rates[membership_tier]


def referral_discount_active(profile: CommissionProfile, now: Optional[datetime] = None) -> bool:
    if not profile.has_referral_discount or profile.referral_discount_expires_at is None:
        return False
    return ensure_naive_datetime(profile.referral_discount_expires_at) > resolve_now(now)


def resolve_rate(profile: CommissionProfile, now: Optional[datetime] = None):
    """Return (rate, source) for a payer profile"""
    if profile.has_family_plan:
        return Config.COMMISSION_RATE_FAMILY, RateSource.FAMILY_PLAN

    if profile.free_contracts_remaining > 0:
        return Decimal("0"), RateSource.FREE_CONTRACT

    rate = tier_rate(profile.membership_tier)
    if referral_discount_active(profile, now) and Config.REFERRAL_DISCOUNT_RATE < rate:
        return Config.REFERRAL_DISCOUNT_RATE, RateSource.REFERRAL_DISCOUNT

    return rate, RateSource.TIER


def commission_at_rate(base_amount: Numeric, rate: Numeric) -> Decimal:
    """Commission for a base amount at an already-resolved rate (minimum applied)"""
    commission = MonetaryDecimal.percentage_of(base_amount, rate)
    charges_commission = MonetaryDecimal.to_decimal(rate, "rate") > 0
    if Config.COMMISSION_MIN_ENABLED and charges_commission and commission < Config.COMMISSION_MIN_AMOUNT:
        commission = MonetaryDecimal.quantize_money(Config.COMMISSION_MIN_AMOUNT)
    return commission


def calculate_commission(
    profile: CommissionProfile,
    base_amount: Numeric,
    now: Optional[datetime] = None,
) -> CommissionQuote:
    """
    Pure commission calculation.

    commission = round_half_up(base_amount * rate / 100, 2)
    total_price = base_amount + commission
    """
    base = MonetaryDecimal.quantize_money(MonetaryDecimal.positive(base_amount, "base amount"))
    rate, source = resolve_rate(profile, now)
    commission = commission_at_rate(base, rate)

    return CommissionQuote(
        base_amount=base,
        rate=MonetaryDecimal.quantize_percent(rate),
        commission=commission,
        total_price=base + commission,
        rate_source=source,
    )


class CommissionService:
    """Database-facing wrapper around the pure calculator"""

    @classmethod
    def calculate_for_user(
        cls,
        session: Session,
        payer_id: int,
        base_amount: Numeric,
        now: Optional[datetime] = None,
    ) -> CommissionQuote:
        payer = session.get(User, payer_id)
        if payer is None:
            raise NotFoundError(f"User {payer_id} not found")

        quote = calculate_commission(CommissionProfile.from_user(payer), base_amount, now)
        logger.debug(
            f"💰 COMMISSION_QUOTE: payer={payer_id} base={quote.base_amount} "
            f"rate={quote.rate}% ({quote.rate_source}) commission={quote.commission}"
        )
        return quote
