"""
Tests for the commission calculator
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from config import Config
from models import MembershipTier
from services.commission_service import (
    CommissionProfile, CommissionService, RateSource, calculate_commission, commission_at_rate, tier_rate,
)
from utils.exceptions import NotFoundError, ValidationError

from factories import NOW, make_user


class TestTierRates:

    def test_default_tier_table(self):
        assert tier_rate(MembershipTier.FREE.value) == Decimal("8")
        assert tier_rate(MembershipTier.PRO.value) == Decimal("3")
        assert tier_rate(MembershipTier.SUPER_PRO.value) == Decimal("2")

    def test_unknown_tier_is_rejected(self):
        with pytest.raises(ValidationError):
            tier_rate("platinum")


class TestCalculateCommission:

    def test_free_tier_without_discount(self):
        quote = calculate_commission(CommissionProfile(), "10000", now=NOW)

        assert quote.rate == Decimal("8.00")
        assert quote.commission == Decimal("800.00")
        assert quote.total_price == Decimal("10800.00")
        assert quote.rate_source == RateSource.TIER

    def test_active_referral_discount_overrides_tier_rate(self):
        profile = CommissionProfile(
            has_referral_discount=True,
            referral_discount_expires_at=NOW + timedelta(days=10),
        )
        quote = calculate_commission(profile, Decimal("10000"), now=NOW)

        assert quote.rate == Decimal("3.00")
        assert quote.commission == Decimal("300.00")
        assert quote.total_price == Decimal("10300.00")
        assert quote.rate_source == RateSource.REFERRAL_DISCOUNT

    def test_expired_referral_discount_falls_back_silently(self):
        profile = CommissionProfile(
            has_referral_discount=True,
            referral_discount_expires_at=NOW - timedelta(seconds=1),
        )
        quote = calculate_commission(profile, "10000", now=NOW)

        assert quote.rate == Decimal("8.00")
        assert quote.commission == Decimal("800.00")

    def test_discount_never_raises_a_lower_tier_rate(self):
        profile = CommissionProfile(
            membership_tier=MembershipTier.SUPER_PRO.value,
            has_referral_discount=True,
            referral_discount_expires_at=NOW + timedelta(days=1),
        )
        quote = calculate_commission(profile, "10000", now=NOW)

        assert quote.rate == Decimal("2.00")
        assert quote.rate_source == RateSource.TIER

    def test_family_plan_is_commission_free(self):
        quote = calculate_commission(CommissionProfile(has_family_plan=True), "5000", now=NOW)

        assert quote.commission == Decimal("0.00")
        assert quote.total_price == Decimal("5000.00")
        assert quote.rate_source == RateSource.FAMILY_PLAN

    def test_free_contract_credit_is_commission_free(self):
        quote = calculate_commission(CommissionProfile(free_contracts_remaining=2), "5000", now=NOW)

        assert quote.commission == Decimal("0.00")
        assert quote.uses_free_contract

    def test_rounds_half_up_to_cents(self):
        # 1234.56 * 8% = 98.7648
        quote = calculate_commission(CommissionProfile(), "1234.56", now=NOW)
        assert quote.commission == Decimal("98.76")

        # 0.07 * 8% = 0.0056
        quote = calculate_commission(CommissionProfile(), "0.07", now=NOW)
        assert quote.commission == Decimal("0.01")

    @pytest.mark.parametrize("amount", ["0", "-10", None, "abc", float("nan")])
    def test_invalid_base_amount_is_rejected(self, amount):
        with pytest.raises(ValidationError):
            calculate_commission(CommissionProfile(), amount, now=NOW)

    @pytest.mark.parametrize("tier", [t.value for t in MembershipTier])
    @pytest.mark.parametrize("amount", ["1", "999.99", "10000", "123456.78"])
    def test_total_is_exactly_base_plus_commission(self, tier, amount):
        profile = CommissionProfile(membership_tier=tier)
        first = calculate_commission(profile, amount, now=NOW)
        second = calculate_commission(profile, amount, now=NOW)

        assert first == second
        assert first.total_price == first.base_amount + first.commission


class TestMinimumCommission:

    def test_minimum_applies_when_enabled(self, monkeypatch):
        monkeypatch.setattr(Config, "COMMISSION_MIN_ENABLED", True)
        monkeypatch.setattr(Config, "COMMISSION_MIN_AMOUNT", Decimal("1000"))

        assert commission_at_rate("10000", "8") == Decimal("1000.00")
        assert commission_at_rate("50000", "8") == Decimal("4000.00")

    def test_minimum_does_not_apply_to_zero_rate(self, monkeypatch):
        monkeypatch.setattr(Config, "COMMISSION_MIN_ENABLED", True)

        assert commission_at_rate("10000", "0") == Decimal("0.00")


class TestCommissionServiceForUser:

    def test_reads_profile_from_user_row(self, session):
        payer = make_user(
            session,
            has_referral_discount=True,
            referral_discount_expires_at=NOW + timedelta(days=3),
        )

        quote = CommissionService.calculate_for_user(session, payer.id, "10000", now=NOW)

        assert quote.commission == Decimal("300.00")
        assert quote.to_dict()["totalPrice"] == Decimal("10300.00")

    def test_unknown_payer(self, session):
        with pytest.raises(NotFoundError):
            CommissionService.calculate_for_user(session, 999, "10000")
