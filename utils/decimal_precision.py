#!/usr/bin/env python3
"""
Decimal Precision Utilities for Financial Calculations
Enforces consistent Decimal usage across all monetary operations
"""

import logging
from decimal import Decimal, ROUND_HALF_UP, ROUND_FLOOR, InvalidOperation, getcontext
from typing import Union, Optional

from utils.exceptions import ValidationError

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 28

Numeric = Union[str, int, float, Decimal]


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with proper precision"""

    MONEY_PRECISION = Decimal("0.01")  # 2 decimal places for ARS/USD
    PERCENT_PRECISION = Decimal("0.01")
    MAX_AMOUNT = Decimal("9999999999.99")  # Numeric(12, 2)

    @classmethod
    def to_decimal(cls, value: Optional[Numeric], context: str = "amount") -> Decimal:
        """Convert a numeric value to Decimal, rejecting anything unparseable"""
        if value is None:
            raise ValidationError(f"{context} is required")

        if isinstance(value, bool):
            raise ValidationError(f"{context} must be numeric")

        if isinstance(value, Decimal):
            decimal_value = value
        else:
            try:
                # Convert to string first to avoid float precision issues
                decimal_value = Decimal(str(value))
            except (InvalidOperation, ValueError):
                raise ValidationError(f"{context} must be numeric, got {value!r}")

        if not decimal_value.is_finite():
            raise ValidationError(f"{context} must be a finite number")

        if abs(decimal_value) > cls.MAX_AMOUNT:
            logger.warning(f"Unusually large monetary value: {decimal_value} in context: {context}")
            raise ValidationError(f"{context} exceeds the maximum supported amount")

        return decimal_value

    @classmethod
    def positive(cls, value: Optional[Numeric], context: str = "amount") -> Decimal:
        """Convert and require a strictly positive amount"""
        decimal_value = cls.to_decimal(value, context)
        if decimal_value <= 0:
            raise ValidationError(f"{context} must be greater than zero")
        return decimal_value

    @classmethod
    def quantize_money(cls, amount: Numeric) -> Decimal:
        """Round half-up to 2 decimal places"""
        return cls.to_decimal(amount).quantize(cls.MONEY_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def quantize_percent(cls, value: Numeric) -> Decimal:
        return cls.to_decimal(value, "percentage").quantize(cls.PERCENT_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def floor_to_unit(cls, amount: Numeric, unit: Numeric) -> Decimal:
        """Round down to a whole multiple of ``unit`` (e.g. 1 or 0.01)"""
        unit_decimal = cls.positive(unit, "allocation unit")
        units = (cls.to_decimal(amount) / unit_decimal).to_integral_value(rounding=ROUND_FLOOR)
        return (units * unit_decimal).quantize(cls.MONEY_PRECISION)

    @classmethod
    def percentage_of(cls, amount: Numeric, rate: Numeric) -> Decimal:
        """amount * rate / 100, rounded to money precision"""
        return cls.quantize_money(cls.to_decimal(amount) * cls.to_decimal(rate, "rate") / Decimal("100"))
