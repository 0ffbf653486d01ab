"""
Decimal Precision Utilities for kWh and price calculations
Enforces consistent Decimal usage across quantities, prices and balances
"""

import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from typing import Union

from utils.exception_handler import ValidationError

logger = logging.getLogger(__name__)

getcontext().prec = 28

Numeric = Union[str, int, float, Decimal]


class MarketDecimal:
    """Decimal-only arithmetic for kWh quantities and per-kWh prices"""

    STORAGE_PRECISION = Decimal("0.000001")  # matches Numeric(18, 6) columns
    DISPLAY_PRECISION = Decimal("0.01")
    MAX_VALUE = Decimal("999999999999")

    @classmethod
    def to_decimal(cls, value: Numeric, context: str = "amount") -> Decimal:
        """
        Convert user or stored input to Decimal.

        Accepts a comma as decimal separator ("22,5"). Raises ValidationError on
        anything that is not a finite number.
        """
        if value is None:
            raise ValidationError(f"Missing {context}")
        if isinstance(value, bool):
            raise ValidationError(f"Invalid {context}: {value!r}")

        if isinstance(value, Decimal):
            decimal_value = value
        else:
            text = str(value).strip().replace(",", ".")
            try:
                decimal_value = Decimal(text)
            except (InvalidOperation, ValueError):
                raise ValidationError(f"Invalid {context}: {value!r}")

        if not decimal_value.is_finite():
            raise ValidationError(f"Invalid {context}: {value!r}")
        if abs(decimal_value) > cls.MAX_VALUE:
            logger.warning(f"Unusually large value: {decimal_value} in context: {context}")
            raise ValidationError(f"{context.capitalize()} is too large")
        return decimal_value

    @classmethod
    def parse_positive(cls, value: Numeric, context: str = "amount") -> Decimal:
        """Parse a strictly positive finite amount"""
        decimal_value = cls.to_decimal(value, context)
        if decimal_value <= 0:
            raise ValidationError(f"{context.capitalize()} must be greater than zero")
        return decimal_value

    @classmethod
    def quantize_storage(cls, amount: Numeric) -> Decimal:
        return cls.to_decimal(amount).quantize(cls.STORAGE_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def quantize_display(cls, amount: Numeric) -> Decimal:
        """Round to 2 decimal places for messages"""
        return cls.to_decimal(amount).quantize(cls.DISPLAY_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def multiply(cls, kwh: Numeric, unit_price: Numeric) -> Decimal:
        """Exact product of kWh and unit price, stored at column precision"""
        return cls.quantize_storage(cls.to_decimal(kwh, "kWh") * cls.to_decimal(unit_price, "price"))

    @classmethod
    def divide(cls, total: Numeric, kwh: Numeric) -> Decimal:
        divisor = cls.to_decimal(kwh, "kWh")
        if divisor == 0:
            return Decimal("0")
        return cls.quantize_storage(cls.to_decimal(total, "total") / divisor)

    @classmethod
    def format(cls, amount: Numeric) -> str:
        """Human readable amount without trailing zeros beyond 2 decimals"""
        return f"{cls.quantize_display(amount):.2f}"
