"""
Test suite for interest module

Tests daily-compounded accrued return, rounding, monotonicity and the
date and term helpers used when certificates are created.
"""

import pytest
from datetime import date
from decimal import Decimal

from cdt_core.interest import (
    calculate_return, calculate_final_amount, calculate_end_date,
    months_to_days, recommended_rate, to_decimal
)


class TestCalculateReturn:
    """Test accrued return calculation"""

    def test_reference_value(self):
        """Ten million at 12% for 360 days"""
        result = calculate_return(10_000_000, 12, 360)
        assert abs(result - Decimal('1256230.59')) <= Decimal('0.01')

    def test_rounded_to_cents(self):
        """Results always carry exactly two decimal places"""
        result = calculate_return(Decimal('1234567.89'), Decimal('7.3'), 97)
        assert result.as_tuple().exponent == -2

    def test_accepts_strings_and_floats(self):
        """Numeric inputs are converted without float artefacts"""
        assert calculate_return("10000000", "12", 360) == calculate_return(10_000_000, 12.0, 360)

    def test_strictly_increasing_in_rate(self):
        """Higher rate, same principal and term, earns more"""
        returns = [calculate_return(10_000_000, rate, 180) for rate in (1, 2, 4.5, 8, 9.5)]
        assert returns == sorted(returns)
        assert len(set(returns)) == len(returns)

    def test_strictly_increasing_in_days(self):
        """Longer term, same principal and rate, earns more"""
        returns = [calculate_return(10_000_000, 8, days) for days in (30, 90, 180, 360, 730)]
        assert returns == sorted(returns)
        assert len(set(returns)) == len(returns)

    def test_zero_term_earns_nothing(self):
        """No compounding periods means no interest"""
        assert calculate_return(1_000_000, 8, 0) == Decimal('0.00')

    def test_final_amount_adds_principal(self):
        """Final amount is principal plus accrued return"""
        principal = Decimal('5000000')
        expected = principal + calculate_return(principal, 6, 90)
        assert calculate_final_amount(principal, 6, 90) == expected


class TestTermHelpers:
    """Test date and term helpers"""

    def test_end_date(self):
        """End date is the start date plus the term in days"""
        assert calculate_end_date(date(2025, 1, 1), 90) == date(2025, 4, 1)

    def test_end_date_across_year(self):
        assert calculate_end_date(date(2025, 12, 1), 31) == date(2026, 1, 1)

    def test_months_to_days(self):
        """Months convert at 30 days unless configured otherwise"""
        assert months_to_days(6) == 180
        assert months_to_days(6, days_per_month=31) == 186

    @pytest.mark.parametrize("term_days,expected", [
        (30, Decimal('4.5')),
        (90, Decimal('4.5')),
        (91, Decimal('5.5')),
        (180, Decimal('5.5')),
        (360, Decimal('6.5')),
        (361, Decimal('7.5')),
        (730, Decimal('7.5')),
    ])
    def test_recommended_rate_bands(self, term_days, expected):
        assert recommended_rate(term_days) == expected

    def test_to_decimal(self):
        """Floats go through their string form"""
        assert to_decimal(0.1) == Decimal('0.1')
        value = Decimal('3.14')
        assert to_decimal(value) is value
