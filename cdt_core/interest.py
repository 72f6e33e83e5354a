"""
Interest Calculator Module

Daily-compounded accrued return for fixed-term deposits plus the date and
term helpers used when a certificate is created. All calculations use Decimal.
"""

from decimal import Decimal, ROUND_HALF_UP, localcontext
from datetime import date, timedelta
from typing import Union

Number = Union[Decimal, int, float, str]

CENT = Decimal('0.01')
DAYS_PER_YEAR = Decimal('365')

# Typical annual rates (%) by term band, from the deposit market rules
RECOMMENDED_RATES = (
    (90, Decimal('4.5')),
    (180, Decimal('5.5')),
    (360, Decimal('6.5')),
)
LONG_TERM_RATE = Decimal('7.5')


def to_decimal(value: Number) -> Decimal:
    """Convert a number to Decimal without float artefacts"""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def calculate_return(principal: Number, annual_rate_percent: Number, term_days: int) -> Decimal:
    """
    Accrued return of a deposit compounded daily from a nominal annual rate.

    principal * (1 + rate/100/365) ** term_days - principal, rounded half-up
    to cents. Inputs are not validated here; the creation path rejects
    non-positive values.

    Args:
        principal: Invested amount
        annual_rate_percent: Annual nominal rate in percent (12 means 12%)
        term_days: Term length in days

    Returns:
        Interest earned over the term (excludes the principal)
    """
    principal = to_decimal(principal)
    rate = to_decimal(annual_rate_percent)

    with localcontext() as ctx:
        ctx.prec = 34
        daily_rate = rate / Decimal('100') / DAYS_PER_YEAR
        final_amount = principal * (Decimal('1') + daily_rate) ** int(term_days)
        accrued = final_amount - principal

    return accrued.quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_final_amount(principal: Number, annual_rate_percent: Number, term_days: int) -> Decimal:
    """Principal plus accrued return at maturity"""
    principal = to_decimal(principal).quantize(CENT, rounding=ROUND_HALF_UP)
    return principal + calculate_return(principal, annual_rate_percent, term_days)


def calculate_end_date(start_date: date, term_days: int) -> date:
    """Maturity date: start date plus the term in days"""
    return start_date + timedelta(days=int(term_days))


def months_to_days(months: int, days_per_month: int = 30) -> int:
    """Convert a term expressed in months into days"""
    return int(months) * int(days_per_month)


def recommended_rate(term_days: int) -> Decimal:
    """Typical annual rate (%) offered for a term"""
    for max_days, rate in RECOMMENDED_RATES:
        if term_days <= max_days:
            return rate
    return LONG_TERM_RATE
