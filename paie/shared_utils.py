"""
Shared utilities for money and calendar periods
"""
import calendar
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import List

from paie.exceptions import InvalidInputError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

MOIS_ABREGES = ['JAN', 'FEV', 'MAR', 'AVR', 'MAI', 'JUN',
                'JUL', 'AOU', 'SEP', 'OCT', 'NOV', 'DEC']


def to_decimal(value, field_name: str = "montant") -> Decimal:
    """Convert an int, str, float or Decimal to Decimal without binary drift"""
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool) or value is None:
        raise InvalidInputError(f"Valeur invalide pour {field_name}: {value!r}")
    else:
        try:
            # str() first so 0.1 becomes Decimal('0.1') and not its binary expansion
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as exc:
            raise InvalidInputError(f"Valeur invalide pour {field_name}: {value!r}") from exc

    if not result.is_finite():
        raise InvalidInputError(f"Valeur non finie pour {field_name}: {value!r}")
    return result


def round_money(value: Decimal) -> Decimal:
    """Arrondi au centime, demi supérieur"""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def percent_of(base: Decimal, rate_percent: Decimal) -> Decimal:
    """round(base x rate / 100, 2)"""
    return round_money(base * rate_percent / Decimal(100))


def month_start(day: date) -> date:
    return day.replace(day=1)


def month_end(day: date) -> date:
    return day.replace(day=calendar.monthrange(day.year, day.month)[1])


def is_whole_month(period_start: date, period_end: date) -> bool:
    return period_start == month_start(period_start) and period_end == month_end(period_start)


def months_between(start: date, end: date) -> List[date]:
    """First day of every month from start's month to end's month, ascending"""
    months = []
    current = month_start(start)
    last = month_start(end)
    while current <= last:
        months.append(current)
        current = (month_end(current) + timedelta(days=1))
    return months


def month_label(day: date) -> str:
    """Libellé court du mois, ex. JAN24"""
    return f"{MOIS_ABREGES[day.month - 1]}{day.year % 100:02d}"
