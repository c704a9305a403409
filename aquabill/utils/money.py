from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union

from aquabill.errors import ValidationError

CENT = Decimal("0.01")

# Decimal places the store keeps: meter quantities and rates vs. currency amounts
QUANTITY_PLACES = 4
MONEY_PLACES = 2

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number, field: str = "value") -> Decimal:
    """Convert user input to Decimal without going through binary float."""
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be numeric", kind="invalid_number")
    try:
        result = Decimal(str(value)) if not isinstance(value, Decimal) else value
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be numeric", kind="invalid_number")
    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number", kind="invalid_number")
    return result


def non_negative(value: Number, field: str, places: Optional[int] = QUANTITY_PLACES) -> Decimal:
    """Parse a non-negative number that fits in ``places`` decimal places.

    Finer input is rejected rather than rounded, so what the caller gets back
    is exactly what the store keeps.
    """
    result = to_decimal(value, field)
    if result < 0:
        raise ValidationError(f"{field} must not be negative", kind="negative_value")
    if places is not None and result.as_tuple().exponent < -places:
        raise ValidationError(
            f"{field} allows at most {places} decimal places",
            kind="too_many_decimals",
        )
    return result


def round_currency(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)
