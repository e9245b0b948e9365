"""
Fixed-point helpers for quantities and money.

Every quantity and amount in the ledger is a Decimal quantized to two
fractional digits (rates to four). Floats are refused at the boundary:
repeated add/subtract cycles on kg-based stock must never drift.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from .errors import ValidationError

QUANTITY_PLACES = 2
MONEY_PLACES = 2
RATE_PLACES = 4

ZERO = Decimal("0.00")

# Stored as scaled signed 64-bit integers (see models.types.FixedDecimal).
MAX_SCALED = 2 ** 63 - 1


def _exponent(places: int) -> Decimal:
    return Decimal(1).scaleb(-places)


def to_decimal(value, places: int = 2, *, field: str = "value") -> Decimal:
    """
    Coerce int / str / Decimal to a Decimal with `places` fractional digits.

    Rounds half-up. Raises ValidationError for floats, bools, NaN/Infinity
    and anything that does not parse.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(f"{field} must be a decimal string or integer, not {type(value).__name__}")
    if isinstance(value, Decimal):
        d = value
    elif isinstance(value, int):
        d = Decimal(value)
    elif isinstance(value, str):
        try:
            d = Decimal(value.strip())
        except InvalidOperation as exc:
            raise ValidationError(f"{field} is not a decimal: {value!r}") from exc
    else:
        raise ValidationError(f"{field} has unsupported type {type(value).__name__}")

    if not d.is_finite():
        raise ValidationError(f"{field} must be finite")
    ensure_storable(d, places, field=field)
    try:
        return d.quantize(_exponent(places), rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValidationError(f"{field} is out of range: {value!r}") from exc


def ensure_storable(value: Decimal, places: int = 2, *, field: str = "value") -> Decimal:
    """Raise ValidationError unless value fits a FixedDecimal(places) column."""
    if abs(value).scaleb(places) > MAX_SCALED:
        raise ValidationError(f"{field} is out of range: {value}")
    return value


def to_quantity(value, *, field: str = "quantity", allow_zero: bool = False) -> Decimal:
    """Positive quantity (or non-negative with allow_zero)."""
    q = to_decimal(value, QUANTITY_PLACES, field=field)
    if q < 0 or (q == 0 and not allow_zero):
        raise ValidationError(f"{field} must be {'non-negative' if allow_zero else 'positive'}")
    return q


def to_money(value, *, field: str = "amount", allow_negative: bool = False) -> Decimal:
    m = to_decimal(value, MONEY_PLACES, field=field)
    if m < 0 and not allow_negative:
        raise ValidationError(f"{field} must not be negative")
    return m


def to_rate(value, *, field: str = "rate") -> Decimal:
    r = to_decimal(value, RATE_PLACES, field=field)
    if r < 0 or r >= 1:
        raise ValidationError(f"{field} must be in [0, 1)")
    return r


def quantize_money(value: Decimal) -> Decimal:
    """Round an already-computed Decimal (e.g. a product) to money precision."""
    ensure_storable(value, MONEY_PLACES, field="amount")
    return value.quantize(_exponent(MONEY_PLACES), rounding=ROUND_HALF_UP)
