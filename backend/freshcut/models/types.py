"""
Column types for fixed-point storage.

Quantities and money are stored as scaled integers, the same way prices
are kept in cents: FixedDecimal(2) persists 12.34 as 1234. The Python side
always sees a quantized Decimal.
"""

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy.types import BigInteger, TypeDecorator


class FixedDecimal(TypeDecorator):
    impl = BigInteger
    cache_ok = True

    def __init__(self, places: int = 2, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.places = places
        self._factor = 10 ** places
        self._exp = Decimal(1).scaleb(-places)

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, float):
            raise TypeError("FixedDecimal columns do not accept float values")
        d = Decimal(value).quantize(self._exp, rounding=ROUND_HALF_UP)
        return int(d * self._factor)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return (Decimal(int(value)) / self._factor).quantize(self._exp)

    def coerce_compared_value(self, op, value):
        return self

    def copy(self, **kw):
        return FixedDecimal(self.places)
