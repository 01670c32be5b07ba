"""
Amount Arithmetic Module

Converts caller-supplied amounts to exact integer minor units and back.
NEVER sums floats: every total in the ledger is an integer sum of minor
units, rounded once on the way in with round-half-away-from-zero.
"""

from decimal import Decimal, Context, ROUND_HALF_UP, InvalidOperation
from dataclasses import dataclass
from typing import Iterable, Union

from .exceptions import InvalidInputError

Number = Union[int, float, str, Decimal]

# Wide enough for any quantize at up to 18 decimal places
_CONTEXT = Context(prec=48, rounding=ROUND_HALF_UP)

MAX_DECIMAL_PLACES = 18


def coerce_decimal(amount: Number) -> Decimal:
    """
    Convert a caller amount to Decimal without binary float drift.

    Floats go through their shortest repr, so 994.95 becomes
    Decimal('994.95') rather than Decimal('994.950000000000045474...').

    Raises:
        InvalidInputError: If the value is not a finite number
    """
    if isinstance(amount, bool):
        raise InvalidInputError(f"amount must be a number, got {amount!r}")

    if isinstance(amount, Decimal):
        value = amount
    elif isinstance(amount, int):
        value = Decimal(amount)
    elif isinstance(amount, float):
        value = Decimal(repr(amount))
    elif isinstance(amount, str):
        try:
            value = Decimal(amount.strip())
        except InvalidOperation:
            raise InvalidInputError(f"amount must be a number, got {amount!r}")
    else:
        raise InvalidInputError(f"amount must be a number, got {type(amount).__name__}")

    if not value.is_finite():
        raise InvalidInputError(f"amount must be finite, got {amount!r}")
    return value


@dataclass(frozen=True)
class Precision:
    """
    Fixed number of decimal places used for every amount in a book.

    Minor units are the integer count of the smallest representable
    fraction, e.g. cents for ``Precision(2)``.
    """
    places: int = 8

    def __post_init__(self):
        if not isinstance(self.places, int) or isinstance(self.places, bool):
            raise ValueError("decimal places must be an integer")
        if not 0 <= self.places <= MAX_DECIMAL_PLACES:
            raise ValueError(f"decimal places must be between 0 and {MAX_DECIMAL_PLACES}")

    @property
    def quantum(self) -> Decimal:
        """Smallest representable amount, e.g. Decimal('0.01')"""
        return Decimal(1).scaleb(-self.places)

    def quantize(self, amount: Number) -> Decimal:
        """
        Round an amount half away from zero to this precision

        Raises:
            InvalidInputError: If the amount has more digits than the context holds
        """
        value = coerce_decimal(amount)
        try:
            return value.quantize(self.quantum, context=_CONTEXT)
        except InvalidOperation:
            raise InvalidInputError(f"amount {amount!r} is too large for {self.places} decimal places")

    def to_minor_units(self, amount: Number) -> int:
        """Convert an amount to integer minor units"""
        try:
            return int(self.quantize(amount).scaleb(self.places, context=_CONTEXT))
        except InvalidOperation:
            raise InvalidInputError(f"amount {amount!r} is too large for {self.places} decimal places")

    def to_decimal(self, minor_units: int) -> Decimal:
        """Convert integer minor units back to a Decimal amount"""
        return Decimal(int(minor_units)).scaleb(-self.places, context=_CONTEXT)


def sum_minor_units(values: Iterable[int]) -> int:
    """Integer sum of minor unit values"""
    total = 0
    for value in values:
        total += int(value)
    return total
