from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Annotated

from pydantic import PlainSerializer

CENT = Decimal("0.01")
ZERO = Decimal("0")


def to_decimal(value: Any) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    # str() first so floats like 0.1 keep their printed value
    return Decimal(str(value))


def quantize(value: Any) -> Decimal:
    """Round a money value to cents (half-up)."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def amounts_match(expected: Any, received: Any, tolerance: Any = CENT) -> bool:
    return abs(to_decimal(expected) - to_decimal(received)) <= to_decimal(tolerance)


# Decimal in Python, plain number in JSON responses
Money = Annotated[
    Decimal, PlainSerializer(lambda v: float(v), return_type=float, when_used="json")
]
