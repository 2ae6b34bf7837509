from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_CEILING, ROUND_HALF_UP
from typing import Any


CREDIT_PRECISION = Decimal("0.001")
ZERO = Decimal("0.000")


def to_credits(value: Any) -> Decimal:
    """Normalise an amount to a credit Decimal with three decimal places.

    Accepts ints, floats, Decimals and strings (a comma is read as the decimal
    separator). Anything unparsable raises ``ValueError`` so a bad price never
    silently becomes zero.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid credit amount: {value!r}")
    if isinstance(value, Decimal):
        raw = value
    elif isinstance(value, (int, float)):
        raw = Decimal(str(value))
    elif isinstance(value, str):
        text = value.strip().replace(",", ".")
        if not text:
            raise ValueError("empty credit amount")
        try:
            raw = Decimal(text)
        except InvalidOperation as exc:
            raise ValueError(f"invalid credit amount: {value!r}") from exc
    else:
        raise ValueError(f"invalid credit amount: {value!r}")
    if not raw.is_finite():
        raise ValueError(f"invalid credit amount: {value!r}")
    return raw.quantize(CREDIT_PRECISION, rounding=ROUND_HALF_UP)


def to_non_negative_credits(value: Any) -> Decimal:
    amount = to_credits(value)
    if amount < 0:
        raise ValueError(f"credit amount must be >= 0, got {amount}")
    return amount


def round_up_credits(value: Decimal) -> Decimal:
    # Discounted prices never round in the actor's favour below precision.
    return value.quantize(CREDIT_PRECISION, rounding=ROUND_CEILING)


def credits_to_display(value: Any) -> str:
    text = format(to_credits(value), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"
