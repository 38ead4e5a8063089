# app/escrow/money.py
"""
Fixed-point helpers. Amounts are ints in minor units (cents); percents and
multipliers are Decimals. Floats are refused so nothing binary-rounded ever
reaches a balance.
"""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation, localcontext
from typing import Any, Mapping

from app.escrow.errors import ValidationError

HUNDRED = Decimal(100)
_ONE = Decimal(1)
# 10^12 cents * a percent with a few decimals fits easily in 40 digits.
_PRECISION = 40


def to_decimal(value: Any, *, field: str = "value") -> Decimal:
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(f"{field} must be an int, str or Decimal, not {type(value).__name__}")
    if isinstance(value, Decimal):
        d = value
    else:
        try:
            d = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError(f"{field} is not a number: {value!r}")
    if not d.is_finite():
        raise ValidationError(f"{field} must be finite")
    return d


def require_cents(value: Any, *, field: str = "amount_cents", allow_zero: bool = False) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer number of minor units")
    if value < 0 or (value == 0 and not allow_zero):
        raise ValidationError(f"{field} must be positive")
    return value


def round_half_up(value: Decimal) -> int:
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return int(value.quantize(_ONE, rounding=ROUND_HALF_UP))


def percent_of(amount_cents: int, percent: Decimal) -> int:
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return round_half_up(Decimal(amount_cents) * percent / HUNDRED)


def scale(amount_cents: int, multiplier: Decimal) -> int:
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return round_half_up(Decimal(amount_cents) * multiplier)


def split(gross_cents: int, shares: Mapping[str, Decimal], *, residual: str) -> dict[str, int]:
    """
    Round every share half-up, then hand whatever is left of the gross to the
    residual party. The result always sums to gross_cents; the residual may be
    negative when the rounded shares overshoot, callers decide whether that is
    legal.
    """
    if residual in shares:
        raise ValueError(f"residual party {residual!r} cannot also have a share")

    parts = {name: percent_of(gross_cents, pct) for name, pct in shares.items()}
    parts[residual] = gross_cents - sum(parts.values())
    return parts


def format_cents(amount_cents: int) -> str:
    sign = "-" if amount_cents < 0 else ""
    whole, frac = divmod(abs(int(amount_cents)), 100)
    return f"{sign}{whole}.{frac:02d}"
