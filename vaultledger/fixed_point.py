"""
fixed_point.py - Deterministic integer arithmetic for vault accounting

All vault amounts are integral Decimals in minimal units. Divisions are done
on Python integers so that floor and ceiling are exact regardless of the
Decimal context precision; every function states its rounding direction and
callers pick the one that favours the pool.

Key Formulas:
    mul_div(x, y, d)      = floor(x * y / d)        (ceil with round_up=True)
    bp(amount, bps)       = amount * bps / 10_000
    sub_bp(amount, bps)   = amount - bp(amount, bps)
    add_bp(amount, bps)   = amount + bp(amount, bps)
    rev_sub_bp(net, bps)  = gross such that sub_bp(gross, bps) >= net
"""

from __future__ import annotations
from decimal import Decimal
from typing import Union

from .core import InvalidAmount


# Basis points in one unit (100%).
BP_BASIS = 10_000

# Seconds in a Gregorian year, used to pro-rate management fees.
SECONDS_PER_YEAR = 31_556_952

ZERO = Decimal("0")
ONE = Decimal("1")

Number = Union[Decimal, int, str]


def to_amount(value: Number, what: str = "amount") -> Decimal:
    """
    Convert a user-supplied value to a non-negative integral Decimal.

    Raises:
        InvalidAmount: If the value is negative, fractional or not a number.
    """
    if isinstance(value, bool):
        raise InvalidAmount(f"{what} must be a number, got {value!r}")
    if isinstance(value, float):
        value = str(value)
    try:
        amount = value if isinstance(value, Decimal) else Decimal(value)
    except (ArithmeticError, ValueError, TypeError) as e:
        raise InvalidAmount(f"{what} must be a number, got {value!r}") from e
    if not amount.is_finite():
        raise InvalidAmount(f"{what} must be finite, got {amount}")
    if amount < 0:
        raise InvalidAmount(f"{what} must be non-negative, got {amount}")
    if amount != amount.to_integral_value():
        raise InvalidAmount(f"{what} must be a whole number of minimal units, got {amount}")
    return Decimal(int(amount))


def mul_div(x: Decimal, y: Decimal, d: Decimal, round_up: bool = False) -> Decimal:
    """
    Compute x * y / d on exact integers.

    Args:
        x, y: Integral factors
        d: Integral, positive divisor
        round_up: Round toward +infinity instead of toward zero

    Raises:
        ZeroDivisionError: If d is zero
    """
    numerator = int(x) * int(y)
    divisor = int(d)
    if divisor == 0:
        raise ZeroDivisionError("mul_div by zero")
    if round_up:
        return Decimal(-(-numerator // divisor))
    return Decimal(numerator // divisor)


def bp(amount: Decimal, bps: int, round_up: bool = False) -> Decimal:
    """Basis-point share of an amount: amount * bps / 10_000."""
    return mul_div(amount, Decimal(bps), Decimal(BP_BASIS), round_up=round_up)


def sub_bp(amount: Decimal, bps: int) -> Decimal:
    """Amount less its basis-point cut, the cut rounded up."""
    return amount - bp(amount, bps, round_up=True)


def add_bp(amount: Decimal, bps: int) -> Decimal:
    """Amount plus its basis-point surcharge, the surcharge rounded up."""
    return amount + bp(amount, bps, round_up=True)


def rev_sub_bp(net: Decimal, bps: int) -> Decimal:
    """
    Smallest gross amount whose sub_bp() is at least net.

    Used by mint(): the caller asks for shares worth `net` assets and must pay
    the entry fee on top.
    """
    if bps >= BP_BASIS:
        raise InvalidAmount(f"fee of {bps} bps leaves nothing to convert")
    gross = mul_div(net, Decimal(BP_BASIS), Decimal(BP_BASIS - bps), round_up=True)
    while sub_bp(gross, bps) < net:
        gross += ONE
    return gross


def sub_floor(a: Decimal, b: Decimal) -> Decimal:
    """a - b, floored at zero."""
    return a - b if a > b else ZERO


def clamp(value: Decimal, low: Decimal, high: Decimal) -> Decimal:
    """Constrain value to [low, high]."""
    return max(low, min(value, high))


def scale(decimals: int) -> Decimal:
    """10 ** decimals as an integral Decimal (weiPerAsset / weiPerShare)."""
    return Decimal(10 ** decimals)
