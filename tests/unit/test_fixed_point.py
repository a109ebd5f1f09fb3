"""
test_fixed_point.py - Unit tests for integer fixed-point helpers

Tests:
- to_amount validation
- mul_div rounding directions
- Basis-point helpers (bp, sub_bp, add_bp, rev_sub_bp)
- sub_floor, clamp, scale
"""

import pytest
from decimal import Decimal
from hypothesis import given, settings
from hypothesis import strategies as st

from vaultledger import InvalidAmount
from vaultledger.fixed_point import (
    BP_BASIS, to_amount, mul_div, bp, sub_bp, add_bp, rev_sub_bp,
    sub_floor, clamp, scale,
)


class TestToAmount:
    """Tests for user amount normalization."""

    def test_accepts_int_str_and_decimal(self):
        assert to_amount(5) == Decimal("5")
        assert to_amount("1000000") == Decimal("1000000")
        assert to_amount(Decimal("42")) == Decimal("42")

    def test_integral_decimal_is_normalized(self):
        amount = to_amount(Decimal("1100000.0"))
        assert amount == Decimal("1100000")
        assert str(amount) == "1100000"

    @pytest.mark.parametrize("value", [-1, "-5", Decimal("-0.5")])
    def test_rejects_negative(self, value):
        with pytest.raises(InvalidAmount):
            to_amount(value)

    @pytest.mark.parametrize("value", [Decimal("1.5"), "0.1", 2.5])
    def test_rejects_fractional(self, value):
        with pytest.raises(InvalidAmount):
            to_amount(value)

    @pytest.mark.parametrize("value", [True, "abc", None, Decimal("NaN"), Decimal("Infinity")])
    def test_rejects_non_numbers(self, value):
        with pytest.raises(InvalidAmount):
            to_amount(value)

    def test_invalid_amount_is_value_error(self):
        with pytest.raises(ValueError):
            to_amount(-1)


class TestMulDiv:
    """Tests for exact x * y / d."""

    def test_floor_by_default(self):
        assert mul_div(Decimal(10), Decimal(1), Decimal(3)) == Decimal(3)

    def test_round_up(self):
        assert mul_div(Decimal(10), Decimal(1), Decimal(3), round_up=True) == Decimal(4)

    def test_exact_division_same_both_ways(self):
        assert mul_div(Decimal(12), Decimal(5), Decimal(4)) == Decimal(15)
        assert mul_div(Decimal(12), Decimal(5), Decimal(4), round_up=True) == Decimal(15)

    def test_large_operands_exceed_context_precision(self):
        x = Decimal(10 ** 30 + 7)
        y = Decimal(10 ** 30 + 11)
        assert mul_div(x, y, Decimal(10 ** 30)) == Decimal((10 ** 30 + 7) * (10 ** 30 + 11) // 10 ** 30)

    def test_zero_divisor(self):
        with pytest.raises(ZeroDivisionError):
            mul_div(Decimal(1), Decimal(1), Decimal(0))

    @given(
        st.integers(min_value=0, max_value=10 ** 24),
        st.integers(min_value=0, max_value=10 ** 24),
        st.integers(min_value=1, max_value=10 ** 24),
    )
    @settings(max_examples=50)
    def test_floor_and_ceil_bracket_true_quotient(self, x, y, d):
        """
        PROPERTY: floor * d <= x * y <= ceil * d and ceil - floor <= 1.
        """
        lo = mul_div(Decimal(x), Decimal(y), Decimal(d))
        hi = mul_div(Decimal(x), Decimal(y), Decimal(d), round_up=True)
        assert int(lo) * d <= x * y <= int(hi) * d
        assert hi - lo in (Decimal(0), Decimal(1))


class TestBasisPoints:
    """Tests for basis-point helpers."""

    def test_bp(self):
        assert bp(Decimal(1_000_000), 100) == Decimal(10_000)
        assert bp(Decimal(199), 100) == Decimal(1)
        assert bp(Decimal(199), 100, round_up=True) == Decimal(2)

    def test_sub_bp_rounds_fee_up(self):
        assert sub_bp(Decimal(199), 100) == Decimal(197)

    def test_add_bp_rounds_surcharge_up(self):
        assert add_bp(Decimal(199), 100) == Decimal(201)

    def test_rev_sub_bp_inverts_sub_bp(self):
        assert rev_sub_bp(Decimal(99_000_000), 100) == Decimal(100_000_000)

    def test_rev_sub_bp_zero_fee_is_identity(self):
        assert rev_sub_bp(Decimal(12345), 0) == Decimal(12345)

    def test_rev_sub_bp_full_fee_rejected(self):
        with pytest.raises(InvalidAmount):
            rev_sub_bp(Decimal(1), BP_BASIS)

    @given(
        st.integers(min_value=1, max_value=10 ** 18),
        st.integers(min_value=0, max_value=5_000),
    )
    @settings(max_examples=50)
    def test_rev_sub_bp_is_smallest_sufficient_gross(self, net, bps):
        """
        PROPERTY: sub_bp(rev_sub_bp(n)) >= n and sub_bp(rev_sub_bp(n) - 1) < n.
        """
        gross = rev_sub_bp(Decimal(net), bps)
        assert sub_bp(gross, bps) >= net
        assert sub_bp(gross - 1, bps) < net


class TestSmallHelpers:

    def test_sub_floor(self):
        assert sub_floor(Decimal(5), Decimal(3)) == Decimal(2)
        assert sub_floor(Decimal(3), Decimal(5)) == Decimal(0)

    def test_clamp(self):
        assert clamp(Decimal(15), Decimal(0), Decimal(10)) == Decimal(10)
        assert clamp(Decimal(-1), Decimal(0), Decimal(10)) == Decimal(0)
        assert clamp(Decimal(7), Decimal(0), Decimal(10)) == Decimal(7)

    def test_scale(self):
        assert scale(6) == Decimal(1_000_000)
        assert scale(0) == Decimal(1)
