"""
Rounding Conformance Tests

INVARIANT: Every conversion rounds in favour of the pool.

    shares_to_assets(assets_to_shares(a)) ≤ a
    deposit(mint_cost(s)) ≥ s
    redeem(deposit(a)) ≤ a

and fee collection never pushes the share price below the high-water mark:

    price_after_collection ≥ checkpoint.share_price (before collection)

No sequence of entries and exits can extract more than was put in, and fee
shares are worth no more than the profit they are charged on.
"""

from hypothesis import given, settings
from hypothesis import strategies as st
from datetime import datetime
from decimal import Decimal

from vaultledger import Fees, create_vault_unit, load_pool
from vaultledger.pool.conversion import (
    PoolBalances, assets_to_shares, shares_to_assets, calculate_deposit_shares, calculate_mint_assets,
)

from tests.conftest import usdc, after, donate, make_ledger, make_vault, seed
from tests.fake_view import FakeView


T0 = datetime(2025, 1, 1)

amounts = st.integers(min_value=1, max_value=10 ** 15).map(Decimal)
prices = st.integers(min_value=1, max_value=10 ** 9).map(Decimal)


def _pool(asset_decimals=6, share_decimals=6):
    unit = create_vault_unit("vX", "X Vault", "X", asset_decimals, share_decimals=share_decimals)
    return load_pool(FakeView({}, {"vX": unit.state}), "vX")


class TestConversionRoundingProperties:
    """Property-based rounding tests on the pure conversions."""

    @given(assets=amounts, price=prices, share_decimals=st.integers(min_value=0, max_value=18))
    @settings(max_examples=50)
    def test_assets_round_trip_never_gains(self, assets, price, share_decimals):
        """
        PROPERTY: Converting assets to shares and back never yields more assets.
        """
        terms, _ = _pool(share_decimals=share_decimals)
        shares = assets_to_shares(terms, assets, price)
        assert shares_to_assets(terms, shares, price) <= assets

    @given(shares=amounts, price=prices)
    @settings(max_examples=50)
    def test_shares_round_trip_never_gains(self, shares, price):
        """
        PROPERTY: Converting shares to assets and back never yields more shares.
        """
        terms, _ = _pool()
        assets = shares_to_assets(terms, shares, price)
        assert assets_to_shares(terms, assets, price) <= shares

    @given(assets=amounts, price=prices)
    @settings(max_examples=50)
    def test_round_up_brackets_floor(self, assets, price):
        """
        PROPERTY: The rounded-up conversion is the floor or one more.
        """
        terms, _ = _pool()
        low = assets_to_shares(terms, assets, price)
        high = assets_to_shares(terms, assets, price, round_up=True)
        assert low <= high <= low + 1

    @given(
        shares=st.integers(min_value=1, max_value=10 ** 12).map(Decimal),
        idle=st.integers(min_value=1, max_value=10 ** 14).map(Decimal),
        supply=st.integers(min_value=1, max_value=10 ** 14).map(Decimal),
    )
    @settings(max_examples=50)
    def test_mint_cost_covers_shares(self, shares, idle, supply):
        """
        PROPERTY: Depositing the quoted mint cost yields at least the shares minted.
        """
        terms, state = _pool()
        balances = PoolBalances(idle=idle, invested=Decimal(0), supply=supply, now=T0)
        cost = calculate_mint_assets(terms, state, balances, shares)
        assert calculate_deposit_shares(terms, state, balances, cost) >= shares


class TestVaultRoundingProperties:
    """Property-based rounding tests through the Vault."""

    @given(
        gift=st.integers(min_value=0, max_value=10 ** 8),
        amount=st.integers(min_value=10, max_value=10 ** 9),
    )
    @settings(max_examples=50, deadline=None)
    def test_deposit_then_redeem_never_gains(self, gift, amount):
        """
        PROPERTY: Redeeming freshly minted shares returns at most the deposit.
        """
        ledger = make_ledger()
        vault = make_vault(ledger)
        seed(vault)
        if gift:
            donate(ledger, Decimal(gift))
        shares = vault.deposit(Decimal(amount), "alice")
        if shares > 0:
            assert vault.redeem(shares, "alice", "alice") <= Decimal(amount)

    @given(
        gain=st.integers(min_value=0, max_value=500),
        perf=st.integers(min_value=0, max_value=5_000),
        mgmt=st.integers(min_value=0, max_value=500),
        days=st.integers(min_value=0, max_value=720),
    )
    @settings(max_examples=50, deadline=None)
    def test_fee_collection_respects_high_water_mark(self, gain, perf, mgmt, days):
        """
        PROPERTY: After collection the share price is at or above the previous
        checkpoint price, and fee shares are worth no more than the profit.
        """
        ledger = make_ledger()
        vault = make_vault(ledger, fees=Fees(perf=perf, mgmt=mgmt))
        seed(vault)
        vault.deposit(usdc(400), "alice")
        after(ledger, days=days)
        if gain:
            donate(ledger, usdc(gain))

        high_water = vault.state.checkpoint.share_price
        quote = vault.preview_collect_fees()
        minted = vault.collect_fees("manager")

        assert vault.share_price() >= high_water
        assert vault.state.checkpoint.share_price >= high_water
        assert vault.convert_to_assets(minted) <= quote.profit
        if gain == 0:
            assert minted == Decimal(0)
