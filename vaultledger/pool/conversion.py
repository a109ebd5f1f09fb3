"""
conversion.py - Share price and share/asset conversion

Pure calculation functions over (PoolTerms, PoolState, PoolBalances).

Key Formulas:
    total_assets      = idle + invested + flash.outstanding
                        - claimable_asset_fees - flash.claimable_fees
    accounted_assets  = total_assets - reserved_for_claims - unrealized_profit
    accounted_supply  = supply - total_claimable
    share_price       = accounted_assets * weiPerShare**2 / (accounted_supply * weiPerAsset)
    to_shares(a, p)   = a * weiPerShare**2 / (p * weiPerAsset)
    to_assets(s, p)   = s * p * weiPerAsset / weiPerShare**2

Prices are floored; conversions floor unless the caller asks for the
rounding that favours the pool in its direction (e.g. shares burned for a
withdrawal are rounded up).
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from ..core import CapacityExceeded, LedgerView, SYSTEM_WALLET
from ..fixed_point import ZERO, mul_div, sub_floor
from .fees import calculate_unrealized_profit
from .state import PoolState, PoolTerms


@dataclass(frozen=True, slots=True)
class PoolBalances:
    """
    Balances a calculation needs that are not part of the pool state.

    idle: asset held by the vault wallet
    invested: value reported by the strategy
    supply: shares held outside the system wallet
    """
    idle: Decimal
    invested: Decimal
    supply: Decimal
    now: datetime


def read_balances(view: LedgerView, terms: PoolTerms, invested: Decimal = ZERO) -> PoolBalances:
    """Collect idle assets and share supply from a LedgerView."""
    supply = sum(
        (qty for wallet, qty in view.get_positions(terms.symbol).items() if wallet != SYSTEM_WALLET),
        ZERO,
    )
    return PoolBalances(
        idle=view.get_balance(terms.vault_wallet, terms.asset),
        invested=invested,
        supply=supply,
        now=view.current_time,
    )


# ============================================================================
# POOL AGGREGATES
# ============================================================================

def calculate_fee_reserve(state: PoolState) -> Decimal:
    """Idle assets owed to the fee collector."""
    return state.claimable_asset_fees + state.flash.claimable_fees


def calculate_total_assets(state: PoolState, balances: PoolBalances) -> Decimal:
    """Assets under management, net of fees owed. Flash principal out on loan still counts."""
    gross = balances.idle + balances.invested + state.flash.outstanding
    return sub_floor(gross, calculate_fee_reserve(state))


def calculate_available(state: PoolState, balances: PoolBalances) -> Decimal:
    """Idle assets not owed as fees nor reserved for claimable redemptions."""
    return sub_floor(
        balances.idle,
        calculate_fee_reserve(state) + state.requests.total_claimable_assets,
    )


def calculate_accounted_assets(state: PoolState, balances: PoolBalances) -> Decimal:
    """Assets backing the accounted supply."""
    unrealized = calculate_unrealized_profit(state.checkpoint, state.profit_cooldown, balances.now)
    return sub_floor(
        calculate_total_assets(state, balances),
        state.requests.total_claimable_assets + unrealized,
    )


def calculate_accounted_supply(state: PoolState, balances: PoolBalances) -> Decimal:
    """Shares not yet set aside for claimable redemptions."""
    return sub_floor(balances.supply, state.requests.total_claimable)


def calculate_rounding_dust(terms: PoolTerms, state: PoolState, balances: PoolBalances) -> Decimal:
    """
    Accounted assets that price and reservation flooring can leave behind.

    One price unit over the whole supply, plus one minimal unit per request.
    """
    price_error = mul_div(
        balances.supply, terms.wei_per_asset, terms.wei_per_share * terms.wei_per_share, round_up=True,
    )
    return price_error + len(state.requests.by_owner)


def calculate_unowned_assets(terms: PoolTerms, state: PoolState, balances: PoolBalances) -> Decimal:
    """
    Accounted assets beyond rounding dust while no share is accounted.

    Positive when every outstanding share is claimable and value arrived
    afterwards; such value belongs to no share, so new shares cannot be priced.
    Before the first share exists the seeder takes whatever the vault holds.
    """
    if balances.supply == 0 or calculate_accounted_supply(state, balances) > 0:
        return ZERO
    return sub_floor(
        calculate_accounted_assets(state, balances),
        calculate_rounding_dust(terms, state, balances),
    )


def _require_bootstrap(terms: PoolTerms, state: PoolState, balances: PoolBalances) -> None:
    unowned = calculate_unowned_assets(terms, state, balances)
    if unowned > 0:
        raise CapacityExceeded(
            f"{terms.symbol}: {unowned} accounted assets back no accounted shares, cannot price new shares"
        )


def calculate_share_price(terms: PoolTerms, state: PoolState, balances: PoolBalances) -> Decimal:
    """
    Assets per share scaled by weiPerShare; weiPerShare (1:1) when nothing is accounted.

    Example:
        # 110 USDC backing 100 shares, both 6 decimals
        calculate_share_price(terms, state, balances)  # Decimal("1100000")
    """
    supply = calculate_accounted_supply(state, balances)
    if supply == 0:
        return terms.wei_per_share
    return mul_div(
        calculate_accounted_assets(state, balances),
        terms.wei_per_share * terms.wei_per_share,
        supply * terms.wei_per_asset,
    )


# ============================================================================
# CONVERSIONS
# ============================================================================

def assets_to_shares(terms: PoolTerms, assets: Decimal, price: Decimal, round_up: bool = False) -> Decimal:
    """Shares worth `assets` at `price`."""
    if price <= 0:
        raise CapacityExceeded(f"{terms.symbol}: share price is zero, pool has no accounted assets")
    return mul_div(assets, terms.wei_per_share * terms.wei_per_share, price * terms.wei_per_asset, round_up)


def shares_to_assets(terms: PoolTerms, shares: Decimal, price: Decimal, round_up: bool = False) -> Decimal:
    """Assets redeemable for `shares` at `price`."""
    return mul_div(shares, price * terms.wei_per_asset, terms.wei_per_share * terms.wei_per_share, round_up)


def calculate_deposit_shares(
    terms: PoolTerms, state: PoolState, balances: PoolBalances, net_assets: Decimal
) -> Decimal:
    """
    Shares minted for `net_assets` (after entry fee), floored.

    Proportional to the accounted supply; at the 1:1 bootstrap price when
    nothing is accounted yet.

    Raises:
        CapacityExceeded: No share is accounted but accounted assets exceed
                          rounding dust
    """
    supply = calculate_accounted_supply(state, balances)
    if supply == 0:
        _require_bootstrap(terms, state, balances)
        return assets_to_shares(terms, net_assets, terms.wei_per_share)
    assets = calculate_accounted_assets(state, balances)
    if assets == 0:
        raise CapacityExceeded(f"{terms.symbol}: pool has shares but no accounted assets")
    return mul_div(net_assets, supply, assets)


def calculate_mint_assets(
    terms: PoolTerms, state: PoolState, balances: PoolBalances, shares: Decimal
) -> Decimal:
    """Net assets (before entry fee) needed to mint `shares`, rounded up."""
    supply = calculate_accounted_supply(state, balances)
    if supply == 0:
        _require_bootstrap(terms, state, balances)
        return shares_to_assets(terms, shares, terms.wei_per_share, round_up=True)
    assets = calculate_accounted_assets(state, balances)
    if assets == 0:
        raise CapacityExceeded(f"{terms.symbol}: pool has shares but no accounted assets")
    return mul_div(shares, assets, supply, round_up=True)
