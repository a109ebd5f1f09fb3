"""
fees.py - Fee accrual and profit linearization

Pure calculation functions; no LedgerView access. The transaction that
mints fee shares is built in operations.compute_fee_collection().

Key Formulas:
    profit      = supply * (price - checkpoint.share_price) / weiPerShare   (in assets)
    perf        = profit * fees.perf / 10_000
    mgmt        = accounted_assets * fees.mgmt * elapsed / (10_000 * SECONDS_PER_YEAR)
    perf + mgmt <= profit
    fee_shares  = fee * supply / (accounted_assets - fee)
    unrealized  = accounted_profit * (cooldown - elapsed_since_harvest) / cooldown

Minting fee_shares for an amount `fee` leaves every other holder with
exactly (accounted_assets - fee) / supply per share, so a collection never
takes the share price below the previous checkpoint price.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from ..fixed_point import BP_BASIS, SECONDS_PER_YEAR, ZERO, bp, mul_div
from .state import Checkpoint, Fees, PoolTerms


@dataclass(frozen=True, slots=True)
class FeeQuote:
    """Fees owed since the last checkpoint, in asset minimal units."""
    perf: Decimal
    mgmt: Decimal
    profit: Decimal

    @property
    def total(self) -> Decimal:
        return self.perf + self.mgmt

    @property
    def is_zero(self) -> bool:
        return self.total == 0


NO_FEES = FeeQuote(perf=ZERO, mgmt=ZERO, profit=ZERO)


def elapsed_seconds(since: Optional[datetime], now: datetime) -> int:
    """Whole seconds from since to now (0 when since is unset or in the future)."""
    if since is None or now <= since:
        return 0
    return int((now - since).total_seconds())


def calculate_unrealized_profit(checkpoint: Checkpoint, cooldown: int, now: datetime) -> Decimal:
    """
    Part of the last harvested profit not yet recognized in the share price.

    Rounded up so the pool never recognizes more than has vested.
    """
    if checkpoint.accounted_profit <= 0 or checkpoint.harvest is None or cooldown <= 0:
        return ZERO
    elapsed = elapsed_seconds(checkpoint.harvest, now)
    if elapsed >= cooldown:
        return ZERO
    return mul_div(checkpoint.accounted_profit, Decimal(cooldown - elapsed), Decimal(cooldown), round_up=True)


def calculate_fees(
    terms: PoolTerms,
    accounted_assets: Decimal,
    share_price: Decimal,
    supply: Decimal,
    fees: Fees,
    checkpoint: Checkpoint,
    now: datetime,
) -> FeeQuote:
    """
    Performance and management fees owed since the last collection.

    No profit (price at or below the checkpoint price) means no fees at all,
    including no management fee.

    Args:
        terms: Pool decimals
        accounted_assets: Assets backing the non-claimable supply
        share_price: Current share price (weiPerShare scale)
        supply: Accounted (non-claimable) share supply
        fees: Current fee rates
        checkpoint: Last fee checkpoint
        now: Current time

    Returns:
        FeeQuote with perf + mgmt capped at profit
    """
    if supply <= 0 or share_price <= checkpoint.share_price:
        return NO_FEES

    profit = mul_div(
        supply,
        (share_price - checkpoint.share_price) * terms.wei_per_asset,
        terms.wei_per_share * terms.wei_per_share,
    )
    if profit <= 0:
        return NO_FEES

    perf = bp(profit, fees.perf)
    elapsed = elapsed_seconds(checkpoint.fee_collection, now)
    mgmt = mul_div(
        accounted_assets,
        Decimal(fees.mgmt * elapsed),
        Decimal(BP_BASIS * SECONDS_PER_YEAR),
    )
    if perf + mgmt > profit:
        mgmt = profit - perf
    return FeeQuote(perf=perf, mgmt=mgmt, profit=profit)


def calculate_fee_shares(fee: Decimal, accounted_assets: Decimal, supply: Decimal) -> Decimal:
    """Shares to mint so that their holder owns exactly `fee` of the pool's value."""
    if fee <= 0 or supply <= 0 or fee >= accounted_assets:
        return ZERO
    return mul_div(fee, supply, accounted_assets - fee)
