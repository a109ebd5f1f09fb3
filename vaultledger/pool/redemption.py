"""
redemption.py - Asynchronous redemption queue

Pure functions over the RequestAggregate. A request moves through

    none -> pending -> claimable -> claimed (-> none)

and can be cancelled from pending or claimable. A request becomes claimable
when the pool marks a liquidity event at or after the moment the request
reached its lock age:

    request.timestamp + lock_duration <= liquidity event time

Liquidity events (liquidate, harvest) flag which requests are claimable
and reserve each one's value at its request price; the reserved shares and
assets are excluded from the share price so that only holders who stay
invested are exposed to later price moves.

Key Formulas:
    vwap(old, new_total, p_now) = (p_now * (new_total - old.shares) + old.price * old.shares) / new_total
    reservation(req, s)         = s * req.price   (in assets)
    claim price                 = min(req.price, p_now)
    cancel burn                 = ceil(req.shares * (p_now - req.price) / p_now)   when p_now > req.price
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from ..core import InvalidAmount, StaleOrInvalidRequest
from ..fixed_point import ZERO, bp, mul_div, sub_floor
from .conversion import (
    PoolBalances, assets_to_shares, calculate_share_price, shares_to_assets,
)
from .state import PoolState, PoolTerms, RedemptionRequest, RequestAggregate


# ============================================================================
# CLAIMABILITY
# ============================================================================

def lock_expiry(request: RedemptionRequest, lock_duration: int) -> datetime:
    """Moment the request reaches its lock age."""
    return request.timestamp + timedelta(seconds=lock_duration)


def is_claimable(request: Optional[RedemptionRequest]) -> bool:
    """True if a liquidity event flagged the request after its lock expired."""
    return request is not None and request.claimable and request.shares > 0


def calculate_claimable_shares(state: PoolState, owner: str) -> Decimal:
    """Shares of owner's request that can be claimed at the protected price."""
    request = state.request_of(owner)
    if not is_claimable(request):
        return ZERO
    return min(request.shares, state.requests.total_claimable)


def calculate_reservation(terms: PoolTerms, request: RedemptionRequest, shares: Decimal) -> Decimal:
    """Assets reserved for `shares` of a claimable request (at request price, floored)."""
    return shares_to_assets(terms, shares, request.share_price)


def calculate_request_price(
    existing: Optional[RedemptionRequest], new_total: Decimal, current_price: Decimal
) -> Decimal:
    """
    Price of a request after it is created or increased to new_total shares.

    Example:
        # 100 shares requested at 1.00, increased to 150 at 1.30
        calculate_request_price(req, Decimal(150), Decimal("1300000"))  # 1.10 scaled
    """
    if existing is None or existing.shares <= 0:
        return current_price
    added = new_total - existing.shares
    return mul_div(
        current_price * added + existing.share_price * existing.shares,
        Decimal(1),
        new_total,
    )


def calculate_cancel_cost(request: RedemptionRequest, current_price: Decimal) -> Decimal:
    """
    Shares forfeited when cancelling: the value gained since the request, at today's price.

    Zero when the price did not rise above the request price.
    """
    if current_price <= request.share_price:
        return ZERO
    return mul_div(request.shares, current_price - request.share_price, current_price, round_up=True)


# ============================================================================
# AGGREGATE UPDATES
# ============================================================================

def place_request(
    requests: RequestAggregate,
    owner: str,
    operator: str,
    shares: Decimal,
    current_price: Decimal,
    now: datetime,
    terms: PoolTerms,
) -> RequestAggregate:
    """
    Create owner's request or increase it to `shares` in total.

    An increase restarts the lock period and leaves the claimable set; the
    new price is the share-weighted average of the old price and the
    current one.

    Raises:
        InvalidAmount: If shares is zero or not above the existing request
    """
    if shares <= 0:
        raise InvalidAmount("cannot request redemption of zero shares")
    existing = requests.by_owner.get(owner)
    if existing is not None and shares <= existing.shares:
        raise InvalidAmount(
            f"request of {owner} is already {existing.shares} shares; "
            f"cancel before requesting {shares}"
        )
    price = calculate_request_price(existing, shares, current_price)
    if existing is not None:
        requests = release_request(terms, requests, owner, existing.shares)

    request = RedemptionRequest(
        shares=shares,
        share_price=price,
        timestamp=now,
        operator=operator,
        request_id=requests.next_request_id,
    )
    by_owner = dict(requests.by_owner)
    by_owner[owner] = request
    return replace(
        requests,
        total_pending=requests.total_pending + shares,
        next_request_id=requests.next_request_id + 1,
        by_owner=by_owner,
    )


def release_request(
    terms: PoolTerms,
    requests: RequestAggregate,
    owner: str,
    shares: Decimal,
) -> RequestAggregate:
    """
    Remove `shares` of owner's request from the queue (claim, shrink or cancel).

    Claimable shares also release their reserved assets. The request is
    deleted when nothing is left of it.

    Raises:
        StaleOrInvalidRequest: If owner has no request
    """
    request = requests.by_owner.get(owner)
    if request is None:
        raise StaleOrInvalidRequest(f"no redemption request for {owner}")
    shares = min(shares, request.shares)
    if shares <= 0:
        return requests

    total_claimable = requests.total_claimable
    reserved = requests.total_claimable_assets
    if is_claimable(request):
        released = min(shares, total_claimable)
        total_claimable -= released
        reserved = sub_floor(reserved, calculate_reservation(terms, request, released))
        if total_claimable == 0:
            reserved = ZERO

    by_owner = dict(requests.by_owner)
    remaining = request.shares - shares
    if remaining > 0:
        by_owner[owner] = replace(request, shares=remaining)
    else:
        del by_owner[owner]

    return replace(
        requests,
        total_pending=sub_floor(requests.total_pending, shares),
        total_claimable=total_claimable,
        total_claimable_assets=reserved,
        by_owner=by_owner,
    )


def mark_liquidity(
    terms: PoolTerms,
    requests: RequestAggregate,
    now: datetime,
    liquidity: Optional[Decimal] = None,
) -> RequestAggregate:
    """
    Recompute the claimable set for a liquidity event at `now`.

    Requests already flagged stay claimable. Then, oldest request id first,
    every request whose lock has expired by `now` becomes claimable and has
    its value reserved at request price, as long as the reservations fit in
    `liquidity` (the idle assets not owed as fees; unlimited when None).
    The rest stay pending until a later event.
    """
    claimable = ZERO
    reserved = ZERO
    by_owner = {}
    for owner, request in requests.by_owner.items():
        if request.claimable:
            claimable += request.shares
            reserved += calculate_reservation(terms, request, request.shares)
            by_owner[owner] = request

    waiting = sorted(
        ((owner, r) for owner, r in requests.by_owner.items() if not r.claimable),
        key=lambda item: item[1].request_id,
    )
    for owner, request in waiting:
        cost = calculate_reservation(terms, request, request.shares)
        ready = (
            lock_expiry(request, requests.lock_duration) <= now
            and (liquidity is None or reserved + cost <= liquidity)
        )
        if ready:
            claimable += request.shares
            reserved += cost
        by_owner[owner] = replace(request, claimable=ready)
    return replace(
        requests,
        total_claimable=claimable,
        total_claimable_assets=reserved,
        by_owner=by_owner,
    )


# ============================================================================
# EXIT QUOTES
# ============================================================================

@dataclass(frozen=True, slots=True)
class ExitQuote:
    """
    Breakdown of a withdrawal or redemption.

    claimed_shares are priced at claim_price and release `released`
    reserved assets; the rest of `shares` is priced at the current price.
    """
    shares: Decimal
    gross: Decimal
    fee: Decimal
    claimed_shares: Decimal
    claim_price: Decimal
    share_price: Decimal
    released: Decimal

    @property
    def net(self) -> Decimal:
        return self.gross - self.fee


def calculate_exit(
    terms: PoolTerms,
    state: PoolState,
    balances: PoolBalances,
    owner: str,
    shares: Optional[Decimal] = None,
    assets: Optional[Decimal] = None,
) -> ExitQuote:
    """
    Price an exit given either the shares to burn or the gross assets wanted.

    Claimable request shares are used first, at min(request price, current
    price). At least one minimal share always remains outstanding: a burn of
    the whole supply is reduced by one unit and repriced by shares.

    Raises:
        InvalidAmount: If both or neither of shares/assets are given, or the
                       exit would burn nothing
    """
    if (shares is None) == (assets is None):
        raise InvalidAmount("exactly one of shares or assets must be given")

    price = calculate_share_price(terms, state, balances)
    request = state.request_of(owner)
    claimable = calculate_claimable_shares(state, owner)
    claim_price = min(request.share_price, price) if claimable > 0 else price

    if assets is not None:
        if assets <= 0:
            raise InvalidAmount("cannot withdraw zero assets")
        claim_value = shares_to_assets(terms, claimable, claim_price)
        if assets <= claim_value:
            shares = min(assets_to_shares(terms, assets, claim_price, round_up=True), claimable)
        else:
            shares = claimable + assets_to_shares(terms, assets - claim_value, price, round_up=True)
        gross = assets
        if shares >= balances.supply:
            assets = None

    if assets is None:
        if shares <= 0:
            raise InvalidAmount("cannot redeem zero shares")
        if shares >= balances.supply:
            shares = balances.supply - 1
        if shares <= 0:
            raise InvalidAmount("redemption would burn the last outstanding share")
        claimed = min(claimable, shares)
        gross = shares_to_assets(terms, claimed, claim_price) + shares_to_assets(terms, shares - claimed, price)
    else:
        claimed = min(claimable, shares)

    released = calculate_reservation(terms, request, claimed) if claimed > 0 else ZERO
    fee = ZERO if state.is_exempt(owner) else bp(gross, state.fees.exit, round_up=True)
    return ExitQuote(
        shares=shares,
        gross=gross,
        fee=min(fee, gross),
        claimed_shares=claimed,
        claim_price=claim_price,
        share_price=price,
        released=released,
    )
