"""
operations.py - Transaction builders for vault operations

Every function here reads the pool through a LedgerView, validates the
request and returns a PoolUpdate whose PendingTransaction carries:
    - moves of the asset and of the share unit (mints and burns go through
      SYSTEM_WALLET)
    - one UnitStateChange of the share unit, with the operation nonce bumped
      so that two identical requests still have distinct intent ids

Nothing is mutated here; the Vault executes the pending transactions.
Amounts passed in must already be integral minimal units (see
fixed_point.to_amount).

The `invested` argument is the strategy's reported value. It is not on the
ledger, so callers supply it alongside the view.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..core import (
    LedgerView, Move, PendingTransaction, TransactionOrigin, OriginType, UnitStateChange,
    InvalidAmount, CapacityExceeded, InsufficientFunds, Unauthorized, PoolPaused,
    StaleOrInvalidRequest,
    SYSTEM_WALLET, build_transaction,
)
from ..fixed_point import ZERO, bp, rev_sub_bp, sub_floor
from .conversion import (
    PoolBalances, assets_to_shares, calculate_accounted_assets, calculate_accounted_supply,
    calculate_available, calculate_deposit_shares, calculate_fee_reserve, calculate_mint_assets,
    calculate_share_price, calculate_total_assets, read_balances,
)
from .fees import calculate_fee_shares, calculate_fees, calculate_unrealized_profit
from .redemption import (
    ExitQuote, calculate_cancel_cost, calculate_exit, mark_liquidity, place_request,
    release_request,
)
from .state import (
    Duration, Fees, PoolState, PoolTerms, RescueRequest, load_pool, to_seconds, to_state_dict,
)


# ============================================================================
# RESULT TYPES
# ============================================================================

@dataclass(frozen=True, slots=True)
class PoolEvent:
    """A record of something the pool did, e.g. Deposit or FeeCollection."""
    name: str
    timestamp: datetime
    data: Mapping[str, Any] = field(default_factory=dict)

    def __getitem__(self, key: str) -> Any:
        return self.data[key]


@dataclass(frozen=True, slots=True)
class PoolUpdate:
    """
    Output of a transaction builder.

    Attributes:
        pending: Transaction to execute (may be empty for no-ops)
        result: The quantity the public operation returns (shares or assets)
        events: Events to publish once the transaction is applied
    """
    pending: PendingTransaction
    result: Decimal = ZERO
    events: Tuple[PoolEvent, ...] = ()


def _load(view: LedgerView, symbol: str, invested: Decimal) -> Tuple[PoolTerms, PoolState, PoolBalances]:
    terms, state = load_pool(view, symbol)
    return terms, state, read_balances(view, terms, invested)


def _update(
    view: LedgerView,
    terms: PoolTerms,
    new_state: PoolState,
    moves: List[Move],
    event_type: str,
    source_id: str,
    origin_type: OriginType = OriginType.USER_ACTION,
    result: Decimal = ZERO,
    events: Tuple[PoolEvent, ...] = (),
) -> PoolUpdate:
    """Wrap moves and the new pool state into a PoolUpdate."""
    old_state = view.get_unit_state(terms.symbol)
    state_changes = [UnitStateChange(terms.symbol, old_state, to_state_dict(terms, new_state.bump()))]
    origin = TransactionOrigin(origin_type, source_id, terms.symbol, event_type)
    pending = build_transaction(view, moves, state_changes, origin)
    return PoolUpdate(pending=pending, result=result, events=events)


def _noop(view: LedgerView) -> PoolUpdate:
    return PoolUpdate(pending=build_transaction(view, []))


def _contract_id(terms: PoolTerms, state: PoolState, what: str) -> str:
    return f"{terms.symbol}:{what}:{state.nonce}"


def _require_positive(amount: Decimal, what: str) -> None:
    if amount <= 0:
        raise InvalidAmount(f"{what} must be positive, got {amount}")


def _require_not_paused(terms: PoolTerms, state: PoolState) -> None:
    if state.paused:
        raise PoolPaused(f"{terms.symbol} is paused")


def _require_balance(view: LedgerView, wallet: str, unit: str, needed: Decimal) -> Decimal:
    balance = view.get_balance(wallet, unit)
    if balance < needed:
        raise InsufficientFunds(f"{wallet} holds {balance} {unit}, needs {needed}")
    return balance


# ============================================================================
# DEPOSIT / MINT
# ============================================================================

def _check_capacity(terms: PoolTerms, state: PoolState, balances: PoolBalances, net: Decimal) -> None:
    after = calculate_total_assets(state, balances) + net
    if after > state.max_total_assets:
        raise CapacityExceeded(
            f"{terms.symbol}: deposit would take total assets to {after}, cap is {state.max_total_assets}"
        )
    if after < state.min_liquidity:
        raise CapacityExceeded(
            f"{terms.symbol}: pool would hold {after}, below minimum liquidity {state.min_liquidity}"
        )


def _check_receiver(terms: PoolTerms, receiver: str) -> None:
    if receiver in (terms.vault_wallet, SYSTEM_WALLET):
        raise Unauthorized(f"{terms.symbol}: shares cannot be minted to {receiver}")


def _deposit_update(
    view: LedgerView,
    terms: PoolTerms,
    state: PoolState,
    sender: str,
    receiver: str,
    gross: Decimal,
    fee: Decimal,
    shares: Decimal,
) -> PoolUpdate:
    _require_balance(view, sender, terms.asset, gross)
    moves = [
        Move(gross, terms.asset, sender, terms.vault_wallet, _contract_id(terms, state, "deposit")),
        Move(shares, terms.symbol, SYSTEM_WALLET, receiver, _contract_id(terms, state, "mint")),
    ]
    new_state = replace(state, claimable_asset_fees=state.claimable_asset_fees + fee)
    if state.checkpoint.fee_collection is None:
        # the first deposit starts the management fee clock
        new_state = replace(new_state, checkpoint=replace(state.checkpoint, fee_collection=view.current_time))
    event = PoolEvent("Deposit", view.current_time, {
        'sender': sender, 'receiver': receiver, 'amount': gross, 'shares': shares, 'fee': fee,
    })
    return _update(view, terms, new_state, moves, "DEPOSIT", sender, events=(event,))


def compute_deposit(
    view: LedgerView,
    symbol: str,
    sender: str,
    receiver: str,
    amount: Decimal,
    invested: Decimal = ZERO,
    min_shares_out: Optional[Decimal] = None,
) -> PoolUpdate:
    """
    Deposit `amount` of the asset from sender and mint shares to receiver.

    The entry fee (rounded up) stays in the vault as a claimable asset fee;
    shares are minted for the rest.

    Returns:
        PoolUpdate whose result is the number of shares minted

    Raises:
        InvalidAmount: Zero amount, nothing to mint, or fewer than min_shares_out
        Unauthorized: Receiver is the vault itself
        CapacityExceeded: Cap breached or pool left below minimum liquidity

    Example:
        update = compute_deposit(view, "vUSDC", "alice", "alice", Decimal("50000000"))
        ledger.execute(update.pending, strict=True)
    """
    terms, state, balances = _load(view, symbol, invested)
    _require_positive(amount, "deposit amount")
    _check_receiver(terms, receiver)

    fee = ZERO if state.is_exempt(receiver) else bp(amount, state.fees.entry, round_up=True)
    net = amount - fee
    _check_capacity(terms, state, balances, net)
    shares = calculate_deposit_shares(terms, state, balances, net)
    if shares <= 0:
        raise InvalidAmount(f"{symbol}: deposit of {amount} mints no shares")
    if min_shares_out is not None and shares < min_shares_out:
        raise InvalidAmount(f"{symbol}: deposit mints {shares} shares, below minimum {min_shares_out}")

    update = _deposit_update(view, terms, state, sender, receiver, amount, fee, shares)
    return replace(update, result=shares)


def compute_mint(
    view: LedgerView,
    symbol: str,
    sender: str,
    receiver: str,
    shares: Decimal,
    invested: Decimal = ZERO,
    max_amount_in: Optional[Decimal] = None,
) -> PoolUpdate:
    """
    Mint exactly `shares` to receiver, charging sender the assets plus entry fee.

    Returns:
        PoolUpdate whose result is the gross amount of assets taken

    Raises:
        InvalidAmount: Zero shares or more than max_amount_in needed
        Unauthorized: Receiver is the vault itself
        CapacityExceeded: Cap breached or pool left below minimum liquidity
    """
    terms, state, balances = _load(view, symbol, invested)
    _require_positive(shares, "mint shares")
    _check_receiver(terms, receiver)

    net = calculate_mint_assets(terms, state, balances, shares)
    gross = net if state.is_exempt(receiver) else rev_sub_bp(net, state.fees.entry)
    _check_capacity(terms, state, balances, net)
    if max_amount_in is not None and gross > max_amount_in:
        raise InvalidAmount(f"{symbol}: minting {shares} shares costs {gross}, above maximum {max_amount_in}")

    update = _deposit_update(view, terms, state, sender, receiver, gross, gross - net, shares)
    return replace(update, result=gross)


# ============================================================================
# WITHDRAW / REDEEM
# ============================================================================

def _authorize_exit(terms: PoolTerms, state: PoolState, caller: str, owner: str, quote: ExitQuote) -> PoolState:
    """Check the caller may burn owner's shares; anyone but the owner spends allowance, operators included."""
    if caller == owner:
        return state
    allowance = state.allowance(owner, caller)
    if allowance < quote.shares:
        raise Unauthorized(
            f"{terms.symbol}: {caller} may spend {allowance} of {owner}'s shares, needs {quote.shares}"
        )
    return state.with_allowance(owner, caller, allowance - quote.shares)


def _compute_exit(
    view: LedgerView,
    symbol: str,
    caller: str,
    receiver: str,
    owner: str,
    invested: Decimal,
    shares: Optional[Decimal] = None,
    assets: Optional[Decimal] = None,
    min_amount_out: Optional[Decimal] = None,
) -> Tuple[PoolUpdate, ExitQuote]:
    terms, state, balances = _load(view, symbol, invested)
    _require_not_paused(terms, state)
    quote = calculate_exit(terms, state, balances, owner, shares=shares, assets=assets)
    if quote.gross <= 0:
        raise InvalidAmount(f"{symbol}: burning {quote.shares} shares returns no assets")
    if min_amount_out is not None and quote.net < min_amount_out:
        raise InvalidAmount(f"{symbol}: exit returns {quote.net}, below minimum {min_amount_out}")

    balance = _require_balance(view, owner, terms.symbol, quote.shares)
    liquidity = calculate_available(state, balances) + quote.released
    if quote.gross > liquidity:
        raise CapacityExceeded(f"{symbol}: exit needs {quote.gross} idle assets, {liquidity} available")

    new_state = _authorize_exit(terms, state, caller, owner, quote)

    request = state.request_of(owner)
    if request is not None:
        # claimed shares leave the queue; a request cannot outgrow the balance left
        release = max(quote.claimed_shares, request.shares - (balance - quote.shares))
        if release > 0:
            new_state = replace(new_state, requests=release_request(terms, new_state.requests, owner, release))

    new_state = replace(new_state, claimable_asset_fees=new_state.claimable_asset_fees + quote.fee)
    moves = [Move(quote.shares, terms.symbol, owner, SYSTEM_WALLET, _contract_id(terms, state, "burn"))]
    if quote.net > 0:
        moves.append(Move(quote.net, terms.asset, terms.vault_wallet, receiver, _contract_id(terms, state, "withdraw")))

    event = PoolEvent("Withdraw", view.current_time, {
        'sender': caller, 'receiver': receiver, 'owner': owner,
        'amount': quote.net, 'shares': quote.shares, 'fee': quote.fee,
        'claimed_shares': quote.claimed_shares,
    })
    return _update(view, terms, new_state, moves, "WITHDRAW", caller, events=(event,)), quote


def compute_withdraw(
    view: LedgerView,
    symbol: str,
    caller: str,
    receiver: str,
    owner: str,
    amount: Decimal,
    invested: Decimal = ZERO,
    min_amount_out: Optional[Decimal] = None,
) -> PoolUpdate:
    """
    Burn owner's shares worth `amount` (gross) and pay receiver the net.

    Returns:
        PoolUpdate whose result is the number of shares burned
    """
    _require_positive(amount, "withdraw amount")
    update, quote = _compute_exit(
        view, symbol, caller, receiver, owner, invested, assets=amount, min_amount_out=min_amount_out,
    )
    return replace(update, result=quote.shares)


def compute_redeem(
    view: LedgerView,
    symbol: str,
    caller: str,
    receiver: str,
    owner: str,
    shares: Decimal,
    invested: Decimal = ZERO,
    min_amount_out: Optional[Decimal] = None,
) -> PoolUpdate:
    """
    Burn `shares` of owner's and pay receiver their value net of exit fee.

    Returns:
        PoolUpdate whose result is the net amount of assets paid out
    """
    _require_positive(shares, "redeem shares")
    update, quote = _compute_exit(
        view, symbol, caller, receiver, owner, invested, shares=shares, min_amount_out=min_amount_out,
    )
    return replace(update, result=quote.net)


# ============================================================================
# REDEMPTION REQUESTS
# ============================================================================

def compute_request_redeem(
    view: LedgerView,
    symbol: str,
    shares: Decimal,
    operator: str,
    owner: str,
    invested: Decimal = ZERO,
) -> PoolUpdate:
    """
    Create or increase owner's redemption request to `shares` in total.

    The operator is the account submitting the request and allowed to cancel
    it. An operator other than the owner needs an allowance covering
    `shares`; the allowance is spent when the operator burns shares, so
    each approved share is burned at most once.

    Returns:
        PoolUpdate whose result is the request's id

    Raises:
        InvalidAmount: Zero shares, or not an increase of the existing request
        InsufficientFunds: Owner holds fewer than `shares`
        Unauthorized: Operator lacks allowance
    """
    terms, state, balances = _load(view, symbol, invested)
    _require_positive(shares, "request shares")
    if operator != owner and state.allowance(owner, operator) < shares:
        raise Unauthorized(f"{symbol}: {operator} is not approved for {shares} of {owner}'s shares")
    _require_balance(view, owner, terms.symbol, shares)

    price = calculate_share_price(terms, state, balances)
    requests = place_request(state.requests, owner, operator, shares, price, view.current_time, terms)
    request = requests.by_owner[owner]
    new_state = replace(state, requests=requests)

    event = PoolEvent("RedeemRequest", view.current_time, {
        'operator': operator, 'owner': owner, 'request_id': request.request_id,
        'shares': shares, 'share_price': request.share_price,
    })
    return _update(
        view, terms, new_state, [], "REDEEM_REQUEST", operator,
        result=Decimal(request.request_id), events=(event,),
    )


def compute_request_withdraw(
    view: LedgerView,
    symbol: str,
    amount: Decimal,
    operator: str,
    owner: str,
    invested: Decimal = ZERO,
) -> PoolUpdate:
    """Request redemption of the shares worth `amount` at the current price (rounded up)."""
    terms, state, balances = _load(view, symbol, invested)
    _require_positive(amount, "request amount")
    shares = assets_to_shares(terms, amount, calculate_share_price(terms, state, balances), round_up=True)
    return compute_request_redeem(view, symbol, shares, operator, owner, invested)


def compute_cancel_redeem_request(
    view: LedgerView,
    symbol: str,
    operator: str,
    owner: str,
    invested: Decimal = ZERO,
) -> PoolUpdate:
    """
    Drop owner's request, burning the opportunity-cost shares if the price rose.

    Returns:
        PoolUpdate whose result is the number of shares burned

    Raises:
        StaleOrInvalidRequest: Owner has no request
        Unauthorized: Operator is neither the owner nor the request's operator
    """
    terms, state, balances = _load(view, symbol, invested)
    request = state.request_of(owner)
    if request is None:
        raise StaleOrInvalidRequest(f"{symbol}: no redemption request for {owner}")
    if operator not in (owner, request.operator):
        raise Unauthorized(f"{symbol}: {operator} cannot cancel the request of {owner}")

    price = calculate_share_price(terms, state, balances)
    burn = calculate_cancel_cost(request, price)
    burn = min(burn, view.get_balance(owner, terms.symbol), sub_floor(balances.supply, Decimal(1)))
    new_state = replace(state, requests=release_request(terms, state.requests, owner, request.shares))

    moves = []
    if burn > 0:
        moves.append(Move(burn, terms.symbol, owner, SYSTEM_WALLET, _contract_id(terms, state, "cancel")))
    event = PoolEvent("RedeemRequestCanceled", view.current_time, {
        'operator': operator, 'owner': owner, 'request_id': request.request_id,
        'shares': request.shares, 'burned': burn,
    })
    return _update(view, terms, new_state, moves, "REDEEM_CANCEL", operator, result=burn, events=(event,))


# ============================================================================
# SHARE ALLOWANCES AND TRANSFERS
# ============================================================================

def compute_approve(view: LedgerView, symbol: str, owner: str, spender: str, shares: Decimal) -> PoolUpdate:
    """Set the number of owner's shares spender may burn, transfer or request."""
    terms, state = load_pool(view, symbol)
    if spender == owner:
        raise InvalidAmount(f"{symbol}: {owner} cannot approve itself")
    new_state = state.with_allowance(owner, spender, shares)
    event = PoolEvent("Approval", view.current_time, {'owner': owner, 'spender': spender, 'shares': shares})
    return _update(view, terms, new_state, [], "APPROVE", owner, result=shares, events=(event,))


def compute_share_transfer(
    view: LedgerView,
    symbol: str,
    caller: str,
    sender: str,
    receiver: str,
    shares: Decimal,
) -> PoolUpdate:
    """
    Move shares between holders. A caller other than sender spends allowance.

    Shares locked by sender's redemption request are refused by the share
    unit's transfer rule when the transaction executes.
    """
    terms, state = load_pool(view, symbol)
    _require_positive(shares, "transfer shares")
    _check_receiver(terms, receiver)
    _require_balance(view, sender, terms.symbol, shares)
    new_state = state
    if caller != sender:
        allowance = state.allowance(sender, caller)
        if allowance < shares:
            raise Unauthorized(f"{symbol}: {caller} may move {allowance} of {sender}'s shares, needs {shares}")
        new_state = state.with_allowance(sender, caller, allowance - shares)
    moves = [Move(shares, terms.symbol, sender, receiver, _contract_id(terms, state, "transfer"))]
    event = PoolEvent("Transfer", view.current_time, {'sender': sender, 'receiver': receiver, 'shares': shares})
    return _update(view, terms, new_state, moves, "TRANSFER", caller, result=shares, events=(event,))


# ============================================================================
# FEES
# ============================================================================

def compute_fee_collection(view: LedgerView, symbol: str, invested: Decimal = ZERO) -> PoolUpdate:
    """
    Mint the fee shares owed since the last checkpoint to the fee collector.

    No-op without a fee collector or without profit. Otherwise the
    checkpoint moves to the post-fee price, assets, supply and time.

    Returns:
        PoolUpdate whose result is the number of fee shares minted
    """
    terms, state, balances = _load(view, symbol, invested)
    if not state.fee_collector:
        return _noop(view)

    assets = calculate_accounted_assets(state, balances)
    supply = calculate_accounted_supply(state, balances)
    price = calculate_share_price(terms, state, balances)
    quote = calculate_fees(terms, assets, price, supply, state.fees, state.checkpoint, balances.now)
    if quote.profit <= 0:
        return _noop(view)

    fee_shares = calculate_fee_shares(quote.total, assets, supply)
    after = replace(balances, supply=balances.supply + fee_shares)
    checkpoint = replace(
        state.checkpoint,
        share_price=calculate_share_price(terms, state, after),
        fee_collection=balances.now,
        accounted_assets=assets,
        accounted_supply=supply + fee_shares,
    )
    new_state = replace(state, checkpoint=checkpoint)

    moves = []
    if fee_shares > 0:
        moves.append(Move(fee_shares, terms.symbol, SYSTEM_WALLET, state.fee_collector,
                          _contract_id(terms, state, "fees")))
    event = PoolEvent("FeeCollection", view.current_time, {
        'profit': quote.profit, 'total_assets': calculate_total_assets(state, balances),
        'perf': quote.perf, 'mgmt': quote.mgmt, 'shares': fee_shares,
    })
    return _update(
        view, terms, new_state, moves, "FEE_COLLECTION", symbol,
        origin_type=OriginType.CONTRACT, result=fee_shares, events=(event,),
    )


def compute_claim_asset_fees(view: LedgerView, symbol: str) -> PoolUpdate:
    """
    Pay the accrued entry, exit and flash fees out of the vault to the fee collector.

    Returns:
        PoolUpdate whose result is the amount paid
    """
    terms, state = load_pool(view, symbol)
    if not state.fee_collector:
        raise StaleOrInvalidRequest(f"{symbol}: no fee collector set")
    amount = state.claimable_asset_fees + state.flash.claimable_fees
    if amount <= 0:
        return _noop(view)
    new_state = replace(
        state,
        claimable_asset_fees=ZERO,
        flash=replace(state.flash, claimable_fees=ZERO),
    )
    moves = [Move(amount, terms.asset, terms.vault_wallet, state.fee_collector,
                  _contract_id(terms, state, "asset_fees"))]
    event = PoolEvent("AssetFeesClaimed", view.current_time, {'collector': state.fee_collector, 'amount': amount})
    return _update(
        view, terms, new_state, moves, "ASSET_FEE_CLAIM", symbol,
        origin_type=OriginType.CONTRACT, result=amount, events=(event,),
    )


# ============================================================================
# CONFIGURATION
# ============================================================================

def _config_update(
    view: LedgerView,
    terms: PoolTerms,
    new_state: PoolState,
    event_name: str,
    data: Dict[str, Any],
) -> PoolUpdate:
    event = PoolEvent(event_name, view.current_time, data)
    return _update(
        view, terms, new_state, [], event_name.upper(), terms.symbol,
        origin_type=OriginType.CONTRACT, events=(event,),
    )


def compute_set_fees(view: LedgerView, symbol: str, fees: Fees) -> PoolUpdate:
    """
    Replace the fee rates.

    Raises:
        InvalidAmount: If a rate is above the pool's maximum schedule
    """
    terms, state = load_pool(view, symbol)
    over = fees.exceeding(state.max_fees)
    if over:
        raise InvalidAmount(f"{symbol}: fees above maximum schedule: {', '.join(over)}")
    return _config_update(view, terms, replace(state, fees=fees), "FeesSet", fees.to_dict())


def compute_set_fee_collector(view: LedgerView, symbol: str, collector: Optional[str]) -> PoolUpdate:
    terms, state = load_pool(view, symbol)
    if collector in (terms.vault_wallet, SYSTEM_WALLET):
        raise Unauthorized(f"{symbol}: {collector} cannot collect fees")
    return _config_update(view, terms, replace(state, fee_collector=collector), "FeeCollectorSet",
                          {'collector': collector})


def compute_set_exemption(view: LedgerView, symbol: str, account: str, exempt: bool) -> PoolUpdate:
    """Add or remove an account from the entry/exit fee exemption list."""
    terms, state = load_pool(view, symbol)
    exemptions = state.exemptions | {account} if exempt else state.exemptions - {account}
    return _config_update(view, terms, replace(state, exemptions=exemptions), "ExemptionSet",
                          {'account': account, 'exempt': exempt})


def compute_set_max_total_assets(view: LedgerView, symbol: str, amount: Decimal) -> PoolUpdate:
    terms, state = load_pool(view, symbol)
    return _config_update(view, terms, replace(state, max_total_assets=amount), "MaxTotalAssetsSet",
                          {'max_total_assets': amount})


def compute_set_min_liquidity(view: LedgerView, symbol: str, amount: Decimal) -> PoolUpdate:
    terms, state = load_pool(view, symbol)
    return _config_update(view, terms, replace(state, min_liquidity=amount), "MinLiquiditySet",
                          {'min_liquidity': amount})


def compute_set_profit_cooldown(view: LedgerView, symbol: str, cooldown: Duration) -> PoolUpdate:
    terms, state = load_pool(view, symbol)
    seconds = to_seconds(cooldown)
    return _config_update(view, terms, replace(state, profit_cooldown=seconds), "ProfitCooldownSet",
                          {'profit_cooldown': seconds})


def compute_set_redemption_lock_duration(view: LedgerView, symbol: str, duration: Duration) -> PoolUpdate:
    terms, state = load_pool(view, symbol)
    seconds = to_seconds(duration)
    requests = replace(state.requests, lock_duration=seconds)
    return _config_update(view, terms, replace(state, requests=requests), "RedemptionLockDurationSet",
                          {'lock_duration': seconds})


def compute_set_max_loan(view: LedgerView, symbol: str, amount: Decimal) -> PoolUpdate:
    terms, state = load_pool(view, symbol)
    flash = replace(state.flash, max_loan=amount)
    return _config_update(view, terms, replace(state, flash=flash), "MaxLoanSet", {'max_loan': amount})


def compute_pause(view: LedgerView, symbol: str) -> PoolUpdate:
    """Pause the pool and zero its deposit cap."""
    terms, state = load_pool(view, symbol)
    new_state = replace(state, paused=True, max_total_assets=ZERO)
    return _config_update(view, terms, new_state, "Paused", {})


def compute_unpause(view: LedgerView, symbol: str) -> PoolUpdate:
    """Clear the pause flag. The cap stays where it is."""
    terms, state = load_pool(view, symbol)
    return _config_update(view, terms, replace(state, paused=False), "Unpaused", {})


# ============================================================================
# CAPITAL DEPLOYMENT
# ============================================================================

def compute_invest_checkpoint(view: LedgerView, symbol: str, amount: Decimal) -> PoolUpdate:
    """Record that `amount` was handed to the strategy."""
    terms, state = load_pool(view, symbol)
    checkpoint = replace(state.checkpoint, invest=view.current_time)
    event = PoolEvent("Invest", view.current_time, {'amount': amount})
    return _update(
        view, terms, replace(state, checkpoint=checkpoint), [], "INVEST", symbol,
        origin_type=OriginType.STRATEGY, result=amount, events=(event,),
    )


def compute_liquidity_event(
    view: LedgerView,
    symbol: str,
    event_name: str,
    amount: Decimal = ZERO,
    invested: Decimal = ZERO,
    profit: Optional[Decimal] = None,
) -> PoolUpdate:
    """
    Mark a liquidity event (Liquidate or Harvest) at the current time.

    Requests whose lock has expired become claimable and have their value
    reserved, as far as idle assets allow. A harvest books `profit` for
    linear release over the profit cooldown, on top of whatever the previous
    harvest has not released yet.
    """
    terms, state, balances = _load(view, symbol, invested)
    now = view.current_time
    checkpoint = replace(state.checkpoint, liquidate=now)
    if profit is not None:
        carried = calculate_unrealized_profit(state.checkpoint, state.profit_cooldown, now)
        checkpoint = replace(checkpoint, harvest=now, accounted_profit=carried + profit)
    liquidity = sub_floor(balances.idle, calculate_fee_reserve(state))
    requests = mark_liquidity(terms, state.requests, now, liquidity)
    new_state = replace(state, checkpoint=checkpoint, requests=requests)

    data = {
        'amount': amount,
        'total_claimable': requests.total_claimable,
        'total_claimable_assets': requests.total_claimable_assets,
    }
    if profit is not None:
        data['profit'] = profit
    event = PoolEvent(event_name, now, data)
    return _update(
        view, terms, new_state, [], event_name.upper(), symbol,
        origin_type=OriginType.STRATEGY, result=amount, events=(event,),
    )


# ============================================================================
# RESCUE
# ============================================================================

def compute_request_rescue(view: LedgerView, symbol: str, unit: str, receiver: str) -> PoolUpdate:
    """
    Open a time-locked rescue of `unit` held by the vault wallet, to be paid to receiver.

    A new request for the same unit replaces the old one and restarts the lock.

    Raises:
        Unauthorized: If unit is the pool asset, or receiver is the vault itself
    """
    terms, state = load_pool(view, symbol)
    if unit == terms.asset:
        raise Unauthorized(f"{symbol}: the pool asset {unit} cannot be rescued")
    if receiver in (terms.vault_wallet, SYSTEM_WALLET):
        raise Unauthorized(f"{symbol}: {receiver} cannot receive rescued funds")
    request = RescueRequest(receiver=receiver, requested_at=view.current_time)
    rescues = dict(state.rescues)
    rescues[unit] = request
    opens, closes = request.window()
    return _config_update(view, terms, replace(state, rescues=rescues), "RescueRequested", {
        'unit': unit, 'receiver': receiver, 'opens': opens, 'closes': closes,
    })


def compute_rescue(view: LedgerView, symbol: str, unit: str, caller: str) -> PoolUpdate:
    """
    Send the vault wallet's whole balance of `unit` to the rescue's receiver.

    Returns:
        PoolUpdate whose result is the amount rescued

    Raises:
        StaleOrInvalidRequest: No request for unit, or outside its window
        Unauthorized: Caller is not the receiver named in the request
    """
    terms, state = load_pool(view, symbol)
    request = state.rescues.get(unit)
    if request is None:
        raise StaleOrInvalidRequest(f"{symbol}: no rescue requested for {unit}")
    if caller != request.receiver:
        raise Unauthorized(f"{symbol}: rescue of {unit} belongs to {request.receiver}, not {caller}")
    opens, closes = request.window()
    now = view.current_time
    if not opens <= now <= closes:
        raise StaleOrInvalidRequest(f"{symbol}: rescue of {unit} runs from {opens} to {closes}, now is {now}")

    rescues = dict(state.rescues)
    del rescues[unit]
    amount = view.get_balance(terms.vault_wallet, unit)
    moves = []
    if amount > 0:
        moves.append(Move(amount, unit, terms.vault_wallet, request.receiver,
                          _contract_id(terms, state, "rescue")))
    event = PoolEvent("Rescued", now, {'unit': unit, 'receiver': request.receiver, 'amount': amount})
    return _update(
        view, terms, replace(state, rescues=rescues), moves, "RESCUE", caller,
        origin_type=OriginType.CONTRACT, result=amount, events=(event,),
    )
