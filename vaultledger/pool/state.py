"""
state.py - Pool state model for vault share units

A vault is represented on the ledger by its share unit. Everything the pool
needs to remember (fees, caps, checkpoint, redemption requests, flash-loan
counters, allowances, rescue requests) lives in that unit's state dictionary
and is changed only through UnitStateChange records.

ARCHITECTURE (Pure Function Pattern):
=====================================

1. FROZEN DATACLASSES (explicit inputs):
   - PoolTerms: fixed at creation (symbols, decimals, vault wallet)
   - PoolState: everything that changes, with nested Fees, Checkpoint,
     RequestAggregate, RedemptionRequest and FlashState

2. ADAPTER FUNCTIONS:
   - load_pool(view, symbol) reads the unit state once into dataclasses
   - to_state_dict(terms, state) is its inverse, used for state changes

3. FACTORY:
   - create_vault_unit() builds the share Unit, paused with a zero cap until
     seed liquidity arrives
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple, Union

from ..core import (
    LedgerView, Move, Unit, InvalidAmount, TransferRuleViolation,
    SYSTEM_WALLET, UNIT_TYPE_VAULT_SHARE,
    _freeze_state,
)
from ..fixed_point import BP_BASIS, ZERO, scale


Duration = Union[timedelta, int]

FEE_FIELDS = ('perf', 'mgmt', 'entry', 'exit', 'flash')


def to_seconds(value: Duration) -> int:
    """Accept a timedelta or a number of seconds; reject negatives."""
    seconds = int(value.total_seconds()) if isinstance(value, timedelta) else int(value)
    if seconds < 0:
        raise InvalidAmount(f"duration must be non-negative, got {value!r}")
    return seconds


def _dec(value: Any) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


# ============================================================================
# FROZEN DATACLASSES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Fees:
    """Fee rates in basis points."""
    perf: int = 0
    mgmt: int = 0
    entry: int = 0
    exit: int = 0
    flash: int = 0

    def __post_init__(self):
        for name in FEE_FIELDS:
            value = getattr(self, name)
            if isinstance(value, bool) or int(value) != value:
                raise InvalidAmount(f"{name} fee must be a whole number of basis points, got {value!r}")
            if not 0 <= value <= BP_BASIS:
                raise InvalidAmount(f"{name} fee must be within 0..{BP_BASIS} bps, got {value}")
            object.__setattr__(self, name, int(value))

    def exceeding(self, limits: Fees) -> Tuple[str, ...]:
        """Names of the rates above the matching rate in limits."""
        return tuple(name for name in FEE_FIELDS if getattr(self, name) > getattr(limits, name))

    def to_dict(self) -> Dict[str, int]:
        return {name: getattr(self, name) for name in FEE_FIELDS}

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> Fees:
        return cls(**{name: int(raw.get(name, 0)) for name in FEE_FIELDS})


DEFAULT_MAX_FEES = Fees(perf=5_000, mgmt=500, entry=200, exit=200, flash=200)

# a rescue can run RESCUE_TIMELOCK after its request, for RESCUE_VALIDITY
RESCUE_TIMELOCK = timedelta(days=2)
RESCUE_VALIDITY = timedelta(days=7)


@dataclass(frozen=True, slots=True)
class Checkpoint:
    """
    Last accounted position of the pool (the "epoch").

    share_price is the fee high-water mark. accounted_profit is the profit
    booked by the last harvest; it is released linearly over the profit
    cooldown starting at the harvest timestamp.
    """
    share_price: Decimal
    fee_collection: Optional[datetime] = None
    liquidate: Optional[datetime] = None
    harvest: Optional[datetime] = None
    invest: Optional[datetime] = None
    accounted_profit: Decimal = ZERO
    accounted_assets: Decimal = ZERO
    accounted_supply: Decimal = ZERO

    def __post_init__(self):
        for name in ('share_price', 'accounted_profit', 'accounted_assets', 'accounted_supply'):
            object.__setattr__(self, name, _dec(getattr(self, name)))


@dataclass(frozen=True, slots=True)
class RedemptionRequest:
    """A single owner's pending redemption."""
    shares: Decimal
    share_price: Decimal
    timestamp: datetime
    operator: str
    request_id: int
    claimable: bool = False

    def __post_init__(self):
        object.__setattr__(self, 'shares', _dec(self.shares))
        object.__setattr__(self, 'share_price', _dec(self.share_price))


@dataclass(frozen=True, slots=True)
class RequestAggregate:
    """
    Pool-wide redemption bookkeeping.

    total_pending is the sum of live request shares; total_claimable the sum
    of those marked claimable by the last liquidity event, and
    total_claimable_assets the value reserved for them at request price.
    """
    total_pending: Decimal = ZERO
    total_claimable: Decimal = ZERO
    total_claimable_assets: Decimal = ZERO
    lock_duration: int = 0
    next_request_id: int = 1
    by_owner: Mapping[str, RedemptionRequest] = field(default_factory=dict)

    def __post_init__(self):
        for name in ('total_pending', 'total_claimable', 'total_claimable_assets'):
            object.__setattr__(self, name, _dec(getattr(self, name)))


@dataclass(frozen=True, slots=True)
class FlashState:
    """Flash-loan limits and counters. outstanding is zero between operations."""
    max_loan: Decimal = ZERO
    total_lent: Decimal = ZERO
    outstanding: Decimal = ZERO
    claimable_fees: Decimal = ZERO

    def __post_init__(self):
        for name in ('max_loan', 'total_lent', 'outstanding', 'claimable_fees'):
            object.__setattr__(self, name, _dec(getattr(self, name)))


@dataclass(frozen=True, slots=True)
class RescueRequest:
    """A pending recovery of a stray unit held by the vault wallet."""
    receiver: str
    requested_at: datetime

    def window(self) -> Tuple[datetime, datetime]:
        """First and last moment the rescue may execute."""
        opens = self.requested_at + RESCUE_TIMELOCK
        return opens, opens + RESCUE_VALIDITY


@dataclass(frozen=True, slots=True)
class PoolTerms:
    """Immutable pool definition - set at creation, never changes."""
    symbol: str
    asset: str
    asset_decimals: int
    share_decimals: int
    vault_wallet: str

    @property
    def wei_per_asset(self) -> Decimal:
        return scale(self.asset_decimals)

    @property
    def wei_per_share(self) -> Decimal:
        return scale(self.share_decimals)


@dataclass(frozen=True, slots=True)
class PoolState:
    """Immutable snapshot of everything about the pool that changes."""
    fees: Fees
    max_fees: Fees
    max_total_assets: Decimal
    min_liquidity: Decimal
    profit_cooldown: int
    paused: bool
    exemptions: FrozenSet[str]
    fee_collector: Optional[str]
    claimable_asset_fees: Decimal
    allowances: Mapping[str, Mapping[str, Decimal]]
    nonce: int
    checkpoint: Checkpoint
    requests: RequestAggregate
    flash: FlashState
    rescues: Mapping[str, RescueRequest] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, 'max_total_assets', _dec(self.max_total_assets))
        object.__setattr__(self, 'min_liquidity', _dec(self.min_liquidity))
        object.__setattr__(self, 'claimable_asset_fees', _dec(self.claimable_asset_fees))
        object.__setattr__(self, 'exemptions', frozenset(self.exemptions))

    def is_exempt(self, account: str) -> bool:
        return account in self.exemptions

    def allowance(self, owner: str, spender: str) -> Decimal:
        return self.allowances.get(owner, {}).get(spender, ZERO)

    def request_of(self, owner: str) -> Optional[RedemptionRequest]:
        return self.requests.by_owner.get(owner)

    def with_allowance(self, owner: str, spender: str, amount: Decimal) -> PoolState:
        """Return a copy with allowance[owner][spender] set (removed when zero)."""
        allowances = {o: dict(s) for o, s in self.allowances.items()}
        spenders = allowances.setdefault(owner, {})
        if amount > 0:
            spenders[spender] = amount
        else:
            spenders.pop(spender, None)
            if not spenders:
                del allowances[owner]
        return replace(self, allowances=allowances)

    def bump(self) -> PoolState:
        """Return a copy with the operation nonce incremented."""
        return replace(self, nonce=self.nonce + 1)


# ============================================================================
# ADAPTER FUNCTIONS
# ============================================================================

def _load_request(raw: Mapping[str, Any]) -> RedemptionRequest:
    return RedemptionRequest(
        shares=raw['shares'],
        share_price=raw['share_price'],
        timestamp=raw['timestamp'],
        operator=raw['operator'],
        request_id=int(raw['request_id']),
        claimable=bool(raw.get('claimable', False)),
    )


def load_pool(view: LedgerView, symbol: str) -> Tuple[PoolTerms, PoolState]:
    """
    Load a vault's share unit state as typed frozen dataclasses.

    This is the only function that reads pool state from a LedgerView.

    Example:
        terms, state = load_pool(view, "vUSDC")
        price = calculate_share_price(terms, state, balances)
    """
    raw = view.get_unit_state(symbol)
    cp = raw['checkpoint']
    req = raw['requests']
    fl = raw['flash']

    terms = PoolTerms(
        symbol=symbol,
        asset=raw['asset'],
        asset_decimals=int(raw['asset_decimals']),
        share_decimals=int(raw['share_decimals']),
        vault_wallet=raw['vault_wallet'],
    )

    state = PoolState(
        fees=Fees.from_dict(raw['fees']),
        max_fees=Fees.from_dict(raw['max_fees']),
        max_total_assets=raw['max_total_assets'],
        min_liquidity=raw['min_liquidity'],
        profit_cooldown=int(raw['profit_cooldown']),
        paused=bool(raw['paused']),
        exemptions=frozenset(raw.get('exemptions', ())),
        fee_collector=raw.get('fee_collector'),
        claimable_asset_fees=raw.get('claimable_asset_fees', ZERO),
        allowances={o: {s: _dec(a) for s, a in sp.items()} for o, sp in raw.get('allowances', {}).items()},
        nonce=int(raw.get('nonce', 0)),
        checkpoint=Checkpoint(
            share_price=cp['share_price'],
            fee_collection=cp.get('fee_collection'),
            liquidate=cp.get('liquidate'),
            harvest=cp.get('harvest'),
            invest=cp.get('invest'),
            accounted_profit=cp.get('accounted_profit', ZERO),
            accounted_assets=cp.get('accounted_assets', ZERO),
            accounted_supply=cp.get('accounted_supply', ZERO),
        ),
        requests=RequestAggregate(
            total_pending=req.get('total_pending', ZERO),
            total_claimable=req.get('total_claimable', ZERO),
            total_claimable_assets=req.get('total_claimable_assets', ZERO),
            lock_duration=int(req.get('lock_duration', 0)),
            next_request_id=int(req.get('next_request_id', 1)),
            by_owner={owner: _load_request(r) for owner, r in req.get('by_owner', {}).items()},
        ),
        flash=FlashState(
            max_loan=fl.get('max_loan', ZERO),
            total_lent=fl.get('total_lent', ZERO),
            outstanding=fl.get('outstanding', ZERO),
            claimable_fees=fl.get('claimable_fees', ZERO),
        ),
        rescues={
            unit: RescueRequest(receiver=r['receiver'], requested_at=r['requested_at'])
            for unit, r in raw.get('rescues', {}).items()
        },
    )
    return terms, state


def to_state_dict(terms: PoolTerms, state: PoolState) -> Dict[str, Any]:
    """Inverse of load_pool(): the dict stored as the share unit's state."""
    cp = state.checkpoint
    req = state.requests
    return {
        'asset': terms.asset,
        'asset_decimals': terms.asset_decimals,
        'share_decimals': terms.share_decimals,
        'vault_wallet': terms.vault_wallet,
        'fees': state.fees.to_dict(),
        'max_fees': state.max_fees.to_dict(),
        'max_total_assets': state.max_total_assets,
        'min_liquidity': state.min_liquidity,
        'profit_cooldown': state.profit_cooldown,
        'paused': state.paused,
        'exemptions': sorted(state.exemptions),
        'fee_collector': state.fee_collector,
        'claimable_asset_fees': state.claimable_asset_fees,
        'allowances': {o: dict(sp) for o, sp in state.allowances.items() if sp},
        'nonce': state.nonce,
        'checkpoint': {
            'share_price': cp.share_price,
            'fee_collection': cp.fee_collection,
            'liquidate': cp.liquidate,
            'harvest': cp.harvest,
            'invest': cp.invest,
            'accounted_profit': cp.accounted_profit,
            'accounted_assets': cp.accounted_assets,
            'accounted_supply': cp.accounted_supply,
        },
        'requests': {
            'total_pending': req.total_pending,
            'total_claimable': req.total_claimable,
            'total_claimable_assets': req.total_claimable_assets,
            'lock_duration': req.lock_duration,
            'next_request_id': req.next_request_id,
            'by_owner': {
                owner: {
                    'shares': r.shares,
                    'share_price': r.share_price,
                    'timestamp': r.timestamp,
                    'operator': r.operator,
                    'request_id': r.request_id,
                    'claimable': r.claimable,
                }
                for owner, r in req.by_owner.items()
            },
        },
        'flash': {
            'max_loan': state.flash.max_loan,
            'total_lent': state.flash.total_lent,
            'outstanding': state.flash.outstanding,
            'claimable_fees': state.flash.claimable_fees,
        },
        'rescues': {
            unit: {'receiver': r.receiver, 'requested_at': r.requested_at}
            for unit, r in state.rescues.items()
        },
    }


# ============================================================================
# TRANSFER RULE
# ============================================================================

def redemption_lock_transfer_rule(view: LedgerView, move: Move) -> None:
    """
    Keep shares committed to a redemption request in their owner's wallet.

    Mints and burns (moves from/to the system wallet) are settled by the vault
    itself and are not checked here.

    Raises:
        TransferRuleViolation: If the move leaves the source holding fewer
                               shares than its pending request.
    """
    if move.source == SYSTEM_WALLET or move.dest == SYSTEM_WALLET:
        return
    state = view.get_unit_state(move.unit_symbol)
    request = state.get('requests', {}).get('by_owner', {}).get(move.source)
    if not request:
        return
    locked = _dec(request['shares'])
    remaining = view.get_balance(move.source, move.unit_symbol) - move.quantity
    if remaining < locked:
        raise TransferRuleViolation(
            f"{move.unit_symbol}: {move.source} has {locked} shares locked by redemption request "
            f"#{request['request_id']}, transfer would leave {remaining}"
        )


# ============================================================================
# UNIT CREATION
# ============================================================================

def create_vault_unit(
    symbol: str,
    name: str,
    asset: str,
    asset_decimals: int,
    share_decimals: Optional[int] = None,
    fees: Optional[Fees] = None,
    max_fees: Optional[Fees] = None,
    min_liquidity: Decimal = Decimal("0"),
    profit_cooldown: Duration = 0,
    redemption_lock_duration: Duration = 0,
    max_loan: Decimal = Decimal("0"),
    fee_collector: Optional[str] = None,
    vault_wallet: Optional[str] = None,
) -> Unit:
    """
    Create the share unit of a new vault.

    The pool starts paused with a zero deposit cap; seed_liquidity() sets the
    cap, makes the first deposit and unpauses it.

    Args:
        symbol: Share symbol (e.g., "vUSDC"). Also the default vault wallet id.
        name: Human-readable name
        asset: Symbol of the reference asset unit
        asset_decimals: Decimals of the reference asset
        share_decimals: Decimals of the share (defaults to asset_decimals)
        fees: Initial fee rates (default: all zero)
        max_fees: Upper bounds accepted by set_fees (default: DEFAULT_MAX_FEES)
        min_liquidity: Assets the pool must hold before ordinary deposits
        profit_cooldown: Window over which harvested profit is recognized
        redemption_lock_duration: Age a request needs before it can be claimed
        max_loan: Flash-loan ceiling (zero disables flash loans)
        fee_collector: Wallet receiving fee shares and claimable asset fees
        vault_wallet: Wallet holding the pool's idle assets

    Returns:
        Unit whose state holds the full pool model

    Raises:
        InvalidAmount: If fees exceed max_fees or amounts are invalid

    Example:
        unit = create_vault_unit("vUSDC", "USDC Vault", "USDC", 6,
                                 fees=Fees(perf=1000, mgmt=200),
                                 min_liquidity=Decimal("10000000"))
        ledger.register_unit(unit)
    """
    fees = fees or Fees()
    max_fees = max_fees or DEFAULT_MAX_FEES
    over = fees.exceeding(max_fees)
    if over:
        raise InvalidAmount(f"fees above maximum schedule: {', '.join(over)}")
    if share_decimals is None:
        share_decimals = asset_decimals
    if asset_decimals < 0 or share_decimals < 0:
        raise InvalidAmount("decimals must be non-negative")

    terms = PoolTerms(
        symbol=symbol,
        asset=asset,
        asset_decimals=asset_decimals,
        share_decimals=share_decimals,
        vault_wallet=vault_wallet or symbol,
    )
    state = PoolState(
        fees=fees,
        max_fees=max_fees,
        max_total_assets=ZERO,
        min_liquidity=_dec(min_liquidity),
        profit_cooldown=to_seconds(profit_cooldown),
        paused=True,
        exemptions=frozenset(),
        fee_collector=fee_collector,
        claimable_asset_fees=ZERO,
        allowances={},
        nonce=0,
        checkpoint=Checkpoint(share_price=terms.wei_per_share),
        requests=RequestAggregate(lock_duration=to_seconds(redemption_lock_duration)),
        flash=FlashState(max_loan=_dec(max_loan)),
    )

    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_VAULT_SHARE,
        min_balance=Decimal("0"),
        decimal_places=0,
        transfer_rule=redemption_lock_transfer_rule,
        _frozen_state=_freeze_state(to_state_dict(terms, state)),
    )
