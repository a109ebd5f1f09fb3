"""
flash.py - Flash loans of the vault's idle assets

A flash loan lives entirely inside one atomic ledger scope:

    idle -> lent -> verified -> settled

1. lent: the principal is marked outstanding (so total assets and the share
   price do not move) and transferred to the borrower's wallet
2. the borrower's on_flash_loan() callback runs and must return
   FLASH_CALLBACK_SUCCESS
3. verified: the vault's idle balance must be back to at least its
   pre-loan value plus the fee
4. settled: outstanding goes back to zero, total_lent and claimable_fees grow

Any failure raises out of the atomic scope, which restores the ledger to
the state it had before step 1.

Key Formulas:
    fee            = ceil(amount * fees.flash / 10_000)
    max_flash_loan = min(max_loan, available)
"""

from __future__ import annotations
from dataclasses import replace
import hashlib
import logging
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable

from ..core import (
    LedgerView, Move, OriginType, TransactionOrigin, UnitStateChange,
    CapacityExceeded, IntegrityViolation, InvalidAmount, PoolPaused, StaleOrInvalidRequest,
    build_transaction,
)
from ..fixed_point import ZERO, bp
from .conversion import PoolBalances, calculate_available, read_balances
from .operations import PoolEvent, PoolUpdate
from .state import PoolState, PoolTerms, load_pool, to_state_dict


logger = logging.getLogger(__name__)

# Value a borrower's callback must return to acknowledge the loan.
FLASH_CALLBACK_SUCCESS = hashlib.sha256(b"ERC3156FlashBorrower.onFlashLoan").hexdigest()


@runtime_checkable
class FlashBorrower(Protocol):
    """
    Receiver of a flash loan.

    The principal is credited to `wallet` before on_flash_loan() is called;
    the callback must send amount + fee back to the vault wallet through the
    ledger and return FLASH_CALLBACK_SUCCESS.
    """

    wallet: str

    def on_flash_loan(self, initiator: str, token: str, amount: Decimal, fee: Decimal, data: Any) -> str:
        ...


# ============================================================================
# QUOTES
# ============================================================================

def calculate_flash_fee(state: PoolState, amount: Decimal) -> Decimal:
    """Flash fee for `amount`, rounded up."""
    return bp(amount, state.fees.flash, round_up=True)


def calculate_max_flash_loan(state: PoolState, balances: PoolBalances) -> Decimal:
    """Largest loan the pool can make: its max_loan, bounded by available idle assets."""
    return min(state.flash.max_loan, calculate_available(state, balances))


def check_flash_loan(
    terms: PoolTerms, state: PoolState, balances: PoolBalances, token: str, amount: Decimal
) -> Decimal:
    """
    Validate a loan request and return its fee.

    Raises:
        PoolPaused: If the pool is paused
        StaleOrInvalidRequest: If token is not the pool's asset
        InvalidAmount: If amount is zero
        CapacityExceeded: If amount is above max_flash_loan
    """
    if state.paused:
        raise PoolPaused(f"{terms.symbol} is paused")
    if token != terms.asset:
        raise StaleOrInvalidRequest(f"{terms.symbol} lends {terms.asset}, not {token}")
    if amount <= 0:
        raise InvalidAmount("flash loan amount must be positive")
    limit = calculate_max_flash_loan(state, balances)
    if amount > limit:
        raise CapacityExceeded(f"{terms.symbol}: flash loan of {amount} above maximum {limit}")
    return calculate_flash_fee(state, amount)


# ============================================================================
# TRANSACTION BUILDERS
# ============================================================================

def _flash_update(view: LedgerView, terms: PoolTerms, new_state: PoolState, moves, event_type: str,
                  initiator: str) -> PoolUpdate:
    old_state = view.get_unit_state(terms.symbol)
    change = UnitStateChange(terms.symbol, old_state, to_state_dict(terms, new_state.bump()))
    origin = TransactionOrigin(OriginType.EXTERNAL, initiator, terms.symbol, event_type)
    return PoolUpdate(pending=build_transaction(view, moves, [change], origin))


def compute_flash_lend(
    view: LedgerView, symbol: str, borrower_wallet: str, initiator: str, amount: Decimal
) -> PoolUpdate:
    """Mark `amount` outstanding and send it to the borrower."""
    terms, state = load_pool(view, symbol)
    new_state = replace(state, flash=replace(state.flash, outstanding=state.flash.outstanding + amount))
    moves = [Move(amount, terms.asset, terms.vault_wallet, borrower_wallet, f"{symbol}:flash:{state.nonce}")]
    return _flash_update(view, terms, new_state, moves, "FLASH_LEND", initiator)


def compute_flash_settle(
    view: LedgerView, symbol: str, initiator: str, amount: Decimal, fee: Decimal
) -> PoolUpdate:
    """Clear the outstanding principal and book the loan and its fee."""
    terms, state = load_pool(view, symbol)
    flash = replace(
        state.flash,
        outstanding=state.flash.outstanding - amount,
        total_lent=state.flash.total_lent + amount,
        claimable_fees=state.flash.claimable_fees + fee,
    )
    update = _flash_update(view, terms, replace(state, flash=flash), [], "FLASH_SETTLE", initiator)
    event = PoolEvent("FlashLoan", view.current_time, {'initiator': initiator, 'amount': amount, 'fee': fee})
    return replace(update, result=fee, events=(event,))


# ============================================================================
# EXECUTION
# ============================================================================

def run_flash_loan(
    ledger,
    symbol: str,
    borrower: FlashBorrower,
    token: str,
    amount: Decimal,
    data: Any = None,
    initiator: str = None,
    invested: Decimal = ZERO,
) -> PoolUpdate:
    """
    Lend, call back, verify and settle a flash loan on `ledger`.

    Args:
        ledger: Ledger holding the pool (must provide atomic())
        symbol: Share unit symbol of the pool
        borrower: FlashBorrower receiving the principal
        token: Token requested; must be the pool's asset
        amount: Principal in minimal units
        data: Opaque value handed to the callback
        initiator: Account that asked for the loan (defaults to borrower.wallet)
        invested: Strategy value, for the available-liquidity bound

    Returns:
        The settlement PoolUpdate (already executed); its result is the fee

    Raises:
        IntegrityViolation: Wrong acknowledgement or repayment short of
                            principal + fee. The ledger is rolled back.
    """
    initiator = initiator or borrower.wallet
    terms, state = load_pool(ledger, symbol)
    fee = check_flash_loan(terms, state, read_balances(ledger, terms, invested), token, amount)

    with ledger.atomic():
        before = ledger.get_balance(terms.vault_wallet, terms.asset)
        ledger.execute(compute_flash_lend(ledger, symbol, borrower.wallet, initiator, amount).pending, strict=True)

        ack = borrower.on_flash_loan(initiator, token, amount, fee, data)
        if ack != FLASH_CALLBACK_SUCCESS:
            logger.warning("Flash loan callback rejected", extra={"pool": symbol, "borrower": borrower.wallet})
            raise IntegrityViolation(f"{symbol}: flash borrower {borrower.wallet} returned {ack!r}")

        after = ledger.get_balance(terms.vault_wallet, terms.asset)
        if after < before + fee:
            logger.warning(
                "Flash loan not repaid",
                extra={"pool": symbol, "borrower": borrower.wallet, "shortfall": before + fee - after},
            )
            raise IntegrityViolation(
                f"{symbol}: flash loan repaid {after - before + amount}, owed {amount + fee}"
            )

        settle = compute_flash_settle(ledger, symbol, initiator, amount, fee)
        ledger.execute(settle.pending, strict=True)

    logger.debug("Flash loan settled", extra={"pool": symbol, "amount": amount, "fee": fee})
    return settle
