"""
vault.py - The pool's public surface

Vault ties a share unit on a Ledger to its role checks and strategy. Each
mutating method:
    1. takes the re-entrancy guard (ReentrantCall if already held)
    2. opens a ledger atomic() scope
    3. builds PendingTransactions with the pure compute_* functions and
       executes them strictly
    4. publishes the resulting PoolEvents to Vault.events

Any error restores the ledger and drops the events of the failed call.

Example:
    ledger = Ledger("main", datetime(2025, 1, 1))
    ledger.register_unit(token("USDC", "USD Coin", decimals=6))
    ledger.register_unit(create_vault_unit("vUSDC", "USDC Vault", "USDC", 6))
    vault = Vault(ledger, "vUSDC", RoleRegistry({"treasury": ADMIN}))
    vault.seed_liquidity("treasury", Decimal("100000000"), Decimal("10000000000"))
    shares = vault.deposit(Decimal("50000000"), "alice")
"""

from __future__ import annotations
from contextlib import contextmanager
from decimal import Decimal
import logging
from typing import Any, Iterator, List, Optional, Tuple

from ..access import ADMIN, KEEPER, MANAGER, AccessControl
from ..core import (
    CapacityExceeded, InvalidAmount, ReentrantCall, StaleOrInvalidRequest,
)
from ..fixed_point import ZERO, Number, bp, clamp, rev_sub_bp, sub_floor, to_amount
from ..strategy import Strategy
from . import operations as ops
from .conversion import (
    PoolBalances, assets_to_shares, calculate_accounted_assets, calculate_accounted_supply,
    calculate_available, calculate_deposit_shares, calculate_mint_assets, calculate_share_price,
    calculate_total_assets, calculate_unowned_assets, read_balances, shares_to_assets,
)
from .fees import FeeQuote, calculate_fees, calculate_unrealized_profit
from .flash import FlashBorrower, calculate_flash_fee, calculate_max_flash_loan, run_flash_loan
from .operations import PoolEvent, PoolUpdate
from .redemption import calculate_claimable_shares, calculate_exit, is_claimable
from .state import Duration, Fees, PoolState, PoolTerms, load_pool


logger = logging.getLogger(__name__)


class Vault:
    """
    Pooled-custody vault over a Ledger.

    Amounts are integral minimal units; ints and strings are accepted and
    converted with to_amount(). Privileged methods take the calling account
    first and check it against `access`.
    """

    def __init__(self, ledger, symbol: str, access: AccessControl, strategy: Optional[Strategy] = None):
        self.ledger = ledger
        self.symbol = symbol
        self.access = access
        self.strategy = strategy
        self.events: List[PoolEvent] = []
        self._entered: Optional[str] = None
        terms = self.terms
        if not ledger.is_registered(terms.vault_wallet):
            ledger.register_wallet(terms.vault_wallet)

    # ========================================================================
    # INTERNALS
    # ========================================================================

    @property
    def terms(self) -> PoolTerms:
        return load_pool(self.ledger, self.symbol)[0]

    @property
    def state(self) -> PoolState:
        return load_pool(self.ledger, self.symbol)[1]

    def _snapshot(self) -> Tuple[PoolTerms, PoolState, PoolBalances]:
        terms, state = load_pool(self.ledger, self.symbol)
        return terms, state, read_balances(self.ledger, terms, self.invested())

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        if self._entered is not None:
            raise ReentrantCall(f"{self.symbol}: {operation} called while {self._entered} is running")
        self._entered = operation
        mark = len(self.events)
        try:
            with self.ledger.atomic():
                yield
        except Exception as e:
            del self.events[mark:]
            logger.debug(
                "Operation rejected",
                extra={"pool": self.symbol, "operation": operation, "error": type(e).__name__},
            )
            raise
        finally:
            self._entered = None

    def _apply(self, update: PoolUpdate) -> Decimal:
        self.ledger.execute(update.pending, strict=True)
        for event in update.events:
            self.events.append(event)
            logger.debug(event.name, extra={"pool": self.symbol, "event_data": dict(event.data)})
        return update.result

    def _run(self, operation: str, build, *args, **kwargs) -> Decimal:
        with self._guard(operation):
            return self._apply(build(self.ledger, self.symbol, *args, **kwargs))

    def _privileged(self, role: str, caller: str, operation: str, build, *args, **kwargs) -> Decimal:
        self.access.check_role(role, caller)
        return self._run(operation, build, *args, **kwargs)

    # ========================================================================
    # VIEWS
    # ========================================================================

    def invested(self) -> Decimal:
        """Value reported by the strategy (zero without one)."""
        return self.strategy.invested_value() if self.strategy is not None else ZERO

    def total_assets(self) -> Decimal:
        _, state, balances = self._snapshot()
        return calculate_total_assets(state, balances)

    def total_accounted_assets(self) -> Decimal:
        _, state, balances = self._snapshot()
        return calculate_accounted_assets(state, balances)

    def total_accounted_supply(self) -> Decimal:
        _, state, balances = self._snapshot()
        return calculate_accounted_supply(state, balances)

    def available(self) -> Decimal:
        """Idle assets not owed as fees nor reserved for claimable redemptions."""
        _, state, balances = self._snapshot()
        return calculate_available(state, balances)

    def share_price(self) -> Decimal:
        terms, state, balances = self._snapshot()
        return calculate_share_price(terms, state, balances)

    def unrealized_profit(self) -> Decimal:
        state = self.state
        return calculate_unrealized_profit(state.checkpoint, state.profit_cooldown, self.ledger.current_time)

    def balance_of(self, account: str) -> Decimal:
        return self.ledger.get_balance(account, self.symbol)

    def allowance(self, owner: str, spender: str) -> Decimal:
        return self.state.allowance(owner, spender)

    def total_supply(self) -> Decimal:
        return self.ledger.circulating_supply(self.symbol)

    def convert_to_shares(self, assets: Number, round_up: bool = False) -> Decimal:
        terms, state, balances = self._snapshot()
        return assets_to_shares(terms, to_amount(assets), calculate_share_price(terms, state, balances), round_up)

    def convert_to_assets(self, shares: Number, round_up: bool = False) -> Decimal:
        terms, state, balances = self._snapshot()
        return shares_to_assets(terms, to_amount(shares), calculate_share_price(terms, state, balances), round_up)

    # Previews ignore caps, pause and balances.

    def preview_deposit(self, amount: Number, receiver: Optional[str] = None) -> Decimal:
        terms, state, balances = self._snapshot()
        amount = to_amount(amount)
        fee = ZERO if receiver and state.is_exempt(receiver) else bp(amount, state.fees.entry, round_up=True)
        return calculate_deposit_shares(terms, state, balances, amount - fee)

    def preview_mint(self, shares: Number, receiver: Optional[str] = None) -> Decimal:
        terms, state, balances = self._snapshot()
        net = calculate_mint_assets(terms, state, balances, to_amount(shares))
        return net if receiver and state.is_exempt(receiver) else rev_sub_bp(net, state.fees.entry)

    def preview_withdraw(self, amount: Number, owner: Optional[str] = None) -> Decimal:
        """Shares burned by withdraw(amount) for owner (claim pricing included)."""
        terms, state, balances = self._snapshot()
        return calculate_exit(terms, state, balances, owner or "", assets=to_amount(amount)).shares

    def preview_redeem(self, shares: Number, owner: Optional[str] = None) -> Decimal:
        """Net assets paid by redeem(shares) for owner (claim pricing included)."""
        terms, state, balances = self._snapshot()
        return calculate_exit(terms, state, balances, owner or "", shares=to_amount(shares)).net

    def max_deposit(self, receiver: Optional[str] = None) -> Decimal:
        terms, state, balances = self._snapshot()
        if state.paused or calculate_unowned_assets(terms, state, balances) > 0:
            return ZERO
        return sub_floor(state.max_total_assets, calculate_total_assets(state, balances))

    def max_mint(self, receiver: Optional[str] = None) -> Decimal:
        room = self.max_deposit(receiver)
        return self.preview_deposit(room, receiver) if room > 0 else ZERO

    def max_redeem(self, owner: str) -> Decimal:
        """Shares owner can redeem now, bounded by available liquidity."""
        terms, state, balances = self._snapshot()
        shares = min(self.balance_of(owner), sub_floor(balances.supply, Decimal(1)))
        if state.paused or shares <= 0:
            return ZERO
        quote = calculate_exit(terms, state, balances, owner, shares=shares)
        liquidity = calculate_available(state, balances) + quote.released
        if quote.gross <= liquidity:
            return quote.shares
        return clamp(assets_to_shares(terms, liquidity, quote.share_price), ZERO, shares)

    def max_withdraw(self, owner: str) -> Decimal:
        """Gross assets owner can withdraw now."""
        shares = self.max_redeem(owner)
        if shares <= 0:
            return ZERO
        terms, state, balances = self._snapshot()
        return calculate_exit(terms, state, balances, owner, shares=shares).gross

    def preview_collect_fees(self) -> FeeQuote:
        terms, state, balances = self._snapshot()
        return calculate_fees(
            terms,
            calculate_accounted_assets(state, balances),
            calculate_share_price(terms, state, balances),
            calculate_accounted_supply(state, balances),
            state.fees,
            state.checkpoint,
            balances.now,
        )

    def preview_invest(self, amount: Number) -> Decimal:
        return min(to_amount(amount), self.available())

    def preview_liquidate(self, amount: Number) -> Decimal:
        return min(to_amount(amount), self.invested())

    # ------------------------------------------------------------------------
    # Redemption queries
    # ------------------------------------------------------------------------

    def pending_redeem_request(self, owner: str) -> Decimal:
        """Shares of owner's request still waiting for a liquidity event."""
        request = self.state.request_of(owner)
        if request is None or is_claimable(request):
            return ZERO
        return request.shares

    def claimable_redeem_request(self, owner: str) -> Decimal:
        return calculate_claimable_shares(self.state, owner)

    def pending_withdraw_request(self, owner: str) -> Decimal:
        terms, state = load_pool(self.ledger, self.symbol)
        request = state.request_of(owner)
        return shares_to_assets(terms, self.pending_redeem_request(owner), request.share_price) if request else ZERO

    def claimable_withdraw_request(self, owner: str) -> Decimal:
        terms, state, balances = self._snapshot()
        request = state.request_of(owner)
        shares = calculate_claimable_shares(state, owner)
        if shares <= 0:
            return ZERO
        price = min(request.share_price, calculate_share_price(terms, state, balances))
        return shares_to_assets(terms, shares, price)

    def total_pending_redemption(self) -> Decimal:
        return self.state.requests.total_pending

    def total_claimable_redemption(self) -> Decimal:
        return self.state.requests.total_claimable

    # ========================================================================
    # DEPOSIT / MINT
    # ========================================================================

    def deposit(self, amount: Number, receiver: str, sender: Optional[str] = None) -> Decimal:
        """Deposit assets from sender (default: receiver); returns shares minted."""
        return self.safe_deposit(amount, receiver, None, sender)

    def safe_deposit(self, amount: Number, receiver: str, min_shares_out: Optional[Number],
                     sender: Optional[str] = None) -> Decimal:
        floor = None if min_shares_out is None else to_amount(min_shares_out, "min_shares_out")
        return self._run(
            "deposit", ops.compute_deposit, sender or receiver, receiver, to_amount(amount),
            self.invested(), floor,
        )

    def mint(self, shares: Number, receiver: str, sender: Optional[str] = None) -> Decimal:
        """Mint exactly `shares`; returns the gross assets taken from sender."""
        return self.safe_mint(shares, receiver, None, sender)

    def safe_mint(self, shares: Number, receiver: str, max_amount_in: Optional[Number],
                  sender: Optional[str] = None) -> Decimal:
        ceiling = None if max_amount_in is None else to_amount(max_amount_in, "max_amount_in")
        return self._run(
            "mint", ops.compute_mint, sender or receiver, receiver, to_amount(shares),
            self.invested(), ceiling,
        )

    # ========================================================================
    # WITHDRAW / REDEEM
    # ========================================================================

    def withdraw(self, amount: Number, receiver: str, owner: str, caller: Optional[str] = None) -> Decimal:
        """Withdraw `amount` gross assets of owner's; returns shares burned."""
        return self.safe_withdraw(amount, receiver, owner, None, caller)

    def safe_withdraw(self, amount: Number, receiver: str, owner: str, min_amount_out: Optional[Number],
                      caller: Optional[str] = None) -> Decimal:
        floor = None if min_amount_out is None else to_amount(min_amount_out, "min_amount_out")
        return self._run(
            "withdraw", ops.compute_withdraw, caller or owner, receiver, owner, to_amount(amount),
            self.invested(), floor,
        )

    def redeem(self, shares: Number, receiver: str, owner: str, caller: Optional[str] = None) -> Decimal:
        """Redeem owner's shares; returns the net assets paid to receiver."""
        return self.safe_redeem(shares, receiver, owner, None, caller)

    def safe_redeem(self, shares: Number, receiver: str, owner: str, min_amount_out: Optional[Number],
                    caller: Optional[str] = None) -> Decimal:
        floor = None if min_amount_out is None else to_amount(min_amount_out, "min_amount_out")
        return self._run(
            "redeem", ops.compute_redeem, caller or owner, receiver, owner, to_amount(shares),
            self.invested(), floor,
        )

    # ========================================================================
    # REDEMPTION REQUESTS
    # ========================================================================

    def request_redeem(self, shares: Number, operator: str, owner: str) -> int:
        """Create or raise owner's request to `shares`, submitted by operator; returns the request id."""
        request_id = self._run(
            "request_redeem", ops.compute_request_redeem, to_amount(shares), operator, owner, self.invested(),
        )
        return int(request_id)

    def request_withdraw(self, amount: Number, operator: str, owner: str) -> int:
        request_id = self._run(
            "request_withdraw", ops.compute_request_withdraw, to_amount(amount), operator, owner, self.invested(),
        )
        return int(request_id)

    def cancel_redeem_request(self, operator: str, owner: str) -> Decimal:
        """Cancel owner's request; returns the shares burned as opportunity cost."""
        return self._run("cancel_redeem_request", ops.compute_cancel_redeem_request, operator, owner, self.invested())

    # ========================================================================
    # SHARES
    # ========================================================================

    def approve(self, owner: str, spender: str, shares: Number) -> Decimal:
        return self._run("approve", ops.compute_approve, owner, spender, to_amount(shares))

    def transfer(self, sender: str, receiver: str, shares: Number, caller: Optional[str] = None) -> Decimal:
        return self._run(
            "transfer", ops.compute_share_transfer, caller or sender, sender, receiver, to_amount(shares),
        )

    # ========================================================================
    # FEES
    # ========================================================================

    def collect_fees(self, caller: str) -> Decimal:
        """Mint accrued performance and management fees; returns fee shares minted."""
        return self._privileged(MANAGER, caller, "collect_fees", ops.compute_fee_collection, self.invested())

    def claim_asset_fees(self, caller: str) -> Decimal:
        """Send accrued entry, exit and flash fees to the fee collector."""
        return self._privileged(MANAGER, caller, "claim_asset_fees", ops.compute_claim_asset_fees)

    def set_fees(self, caller: str, fees: Fees) -> None:
        """Collect under the current rates, then switch to `fees`."""
        self.access.check_role(ADMIN, caller)
        with self._guard("set_fees"):
            self._apply(ops.compute_fee_collection(self.ledger, self.symbol, self.invested()))
            self._apply(ops.compute_set_fees(self.ledger, self.symbol, fees))

    def set_fee_collector(self, caller: str, collector: Optional[str]) -> None:
        self._privileged(ADMIN, caller, "set_fee_collector", ops.compute_set_fee_collector, collector)

    def set_exemption(self, caller: str, account: str, exempt: bool = True) -> None:
        self._privileged(MANAGER, caller, "set_exemption", ops.compute_set_exemption, account, exempt)

    # ========================================================================
    # ADMINISTRATION
    # ========================================================================

    def set_max_total_assets(self, caller: str, amount: Number) -> None:
        self._privileged(MANAGER, caller, "set_max_total_assets", ops.compute_set_max_total_assets,
                         to_amount(amount))

    def set_min_liquidity(self, caller: str, amount: Number) -> None:
        self._privileged(ADMIN, caller, "set_min_liquidity", ops.compute_set_min_liquidity, to_amount(amount))

    def set_profit_cooldown(self, caller: str, cooldown: Duration) -> None:
        self._privileged(ADMIN, caller, "set_profit_cooldown", ops.compute_set_profit_cooldown, cooldown)

    def set_redemption_lock_duration(self, caller: str, duration: Duration) -> None:
        self._privileged(ADMIN, caller, "set_redemption_lock_duration",
                         ops.compute_set_redemption_lock_duration, duration)

    def set_max_loan(self, caller: str, amount: Number) -> None:
        self._privileged(ADMIN, caller, "set_max_loan", ops.compute_set_max_loan, to_amount(amount))

    def pause(self, caller: str) -> None:
        """Stop withdrawals and flash loans; deposits stop through the zeroed cap."""
        self._privileged(MANAGER, caller, "pause", ops.compute_pause)

    def unpause(self, caller: str) -> None:
        self._privileged(MANAGER, caller, "unpause", ops.compute_unpause)

    def request_rescue(self, caller: str, unit: str) -> None:
        """Start the rescue timelock for a stray `unit` in the vault wallet; caller receives it."""
        self._privileged(ADMIN, caller, "request_rescue", ops.compute_request_rescue, unit, caller)

    def rescue(self, caller: str, unit: str) -> Decimal:
        """Execute a requested rescue inside its window; returns the amount sent to caller."""
        amount = self._privileged(ADMIN, caller, "rescue", ops.compute_rescue, unit, caller)
        logger.info("Rescued stray balance", extra={"pool": self.symbol, "unit": unit, "amount": amount})
        return amount

    def seed_liquidity(self, caller: str, amount: Number, max_total_assets: Number) -> Decimal:
        """
        Bootstrap the pool: set the cap, deposit `amount` from caller, unpause.

        Returns:
            Shares minted to caller

        Raises:
            StaleOrInvalidRequest: If the pool already holds min_liquidity
            InvalidAmount: If amount is below min_liquidity
        """
        self.access.check_role(MANAGER, caller)
        amount = to_amount(amount)
        cap = to_amount(max_total_assets, "max_total_assets")
        _, state, balances = self._snapshot()
        if calculate_total_assets(state, balances) >= state.min_liquidity and balances.supply > 0:
            raise StaleOrInvalidRequest(f"{self.symbol} is already seeded")
        if amount < state.min_liquidity or amount <= 0:
            raise InvalidAmount(f"{self.symbol}: seed of {amount} below minimum liquidity {state.min_liquidity}")

        with self._guard("seed_liquidity"):
            self._apply(ops.compute_set_max_total_assets(self.ledger, self.symbol, cap))
            shares = self._apply(ops.compute_deposit(self.ledger, self.symbol, caller, caller, amount, self.invested()))
            self._apply(ops.compute_unpause(self.ledger, self.symbol))
        logger.info("Pool seeded", extra={"pool": self.symbol, "amount": amount, "shares": shares})
        return shares

    # ========================================================================
    # CAPITAL DEPLOYMENT
    # ========================================================================

    def _require_strategy(self) -> Strategy:
        if self.strategy is None:
            raise StaleOrInvalidRequest(f"{self.symbol} has no strategy")
        return self.strategy

    def invest(self, caller: str, amount: Number) -> Decimal:
        """Hand `amount` of available assets to the strategy; returns the amount invested."""
        self.access.check_role(KEEPER, caller)
        strategy = self._require_strategy()
        amount = to_amount(amount)
        if amount <= 0:
            raise InvalidAmount("invest amount must be positive")
        with self._guard("invest"):
            return self._invest(strategy, amount)

    def _invest(self, strategy: Strategy, amount: Decimal) -> Decimal:
        if amount > self.available():
            raise CapacityExceeded(f"{self.symbol}: cannot invest {amount}, {self.available()} available")
        invested = strategy.invest(amount)
        return self._apply(ops.compute_invest_checkpoint(self.ledger, self.symbol, invested))

    def liquidate(self, caller: str, amount: Number) -> Decimal:
        """Recover up to `amount` from the strategy and mark a liquidity event; returns the amount recovered."""
        self.access.check_role(KEEPER, caller)
        amount = to_amount(amount)
        with self._guard("liquidate"):
            recovered = self._require_strategy().liquidate(amount) if amount > 0 else ZERO
            return self._apply(ops.compute_liquidity_event(
                self.ledger, self.symbol, "Liquidate", recovered, self.invested(),
            ))

    def harvest(self, caller: str) -> Decimal:
        """Collect strategy rewards, book them for linear release and mark a liquidity event."""
        self.access.check_role(KEEPER, caller)
        strategy = self._require_strategy()
        with self._guard("harvest"):
            return self._harvest(strategy)

    def _harvest(self, strategy: Strategy) -> Decimal:
        rewards = strategy.harvest()
        return self._apply(ops.compute_liquidity_event(
            self.ledger, self.symbol, "Harvest", rewards, self.invested(), profit=rewards,
        ))

    def compound(self, caller: str, amount: Optional[Number] = None) -> Tuple[Decimal, Decimal]:
        """
        Harvest, then invest `amount` (all available assets when None) in one operation.

        Returns:
            (rewards harvested, amount invested)
        """
        self.access.check_role(KEEPER, caller)
        strategy = self._require_strategy()
        amount = None if amount is None else to_amount(amount)
        with self._guard("compound"):
            rewards = self._harvest(strategy)
            if amount is None:
                amount = self.available()
            invested = self._invest(strategy, amount) if amount > 0 else ZERO
        return rewards, invested

    # ========================================================================
    # FLASH LOANS
    # ========================================================================

    def flash_fee(self, token: str, borrower: Any, amount: Number) -> Decimal:
        terms, state = load_pool(self.ledger, self.symbol)
        if token != terms.asset:
            raise StaleOrInvalidRequest(f"{self.symbol} lends {terms.asset}, not {token}")
        return calculate_flash_fee(state, to_amount(amount))

    def max_flash_loan(self, token: str) -> Decimal:
        terms, state, balances = self._snapshot()
        if token != terms.asset or state.paused:
            return ZERO
        return calculate_max_flash_loan(state, balances)

    def flash_loan(self, borrower: FlashBorrower, token: str, amount: Number, data: Any = None,
                   initiator: Optional[str] = None) -> bool:
        """
        Lend `amount` to borrower for the duration of its on_flash_loan() callback.

        Raises:
            IntegrityViolation: Bad acknowledgement or repayment short of amount + fee
        """
        with self._guard("flash_loan"):
            settle = run_flash_loan(
                self.ledger, self.symbol, borrower, token, to_amount(amount), data, initiator, self.invested(),
            )
            self.events.extend(settle.events)
        return True

    def __repr__(self):
        return f"Vault({self.symbol}, supply={self.total_supply()}, assets={self.total_assets()})"
