"""
ledger.py - Stateful Double-Entry Token Ledger

The Ledger class is the central state manager of the vault system. It is the
only module that mutates balances and unit state.

Key responsibilities:
    - Implements the LedgerView protocol for read-only access by pure functions
    - Executes transactions atomically (all moves and state changes, or none)
    - Maintains wallet balances and unit definitions
    - Tracks logical time
    - Provides atomic() scopes so multi-transaction vault operations
      (flash loans, strategy calls) roll back as a whole
"""

from __future__ import annotations
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterator, List, Set, Optional, Any
import copy
from decimal import Decimal

from .core import (
    # Types
    Move, Transaction, Unit,
    PendingTransaction, TransactionOrigin, OriginType,
    ExecuteResult,
    Positions, UnitState,
    build_transaction,
    # Constants
    QUANTITY_EPSILON, SYSTEM_WALLET,
    # Exceptions
    LedgerError, InvalidAmount, InsufficientFunds, BalanceConstraintViolation,
    TransferRuleViolation, StaleOrInvalidRequest,
    UnitNotRegistered, WalletNotRegistered,
    # Helper functions
    _freeze_state,
)


class Ledger:
    """
    Double-entry token ledger with full validation and audit trail.

    Design Principles:
        - Always validates: every transaction is checked against balance limits,
          transfer rules, unit precision and the state it was built from.
        - Always logs: every applied transaction is kept in transaction_log.

    Thread Safety:
        Not thread-safe. Each thread should maintain its own Ledger instance.

    Example:
        ledger = Ledger("main", datetime(2025, 1, 1))
        ledger.register_unit(token("USDC", "USD Coin", decimals=6))
        ledger.register_wallet("alice")
        ledger.register_wallet("bob")
        ledger.transfer(SYSTEM_WALLET, "alice", "USDC", Decimal("1000000"))
        ledger.transfer("alice", "bob", "USDC", Decimal("250000"))
    """

    POSITION_EPSILON = QUANTITY_EPSILON

    def __init__(
        self,
        name: str,
        initial_time: Optional[datetime] = None,
        verbose: bool = True,
        test_mode: bool = False
    ):
        """
        Create a ledger.

        Args:
            name: Ledger identifier
            initial_time: Starting time for the ledger (default: 1970-01-01)
            verbose: Print registrations and transaction results (default: True)
            test_mode: Allow set_balance() calls (default: False)
        """
        self.name = name
        self.balances: Dict[str, Dict[str, Decimal]] = {}
        self.units: Dict[str, Unit] = {}
        self.registered_wallets: Set[str] = set()
        self.seen_intent_ids: Set[str] = set()
        self.transaction_log: List[Transaction] = []
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self.verbose = verbose
        self._test_mode = test_mode
        self._next_sequence: int = 0
        # Inverted index unit -> {wallet -> quantity}
        self._positions_by_unit: Dict[str, Dict[str, Decimal]] = defaultdict(dict)
        self._atomic_depth = 0

        self.registered_wallets.add(SYSTEM_WALLET)
        self.balances[SYSTEM_WALLET] = defaultdict(lambda: Decimal("0"))

    # ========================================================================
    # LedgerView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the ledger."""
        return self._current_time

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """
        Get the balance of a unit in a wallet.

        Raises:
            WalletNotRegistered: If wallet is not registered
            UnitNotRegistered: If unit is not registered
        """
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return self.balances[wallet_id].get(unit_symbol, Decimal("0"))

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """
        Get a deep copy of a unit's internal state.

        Raises:
            UnitNotRegistered: If unit is not registered
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        unit_obj = self.units[unit_symbol]
        return copy.deepcopy(unit_obj.state) if unit_obj.state else {}

    def get_positions(self, unit_symbol: str) -> Positions:
        """Get all non-zero positions for a unit across all wallets."""
        return dict(self._positions_by_unit.get(unit_symbol, {}))

    def list_wallets(self) -> Set[str]:
        """List all registered wallet IDs."""
        return self.registered_wallets.copy()

    def list_units(self) -> List[str]:
        """List all registered unit symbols."""
        return sorted(self.units.keys())

    def get_unit(self, symbol: str) -> Unit:
        """Return the Unit object for a given symbol."""
        if symbol not in self.units:
            raise UnitNotRegistered(f"Unit {symbol} not registered")
        return self.units[symbol]

    def total_supply(self, unit_symbol: str) -> Decimal:
        """
        Sum of a unit's balances across all wallets, system wallet included.

        Always zero for units that only enter circulation through the system
        wallet; see circulating_supply() for the amount held by participants.
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return sum(
            (self.balances[w].get(unit_symbol, Decimal("0")) for w in sorted(self.registered_wallets)),
            Decimal("0"),
        )

    def circulating_supply(self, unit_symbol: str) -> Decimal:
        """Sum of a unit's balances across all wallets except the system wallet."""
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        positions = self._positions_by_unit.get(unit_symbol, {})
        return sum(
            (qty for wallet, qty in sorted(positions.items()) if wallet != SYSTEM_WALLET),
            Decimal("0"),
        )

    def verify_double_entry(
        self,
        expected_supplies: Dict[str, Decimal] = None,
        tolerance: Decimal = Decimal("0")
    ) -> Dict[str, Any]:
        """
        Verify that conservation laws hold for all units.

        Without expected_supplies, returns the current total of each unit.
        With expected_supplies, also reports every unit whose total differs.

        Returns:
            Dict with keys 'valid', 'supplies' and 'discrepancies'.

        Example:
            result = ledger.verify_double_entry({'USDC': Decimal("0")})
            assert result['valid'], result['discrepancies']
        """
        supplies = {}
        discrepancies = []

        for unit_symbol in self.units:
            current_supply = self.total_supply(unit_symbol)
            supplies[unit_symbol] = current_supply

            if expected_supplies and unit_symbol in expected_supplies:
                expected = expected_supplies[unit_symbol]
                difference = abs(current_supply - expected)
                if difference > tolerance:
                    discrepancies.append({
                        'unit': unit_symbol,
                        'expected': expected,
                        'actual': current_supply,
                        'difference': difference,
                    })

        if expected_supplies:
            for unit_symbol, expected in expected_supplies.items():
                if unit_symbol not in supplies:
                    discrepancies.append({
                        'unit': unit_symbol,
                        'expected': expected,
                        'actual': Decimal("0"),
                        'difference': abs(expected),
                        'error': 'unit not registered',
                    })

        return {
            'valid': len(discrepancies) == 0,
            'supplies': supplies,
            'discrepancies': discrepancies,
        }

    def is_registered(self, wallet_id: str) -> bool:
        """Check if a wallet is registered."""
        return wallet_id in self.registered_wallets

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the ledger's logical clock. Time can only move forward.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    # ========================================================================
    # REGISTRATION (Mutating)
    # ========================================================================

    def register_wallet(self, wallet_id: str) -> str:
        """
        Register a new wallet.

        Raises:
            ValueError: If wallet is already registered
        """
        if wallet_id in self.registered_wallets:
            raise ValueError(f"Wallet {wallet_id} already registered")
        self.registered_wallets.add(wallet_id)
        self.balances[wallet_id] = defaultdict(lambda: Decimal("0"))
        return wallet_id

    def register_unit(self, unit: Unit) -> None:
        """
        Register a new unit.

        Raises:
            ValueError: If unit symbol is already registered
        """
        if unit.symbol in self.units:
            raise ValueError(f"Unit {unit.symbol} already registered")
        self.units[unit.symbol] = unit
        if self.verbose:
            rule_str = f", rule={unit.transfer_rule.__name__}" if unit.transfer_rule else ""
            print(f"📝 Registered: {unit.symbol} ({unit.name}) [{unit.unit_type}]{rule_str}")

    def set_balance(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        """
        Set a wallet's balance directly.

        WARNING: bypasses double-entry accounting; only available in test mode.

        Raises:
            LedgerError: If called when test_mode is False
        """
        if not self._test_mode:
            raise LedgerError(
                "set_balance() is disabled in production mode. "
                "Use transfer() or build_transaction() and execute() to modify balances. "
                "Set test_mode=True when creating Ledger for testing."
            )
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        if not isinstance(quantity, Decimal):
            quantity = Decimal(str(quantity))
        self.balances[wallet_id][unit_symbol] = quantity
        self._update_position_index(wallet_id, unit_symbol, quantity)

    # ========================================================================
    # TRANSACTION EXECUTION (Mutating)
    # ========================================================================

    def _generate_exec_id(self, sequence: int) -> str:
        """Format: exec:{ledger_name}:{sequence:012d}:{timestamp_micros}"""
        micros = int(self._current_time.timestamp() * 1_000_000)
        return f"exec:{self.name}:{sequence:012d}:{micros}"

    def execute(self, pending: PendingTransaction, strict: bool = False) -> ExecuteResult:
        """
        Execute a PendingTransaction atomically.

        All moves and state changes are applied together or not at all.
        A pending transaction whose intent_id was already applied is skipped.

        Args:
            pending: PendingTransaction to execute
            strict: Raise the validation error instead of returning REJECTED

        Returns:
            ExecuteResult.APPLIED, ALREADY_APPLIED or REJECTED

        Raises:
            LedgerError: In strict mode, the first validation failure found
        """
        if pending.is_empty():
            return ExecuteResult.APPLIED

        if pending.intent_id in self.seen_intent_ids:
            if self.verbose:
                print(f"⚠️  ALREADY_APPLIED: intent_id={pending.intent_id}")
            return ExecuteResult.ALREADY_APPLIED

        error = self._validate_pending(pending)
        if error is not None:
            if self.verbose:
                print(f"✗ REJECTED: {error}")
            if strict:
                raise error
            return ExecuteResult.REJECTED

        sequence = self._next_sequence
        self._next_sequence += 1

        tx = Transaction(
            moves=pending.moves,
            state_changes=pending.state_changes,
            origin=pending.origin,
            timestamp=pending.timestamp,
            intent_id=pending.intent_id,
            exec_id=self._generate_exec_id(sequence),
            ledger_name=self.name,
            execution_time=self._current_time,
            sequence_number=sequence,
        )

        self._execute_moves(tx.moves)

        # Unit is frozen, so each state change installs a new Unit instance
        for sc in tx.state_changes:
            old_unit = self.units[sc.unit]
            new_state = copy.deepcopy(sc.new_state if isinstance(sc.new_state, dict) else {})
            self.units[sc.unit] = replace(old_unit, _frozen_state=_freeze_state(new_state))

        self.transaction_log.append(tx)
        self.seen_intent_ids.add(pending.intent_id)

        if self.verbose:
            print(f"{tx!r}\n  ✓ APPLIED")
        return ExecuteResult.APPLIED

    def transfer(
        self,
        source: str,
        dest: str,
        unit_symbol: str,
        quantity: Decimal,
        contract_id: Optional[str] = None,
    ) -> Transaction:
        """
        Move a quantity of a unit between two wallets, raising on failure.

        Each call gets a fresh contract_id so repeated identical transfers are
        not collapsed by idempotency.

        Returns:
            The executed Transaction

        Raises:
            LedgerError: If the transfer fails validation
        """
        if not isinstance(quantity, Decimal):
            quantity = Decimal(str(quantity))
        contract_id = contract_id or f"transfer:{self._next_sequence}"
        origin = TransactionOrigin(
            OriginType.SYSTEM if source == SYSTEM_WALLET else OriginType.USER_ACTION,
            source_id=source,
            unit_symbol=unit_symbol,
            event_type="TRANSFER",
        )
        pending = build_transaction(self, [Move(quantity, unit_symbol, source, dest, contract_id)], origin=origin)
        self.execute(pending, strict=True)
        return self.transaction_log[-1]

    def _validate_pending(self, pending: PendingTransaction) -> Optional[LedgerError]:
        """
        Validate a pending transaction against all constraints.

        Checks performed:
        1. Timestamp validation (transaction must not be from the future)
        2. Unit and wallet registration
        3. Unit precision (no fractional minimal units)
        4. Transfer rule enforcement
        5. Balance constraints (min/max balance limits)
        6. State changes were built from the current unit state

        Returns:
            None if valid, otherwise the error describing the first failure
        """
        if pending.timestamp > self._current_time:
            return StaleOrInvalidRequest("future timestamp")

        for move in pending.moves:
            if move.unit_symbol not in self.units:
                return UnitNotRegistered(f"unit not registered: {move.unit_symbol}")
            if not self.is_registered(move.source):
                return WalletNotRegistered(f"wallet not registered: {move.source}")
            if not self.is_registered(move.dest):
                return WalletNotRegistered(f"wallet not registered: {move.dest}")

            unit = self.units[move.unit_symbol]
            if move.quantity <= 0:
                return InvalidAmount(f"{move.unit_symbol}: non-positive quantity {move.quantity}")
            if unit.round(move.quantity) != move.quantity:
                return InvalidAmount(
                    f"{move.unit_symbol}: {move.quantity} exceeds precision of {unit.decimal_places} places"
                )
            if unit.transfer_rule:
                try:
                    unit.transfer_rule(self, move)
                except TransferRuleViolation as e:
                    return e

        net: Dict[tuple, Decimal] = {}
        for move in pending.moves:
            key_src = (move.source, move.unit_symbol)
            key_dst = (move.dest, move.unit_symbol)
            net[key_src] = net.get(key_src, Decimal("0")) - move.quantity
            net[key_dst] = net.get(key_dst, Decimal("0")) + move.quantity

        # SYSTEM_WALLET is exempt from balance validation (issuance/burning)
        for (wallet, unit_sym), delta in net.items():
            if wallet == SYSTEM_WALLET:
                continue
            current = self.balances[wallet][unit_sym]
            unit = self.units[unit_sym]
            proposed = current + delta
            if proposed < unit.min_balance:
                return InsufficientFunds(f"{wallet} {unit_sym}: {proposed} < min {unit.min_balance}")
            if proposed > unit.max_balance:
                return BalanceConstraintViolation(f"{wallet} {unit_sym}: {proposed} > max {unit.max_balance}")

        for sc in pending.state_changes:
            if sc.unit not in self.units:
                return UnitNotRegistered(f"unit not registered: {sc.unit}")
            if sc.old_state is not None and sc.old_state != self.units[sc.unit].state:
                changed = sorted(
                    k for k in set(sc.old_state) | set(self.units[sc.unit].state)
                    if sc.old_state.get(k) != self.units[sc.unit].state.get(k)
                )
                return StaleOrInvalidRequest(f"stale state for {sc.unit}: {', '.join(changed)}")

        return None

    def _update_position_index(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        """Keep the unit -> wallet index in sync; dust positions are dropped."""
        if abs(quantity) > self.POSITION_EPSILON:
            self._positions_by_unit[unit_symbol][wallet_id] = quantity
        else:
            self._positions_by_unit[unit_symbol].pop(wallet_id, None)

    def _execute_moves(self, moves) -> None:
        """Apply moves to wallet balances and update the position index."""
        for move in moves:
            unit = self.units[move.unit_symbol]
            new_src_balance = unit.round(
                self.balances[move.source][move.unit_symbol] - move.quantity
            )
            self.balances[move.source][move.unit_symbol] = new_src_balance
            self._update_position_index(move.source, move.unit_symbol, new_src_balance)
            new_dst_balance = unit.round(
                self.balances[move.dest][move.unit_symbol] + move.quantity
            )
            self.balances[move.dest][move.unit_symbol] = new_dst_balance
            self._update_position_index(move.dest, move.unit_symbol, new_dst_balance)

    # ========================================================================
    # SNAPSHOTS
    # ========================================================================

    def clone(self) -> Ledger:
        """
        Create a fully independent deep copy of this ledger.

        Includes units and their state, wallets, balances, transaction log,
        current time and configuration.
        """
        cloned = Ledger.__new__(Ledger)
        cloned.name = self.name
        cloned._current_time = self._current_time
        cloned.verbose = self.verbose
        cloned._test_mode = self._test_mode
        cloned._atomic_depth = 0

        cloned.units = {
            symbol: replace(unit, _frozen_state=_freeze_state(copy.deepcopy(unit.state)))
            for symbol, unit in self.units.items()
        }

        cloned.registered_wallets = self.registered_wallets.copy()
        cloned.seen_intent_ids = self.seen_intent_ids.copy()
        cloned.transaction_log = list(self.transaction_log)
        cloned._next_sequence = self._next_sequence

        cloned.balances = {}
        for wallet, bals in self.balances.items():
            cloned.balances[wallet] = defaultdict(lambda: Decimal("0"), bals)

        cloned._positions_by_unit = defaultdict(dict)
        for unit_symbol, positions in self._positions_by_unit.items():
            cloned._positions_by_unit[unit_symbol] = dict(positions)

        return cloned

    def _restore(self, snapshot: Ledger) -> None:
        """Replace this ledger's contents with a snapshot taken by clone()."""
        depth = self._atomic_depth
        self.__dict__.clear()
        self.__dict__.update(snapshot.__dict__)
        self._atomic_depth = depth

    @contextmanager
    def atomic(self) -> Iterator[Ledger]:
        """
        Run a block of several transactions as one all-or-nothing unit.

        If the block raises, balances, unit state, the transaction log and the
        idempotency set are restored to what they were on entry and the
        exception propagates. Nested scopes join the outermost one.

        Example:
            with ledger.atomic():
                ledger.transfer("vault", "borrower", "USDC", Decimal("1000"))
                borrower.on_flash_loan(...)
        """
        if self._atomic_depth:
            self._atomic_depth += 1
            try:
                yield self
            finally:
                self._atomic_depth -= 1
            return

        snapshot = self.clone()
        self._atomic_depth = 1
        try:
            yield self
        except BaseException:
            if self.verbose:
                print(f"↺ ROLLBACK to sequence {snapshot._next_sequence}")
            self._restore(snapshot)
            raise
        finally:
            self._atomic_depth = 0
