"""
test_core_types.py - Unit tests for core data types

Tests:
- Move validation
- Intent id determinism
- UnitStateChange.changed_fields
- Unit factories and error hierarchy
- Vault share unit creation and state round trip
"""

import pytest
from datetime import datetime
from decimal import Decimal

from vaultledger import (
    Move, UnitStateChange, TransactionOrigin, OriginType, PendingTransaction,
    token, create_vault_unit, load_pool, Fees,
    UNIT_TYPE_TOKEN, UNIT_TYPE_VAULT_SHARE,
    LedgerError, InvalidAmount, CapacityExceeded, Unauthorized,
    InsufficientFunds, BalanceConstraintViolation, TransferRuleViolation, ReentrantCall, PoolPaused,
)
from vaultledger.pool.state import to_state_dict

from tests.fake_view import FakeView


T0 = datetime(2025, 1, 1)


class TestMove:

    def test_valid_move(self):
        move = Move(Decimal(5), "USDC", "alice", "bob", "pay")
        assert move.quantity == Decimal(5)

    @pytest.mark.parametrize("kwargs", [
        dict(source=""),
        dict(dest=" "),
        dict(unit_symbol=""),
        dict(contract_id=""),
        dict(dest="alice"),
    ])
    def test_invalid_fields(self, kwargs):
        args = dict(quantity=Decimal(5), unit_symbol="USDC", source="alice", dest="bob", contract_id="pay")
        args.update(kwargs)
        with pytest.raises(ValueError):
            Move(**args)

    @pytest.mark.parametrize("quantity", [5, Decimal("NaN"), Decimal("Infinity"), Decimal(0)])
    def test_invalid_quantity(self, quantity):
        with pytest.raises(ValueError):
            Move(quantity, "USDC", "alice", "bob", "pay")


class TestIntentId:

    def _pending(self, quantity, source_id="alice"):
        return PendingTransaction(
            moves=(Move(Decimal(quantity), "USDC", "alice", "bob", "pay"),),
            state_changes=(),
            origin=TransactionOrigin(OriginType.USER_ACTION, source_id),
            timestamp=T0,
        )

    def test_same_intent_same_id(self):
        assert self._pending(5).intent_id == self._pending(5).intent_id

    def test_equivalent_decimals_same_id(self):
        assert self._pending("5").intent_id == self._pending("5.000").intent_id

    def test_different_intent_different_id(self):
        assert self._pending(5).intent_id != self._pending(6).intent_id
        assert self._pending(5).intent_id != self._pending(5, source_id="bob").intent_id


class TestUnitStateChange:

    def test_changed_fields(self):
        change = UnitStateChange("vUSDC", {'a': 1, 'b': 2}, {'a': 1, 'b': 3, 'c': 4})
        assert change.changed_fields() == {'b': (2, 3), 'c': (None, 4)}


class TestUnits:

    def test_token(self):
        unit = token("USDC", "USD Coin", decimals=6)
        assert unit.unit_type == UNIT_TYPE_TOKEN
        assert unit.decimal_places == 0
        assert unit.round(Decimal("1.9")) == Decimal(1)

    def test_vault_unit_starts_paused(self):
        unit = create_vault_unit("vUSDC", "USDC Vault", "USDC", 6)
        assert unit.unit_type == UNIT_TYPE_VAULT_SHARE
        terms, state = load_pool(FakeView({}, {"vUSDC": unit.state}), "vUSDC")
        assert terms.vault_wallet == "vUSDC"
        assert terms.wei_per_share == Decimal(1_000_000)
        assert state.paused
        assert state.max_total_assets == Decimal(0)
        assert state.checkpoint.share_price == Decimal(1_000_000)
        assert state.requests.next_request_id == 1

    def test_vault_unit_rejects_fees_above_maximum(self):
        with pytest.raises(InvalidAmount):
            create_vault_unit("vUSDC", "USDC Vault", "USDC", 6, fees=Fees(perf=5001))

    def test_state_dict_round_trip(self):
        unit = create_vault_unit("vUSDC", "USDC Vault", "USDC", 6, fees=Fees(perf=1000, mgmt=100),
                                 redemption_lock_duration=3600, max_loan=Decimal(5), fee_collector="c")
        terms, state = load_pool(FakeView({}, {"vUSDC": unit.state}), "vUSDC")
        again = load_pool(FakeView({}, {"vUSDC": to_state_dict(terms, state)}), "vUSDC")
        assert again == (terms, state)


class TestErrorHierarchy:

    @pytest.mark.parametrize("error, base", [
        (InvalidAmount, ValueError),
        (InsufficientFunds, CapacityExceeded),
        (BalanceConstraintViolation, CapacityExceeded),
        (TransferRuleViolation, Unauthorized),
        (ReentrantCall, Unauthorized),
        (PoolPaused, Unauthorized),
        (Unauthorized, LedgerError),
    ])
    def test_subclasses(self, error, base):
        assert issubclass(error, base)
