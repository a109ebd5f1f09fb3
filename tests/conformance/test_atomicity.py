"""
Atomicity Conformance Tests

INVARIANT: A vault operation either applies all of its effects or none.

    ledger_before = clone(ledger)
    try: vault.op(...)
    except LedgerError: assert ledger == ledger_before

This covers balances, the pool state (including its nonce), the transaction
log and the event list: a failed operation, including a flash loan whose
borrower misbehaves after receiving the funds, leaves no trace.
"""

from hypothesis import given, settings
from hypothesis import strategies as st
from decimal import Decimal
import pytest

from vaultledger import (
    Fees, FLASH_CALLBACK_SUCCESS, LedgerError, IntegrityViolation, ReentrantCall,
)

from tests.conftest import (
    USDC, VAULT, usdc, after, make_ledger, make_vault, seed, compare_ledger_states,
)


class ShortBorrower:
    """Repays amount + fee - shortfall, optionally moving other funds first."""

    def __init__(self, ledger, shortfall, side_payment=Decimal(0)):
        self.ledger = ledger
        self.wallet = "borrower"
        self.shortfall = shortfall
        self.side_payment = side_payment

    def on_flash_loan(self, initiator, token, amount, fee, data):
        if self.side_payment > 0:
            self.ledger.transfer("borrower", "alice", token, self.side_payment)
        repay = amount + fee - self.shortfall
        if repay > 0:
            self.ledger.transfer("borrower", VAULT, token, repay)
        return FLASH_CALLBACK_SUCCESS


def _lender():
    ledger = make_ledger()
    vault = make_vault(ledger, fees=Fees(entry=25, exit=50, flash=30), max_loan=usdc(80))
    seed(vault)
    vault.deposit(usdc(200), "alice")
    vault.deposit(usdc(150), "bob")
    return ledger, vault


def _assert_untouched(ledger, before, vault, events_before):
    diff = compare_ledger_states(before, ledger)
    assert diff["equal"], diff
    assert len(ledger.transaction_log) == len(before.transaction_log)
    assert ledger.seen_intent_ids == before.seen_intent_ids
    assert len(vault.events) == events_before


class TestAtomicityProperties:
    """Property-based atomicity tests."""

    @given(
        amount=st.integers(min_value=1, max_value=80),
        shortfall=st.integers(min_value=1, max_value=1_000),
        side_payment=st.integers(min_value=0, max_value=50),
    )
    @settings(max_examples=50, deadline=None)
    def test_short_repayment_rolls_back(self, amount, shortfall, side_payment):
        """
        PROPERTY: A flash loan repaid short by any amount leaves no trace,
        including transfers the borrower made inside its callback.
        """
        ledger, vault = _lender()
        before = ledger.clone()
        events_before = len(vault.events)
        borrower = ShortBorrower(ledger, Decimal(shortfall), usdc(side_payment))
        with pytest.raises(IntegrityViolation):
            vault.flash_loan(borrower, USDC, usdc(amount))
        _assert_untouched(ledger, before, vault, events_before)
        assert vault.state.flash.outstanding == Decimal(0)

    @given(extra=st.integers(min_value=1, max_value=10_000))
    @settings(max_examples=50, deadline=None)
    def test_oversized_redeem_rolls_back(self, extra):
        """
        PROPERTY: Redeeming more shares than owned changes nothing.
        """
        ledger, vault = _lender()
        vault.request_redeem(usdc(50), "alice", "alice")
        before = ledger.clone()
        events_before = len(vault.events)
        with pytest.raises(LedgerError):
            vault.redeem(vault.balance_of("alice") + Decimal(extra), "alice", "alice")
        _assert_untouched(ledger, before, vault, events_before)

    @given(amount=st.integers(min_value=1, max_value=5_000))
    @settings(max_examples=50, deadline=None)
    def test_rejected_deposit_rolls_back(self, amount):
        """
        PROPERTY: A deposit is either fully applied or rejected without effect.
        """
        ledger, vault = _lender()
        vault.set_max_total_assets("manager", usdc(2_000))
        before = ledger.clone()
        events_before = len(vault.events)
        try:
            vault.deposit(usdc(amount), "carol")
        except LedgerError:
            _assert_untouched(ledger, before, vault, events_before)
        else:
            assert vault.balance_of("carol") > 0
            assert vault.state.nonce > before.get_unit_state(VAULT)['nonce']


class TestAtomicityExamples:
    """Explicit atomicity examples."""

    def test_illiquid_claim_rolls_back(self):
        ledger, vault = _lender()
        vault.request_redeem(usdc(100), "alice", "alice")
        vault.invest("keeper", vault.available())
        before = ledger.clone()
        events_before = len(vault.events)
        with pytest.raises(LedgerError):
            vault.redeem(usdc(100), "alice", "alice")
        _assert_untouched(ledger, before, vault, events_before)

    def test_reentrant_strategy_rolls_back(self):
        ledger, vault = _lender()

        class Reentrant:
            def invested_value(self):
                return Decimal(0)

            def invest(self, amount):
                ledger.transfer(VAULT, "strategy", USDC, amount)
                vault.deposit(usdc(1), "carol")
                return amount

        vault.strategy = Reentrant()
        before = ledger.clone()
        events_before = len(vault.events)
        with pytest.raises(ReentrantCall):
            vault.invest("keeper", usdc(10))
        _assert_untouched(ledger, before, vault, events_before)

    def test_failed_fee_collection_keeps_clock(self):
        ledger, vault = _lender()
        vault.set_fees("admin", Fees(mgmt=100))
        after(ledger, days=30)
        clock = vault.state.checkpoint.fee_collection
        before = ledger.clone()
        with pytest.raises(LedgerError):
            vault.collect_fees("alice")
        assert vault.state.checkpoint.fee_collection == clock
        assert compare_ledger_states(before, ledger)["equal"]
