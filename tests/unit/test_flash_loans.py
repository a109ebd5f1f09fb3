"""
test_flash_loans.py - Unit tests for flash loans

Tests:
- Fee quote and maximum loan
- Successful loan: settlement, counters, events, share price
- Rejections before lending (token, amount, pause)
- Rollback on a bad acknowledgement or short repayment
"""

import pytest
from decimal import Decimal

from vaultledger import (
    Fees, FLASH_CALLBACK_SUCCESS, FlashBorrower,
    InvalidAmount, CapacityExceeded, StaleOrInvalidRequest, IntegrityViolation, PoolPaused, ReentrantCall,
)

from tests.conftest import USDC, VAULT, usdc, make_vault, seed, compare_ledger_states


class Borrower:
    """Borrower that repays principal + fee - shortfall and returns `ack`."""

    def __init__(self, ledger, wallet="borrower", shortfall=Decimal(0), ack=FLASH_CALLBACK_SUCCESS):
        self.ledger = ledger
        self.wallet = wallet
        self.shortfall = shortfall
        self.ack = ack
        self.calls = []

    def on_flash_loan(self, initiator, token, amount, fee, data):
        self.calls.append((initiator, token, amount, fee, data))
        assert self.ledger.get_balance(self.wallet, token) >= amount
        self.ledger.transfer(self.wallet, VAULT, token, amount + fee - self.shortfall)
        return self.ack


@pytest.fixture
def lender(ledger):
    vault = make_vault(ledger, fees=Fees(flash=10), max_loan=usdc(50))
    seed(vault)
    return vault


class TestQuotes:

    def test_flash_fee_rounds_up(self, lender):
        assert lender.flash_fee(USDC, None, usdc(10)) == Decimal(10_000)
        assert lender.flash_fee(USDC, None, Decimal(1)) == Decimal(1)

    def test_flash_fee_wrong_token(self, lender):
        with pytest.raises(StaleOrInvalidRequest):
            lender.flash_fee("DAI", None, usdc(1))

    def test_max_flash_loan(self, lender):
        assert lender.max_flash_loan(USDC) == usdc(50)
        assert lender.max_flash_loan("DAI") == Decimal(0)
        lender.invest("keeper", usdc(70))
        assert lender.max_flash_loan(USDC) == usdc(30)
        lender.pause("manager")
        assert lender.max_flash_loan(USDC) == Decimal(0)

    def test_borrower_protocol(self, ledger):
        assert isinstance(Borrower(ledger), FlashBorrower)


class TestFlashLoan:
    """Tests for successful loans."""

    def test_loan_settles(self, lender, ledger):
        borrower = Borrower(ledger)
        assert lender.flash_loan(borrower, USDC, usdc(10), data=b"x") is True
        assert borrower.calls == [("borrower", USDC, usdc(10), Decimal(10_000), b"x")]
        state = lender.state
        assert state.flash.total_lent == usdc(10)
        assert state.flash.outstanding == Decimal(0)
        assert state.flash.claimable_fees == Decimal(10_000)
        assert ledger.get_balance(VAULT, USDC) == usdc(100) + Decimal(10_000)
        assert ledger.get_balance("borrower", USDC) == usdc(1_000) - Decimal(10_000)
        assert lender.events[-1].name == "FlashLoan"

    def test_fee_does_not_move_share_price(self, lender, ledger):
        lender.flash_loan(Borrower(ledger), USDC, usdc(10))
        assert lender.share_price() == Decimal(1_000_000)
        assert lender.total_assets() == usdc(100)

    def test_flash_fees_claimed_by_collector(self, lender, ledger):
        lender.flash_loan(Borrower(ledger), USDC, usdc(10))
        assert lender.claim_asset_fees("manager") == Decimal(10_000)
        assert lender.state.flash.claimable_fees == Decimal(0)
        assert ledger.get_balance("collector", USDC) == usdc(1_000) + Decimal(10_000)

    def test_initiator_recorded(self, lender, ledger):
        borrower = Borrower(ledger)
        lender.flash_loan(borrower, USDC, usdc(1), initiator="alice")
        assert borrower.calls[0][0] == "alice"
        assert lender.events[-1]["initiator"] == "alice"


class TestFlashLoanRejections:
    """Tests for loans refused or rolled back."""

    def test_wrong_token(self, lender, ledger):
        with pytest.raises(StaleOrInvalidRequest):
            lender.flash_loan(Borrower(ledger), "DAI", usdc(1))

    def test_zero_amount(self, lender, ledger):
        with pytest.raises(InvalidAmount):
            lender.flash_loan(Borrower(ledger), USDC, 0)

    def test_above_max_loan(self, lender, ledger):
        with pytest.raises(CapacityExceeded):
            lender.flash_loan(Borrower(ledger), USDC, usdc(51))

    def test_disabled_by_default(self, ledger):
        vault = make_vault(ledger)
        seed(vault)
        with pytest.raises(CapacityExceeded):
            vault.flash_loan(Borrower(ledger), USDC, usdc(1))

    def test_paused(self, lender, ledger):
        lender.pause("manager")
        with pytest.raises(PoolPaused):
            lender.flash_loan(Borrower(ledger), USDC, usdc(1))

    def test_bad_acknowledgement_rolls_back(self, lender, ledger):
        before = ledger.clone()
        events = len(lender.events)
        with pytest.raises(IntegrityViolation):
            lender.flash_loan(Borrower(ledger, ack="nope"), USDC, usdc(10))
        assert compare_ledger_states(before, ledger)["equal"]
        assert len(ledger.transaction_log) == len(before.transaction_log)
        assert len(lender.events) == events

    def test_short_repayment_rolls_back(self, lender, ledger):
        before = ledger.clone()
        with pytest.raises(IntegrityViolation):
            lender.flash_loan(Borrower(ledger, shortfall=Decimal(1)), USDC, usdc(10))
        assert compare_ledger_states(before, ledger)["equal"]
        assert lender.state.flash.total_lent == Decimal(0)
        assert lender.state.flash.outstanding == Decimal(0)

    def test_borrower_cannot_reenter(self, lender, ledger):
        class Greedy(Borrower):
            def on_flash_loan(self, initiator, token, amount, fee, data):
                lender.deposit(amount, self.wallet)
                return super().on_flash_loan(initiator, token, amount, fee, data)

        before = ledger.clone()
        with pytest.raises(ReentrantCall):
            lender.flash_loan(Greedy(ledger), USDC, usdc(10))
        assert compare_ledger_states(before, ledger)["equal"]
