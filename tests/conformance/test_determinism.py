"""
Determinism Conformance Tests

INVARIANT: Given identical inputs, the pool produces identical outputs.

    ∀ operation sequences I:
        run(ledger1, I) = run(ledger2, I)

Both ledgers end with the same balances, the same pool state, the same
transaction intents and the same published events. A clone taken midway
and fed the rest of the sequence reaches the same end state too.
"""

from hypothesis import given, settings
from hypothesis import strategies as st
from decimal import Decimal

from vaultledger import Fees, LedgerError, LedgerStrategy, Vault

from tests.conftest import (
    usdc, after, make_ledger, make_vault, seed, ledger_state_equals,
)


STEPS = st.lists(
    st.tuples(
        st.sampled_from(["deposit", "redeem", "request", "liquidate", "invest", "advance", "collect"]),
        st.sampled_from(["alice", "bob"]),
        st.integers(min_value=1, max_value=200),
    ),
    min_size=1,
    max_size=12,
)


def _build():
    ledger = make_ledger()
    vault = make_vault(ledger, fees=Fees(perf=2000, mgmt=200, entry=10, exit=10))
    seed(vault)
    return ledger, vault


def _run(ledger, vault, steps):
    outcomes = []
    for op, who, n in steps:
        try:
            if op == "deposit":
                result = vault.deposit(usdc(n), who)
            elif op == "redeem":
                result = vault.redeem(min(usdc(n), vault.balance_of(who)), who, who)
            elif op == "request":
                result = vault.request_redeem(min(usdc(n), vault.balance_of(who)), who, who)
            elif op == "liquidate":
                result = vault.liquidate("keeper", usdc(n))
            elif op == "invest":
                result = vault.invest("keeper", min(usdc(n), vault.available()))
            elif op == "collect":
                result = vault.collect_fees("manager")
            else:
                after(ledger, days=n)
                result = None
        except LedgerError as e:
            result = type(e).__name__
        outcomes.append(result)
    return outcomes


def _clone_vault(ledger, vault):
    """A Vault over a cloned ledger, sharing roles and a strategy bound to the clone."""
    strategy = LedgerStrategy(ledger, vault.strategy.wallet, vault.symbol, vault.terms.asset)
    strategy.pending_rewards = vault.strategy.pending_rewards
    return Vault(ledger, vault.symbol, vault.access, strategy)


class TestDeterminismProperties:
    """Property-based determinism tests."""

    @given(STEPS)
    @settings(max_examples=50, deadline=None)
    def test_same_inputs_same_outputs(self, steps):
        """
        PROPERTY: Two independent vaults fed the same operations agree exactly.
        """
        ledger1, vault1 = _build()
        ledger2, vault2 = _build()
        assert _run(ledger1, vault1, steps) == _run(ledger2, vault2, steps)
        assert ledger_state_equals(ledger1, ledger2)
        assert [tx.intent_id for tx in ledger1.transaction_log] == [tx.intent_id for tx in ledger2.transaction_log]
        assert vault1.events == vault2.events

    @given(STEPS, STEPS)
    @settings(max_examples=30, deadline=None)
    def test_clone_continues_identically(self, head, tail):
        """
        PROPERTY: A cloned ledger wrapped in a new Vault continues exactly like the original.
        """
        ledger, vault = _build()
        _run(ledger, vault, head)
        copy = ledger.clone()
        copy_vault = _clone_vault(copy, vault)
        assert _run(ledger, vault, tail) == _run(copy, copy_vault, tail)
        assert ledger_state_equals(ledger, copy)


class TestDeterminismExamples:

    def test_event_log_matches_operations(self):
        ledger, vault = _build()
        vault.deposit(usdc(50), "alice")
        vault.request_redeem(usdc(20), "alice", "alice")
        vault.liquidate("keeper", Decimal(0))
        vault.redeem(usdc(20), "alice", "alice")
        names = [event.name for event in vault.events]
        assert names[-4:] == ["Deposit", "RedeemRequest", "Liquidate", "Withdraw"]
