"""
conftest.py - Shared pytest fixtures for vault tests

Provides common fixtures used across unit, functional and conformance tests:
- A ledger with the USDC asset and funded participant wallets
- An unseeded vault and a seeded one (100 USDC from the treasury)
- Amount helpers and a ledger comparison utility
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Optional

from vaultledger import (
    Ledger, Vault, LedgerStrategy, RoleRegistry,
    KEEPER, MANAGER, ADMIN, SYSTEM_WALLET,
    token, create_vault_unit,
)


START = datetime(2025, 1, 1)
USDC = "USDC"
VAULT = "vUSDC"
STRATEGY = "strategy"
PARTICIPANTS = ("alice", "bob", "carol", "treasury", "collector", "borrower")


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def usdc(amount) -> Decimal:
    """Whole or fractional USDC in minimal units (6 decimals)."""
    return Decimal(int(Decimal(str(amount)) * Decimal(10 ** 6)))


def fund(ledger: Ledger, wallet: str, amount: Decimal, unit: str = USDC) -> None:
    """Issue `amount` to wallet through the system wallet."""
    ledger.transfer(SYSTEM_WALLET, wallet, unit, amount)


def donate(ledger: Ledger, amount: Decimal, wallet: str = VAULT) -> None:
    """Send assets straight to the vault wallet, raising the share price at once."""
    ledger.transfer(SYSTEM_WALLET, wallet, USDC, amount)


def make_ledger(balances: Optional[Dict[str, Decimal]] = None) -> Ledger:
    """Ledger with USDC registered and every participant funded."""
    ledger = Ledger("test", START, verbose=False, test_mode=True)
    ledger.register_unit(token(USDC, "USD Coin", decimals=6))
    for wallet in PARTICIPANTS:
        ledger.register_wallet(wallet)
    if balances is None:
        balances = {w: usdc(1_000) for w in PARTICIPANTS}
        balances["treasury"] = usdc(10_000)
    for wallet, amount in balances.items():
        if not ledger.is_registered(wallet):
            ledger.register_wallet(wallet)
        if amount > 0:
            fund(ledger, wallet, amount)
    return ledger


def make_roles() -> RoleRegistry:
    return RoleRegistry({"keeper": KEEPER, "manager": MANAGER, "admin": ADMIN, "treasury": ADMIN})


def make_vault(ledger: Ledger, with_strategy: bool = True, **unit_kwargs) -> Vault:
    """Register the vUSDC share unit and wrap it in a Vault."""
    unit_kwargs.setdefault("fee_collector", "collector")
    ledger.register_unit(create_vault_unit(VAULT, "USDC Vault", USDC, 6, **unit_kwargs))
    strategy = LedgerStrategy(ledger, STRATEGY, VAULT, USDC) if with_strategy else None
    return Vault(ledger, VAULT, make_roles(), strategy)


def seed(vault: Vault, amount: Decimal = None, cap: Decimal = None) -> Decimal:
    return vault.seed_liquidity("treasury", amount or usdc(100), cap or usdc(1_000_000))


def after(ledger: Ledger, **delta) -> None:
    """Advance the ledger clock by a timedelta given as keyword arguments."""
    ledger.advance_time(ledger.current_time + timedelta(**delta))


def compare_ledger_states(ledger1: Ledger, ledger2: Ledger) -> dict:
    """Compare balances and unit states of two ledgers."""
    balance_diffs = []
    state_diffs = []
    wallets = ledger1.registered_wallets | ledger2.registered_wallets
    units = set(ledger1.units) | set(ledger2.units)
    for wallet in sorted(wallets):
        for unit in sorted(units):
            b1 = ledger1.balances.get(wallet, {}).get(unit, Decimal("0"))
            b2 = ledger2.balances.get(wallet, {}).get(unit, Decimal("0"))
            if b1 != b2:
                balance_diffs.append((wallet, unit, b1, b2))
    for unit in sorted(units):
        s1 = ledger1.units[unit].state if unit in ledger1.units else None
        s2 = ledger2.units[unit].state if unit in ledger2.units else None
        if s1 != s2:
            state_diffs.append(unit)
    return {
        "equal": not balance_diffs and not state_diffs,
        "balance_diffs": balance_diffs,
        "state_diffs": state_diffs,
    }


def ledger_state_equals(ledger1: Ledger, ledger2: Ledger) -> bool:
    return compare_ledger_states(ledger1, ledger2)["equal"]


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def ledger():
    """Ledger with USDC and funded participants (1,000 each, 10,000 for treasury)."""
    return make_ledger()


@pytest.fixture
def vault(ledger):
    """Unseeded vault: paused, zero cap, fee collector set."""
    return make_vault(ledger)


@pytest.fixture
def seeded_vault(vault):
    """Vault seeded with 100 USDC by the treasury (100,000,000 shares)."""
    seed(vault)
    return vault


@pytest.fixture
def strategy(vault):
    return vault.strategy
