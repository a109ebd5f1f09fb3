#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial: A Vault on the Ledger, Step by Step

Each step builds on the previous one. Press Enter to advance.

WHAT YOU'LL LEARN:
  1-3:  Setup           - Ledger, asset, share unit, roles, seeding
  4-5:  Share price     - Gains and proportional deposits
  6-8:  Redemptions     - Requests, liquidity events, price-protected claims
  9:    Flash loans     - Lend, call back, settle or roll back
  10:   Conservation    - Every unit still sums to zero

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import sys

from vaultledger import (
    Ledger, Vault, LedgerStrategy, RoleRegistry, Fees,
    KEEPER, MANAGER, SYSTEM_WALLET, FLASH_CALLBACK_SUCCESS,
    IntegrityViolation, token, create_vault_unit,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Configuration for the tutorial. Modify these to experiment."""
    start_time: datetime = datetime(2025, 1, 1, 9, 0, 0)
    seed_amount: int = 100
    gain: int = 10
    alice_deposit: int = 50
    request_shares: int = 20
    lock_duration: timedelta = timedelta(days=1)
    flash_amount: int = 30


CONFIG = DemoConfig()
QUICK_MODE = "--quick" in sys.argv
ONE = Decimal(10 ** 6)


def usdc(amount) -> Decimal:
    return Decimal(amount) * ONE


def fmt(amount: Decimal) -> str:
    return f"{amount / ONE:,.6f}"


def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def show_pool(vault: Vault):
    print(f"  total assets : {fmt(vault.total_assets())} USDC")
    print(f"  share supply : {fmt(vault.total_supply())} vUSDC")
    print(f"  share price  : {fmt(vault.share_price())}")


class PoliteBorrower:
    """Repays principal + fee (or less, when short is set)."""

    def __init__(self, ledger: Ledger, short: Decimal = Decimal(0)):
        self.ledger = ledger
        self.wallet = "arb"
        self.short = short

    def on_flash_loan(self, initiator, token, amount, fee, data):
        print(f"    callback: holding {fmt(amount)} USDC, owes fee {fmt(fee)}")
        self.ledger.transfer(self.wallet, "vUSDC", token, amount + fee - self.short)
        return FLASH_CALLBACK_SUCCESS


# ============================================================================
# STEPS
# ============================================================================

def step_01_setup():
    step_header(1, "LEDGER AND ASSET", "Register USDC and fund the participants.")
    ledger = Ledger("vault-demo", CONFIG.start_time, verbose=False)
    ledger.register_unit(token("USDC", "USD Coin", decimals=6))
    for wallet in ("treasury", "alice", "bob", "keeper", "collector", "arb"):
        ledger.register_wallet(wallet)
        ledger.transfer(SYSTEM_WALLET, wallet, "USDC", usdc(1_000))
    print("  six wallets funded with 1,000 USDC each")
    return ledger


def step_02_share_unit(ledger: Ledger) -> Vault:
    step_header(2, "SHARE UNIT", "Create vUSDC; the pool starts paused with a zero cap.")
    ledger.register_unit(create_vault_unit(
        "vUSDC", "USDC Vault", "USDC", 6,
        fees=Fees(entry=0, exit=0, flash=9),
        redemption_lock_duration=CONFIG.lock_duration,
        max_loan=usdc(50),
        fee_collector="collector",
    ))
    roles = RoleRegistry({"keeper": KEEPER, "treasury": MANAGER})
    vault = Vault(ledger, "vUSDC", roles, LedgerStrategy(ledger, "strategy", "vUSDC", "USDC"))
    print(f"  paused={vault.state.paused}  cap={fmt(vault.state.max_total_assets)}")
    return vault


def step_03_seed(vault: Vault):
    step_header(3, "SEED LIQUIDITY", "The treasury bootstraps the pool at 1:1.")
    shares = vault.seed_liquidity("treasury", usdc(CONFIG.seed_amount), usdc(1_000_000))
    print(f"  treasury received {fmt(shares)} vUSDC")
    show_pool(vault)


def step_04_gain(ledger: Ledger, vault: Vault):
    step_header(4, "A GAIN", "Assets arriving in the vault lift the share price.")
    ledger.transfer(SYSTEM_WALLET, "vUSDC", "USDC", usdc(CONFIG.gain))
    show_pool(vault)


def step_05_deposit(vault: Vault):
    step_header(5, "PROPORTIONAL DEPOSIT", "New shares are minted at the current price.")
    shares = vault.deposit(usdc(CONFIG.alice_deposit), "alice")
    print(f"  alice deposited {CONFIG.alice_deposit} USDC for {fmt(shares)} vUSDC")
    show_pool(vault)


def step_06_request(vault: Vault):
    step_header(6, "REDEMPTION REQUEST", "The request locks in today's price.")
    request_id = vault.request_redeem(usdc(CONFIG.request_shares), "alice", "alice")
    request = vault.state.request_of("alice")
    print(f"  request #{request_id}: {fmt(request.shares)} shares at {fmt(request.share_price)}")


def step_07_liquidity_event(ledger: Ledger, vault: Vault):
    step_header(7, "LIQUIDITY EVENT", "After the lock, a liquidate pass makes the request claimable.")
    ledger.transfer(SYSTEM_WALLET, "vUSDC", "USDC", Decimal(29_090_909))
    print(f"  price rose to {fmt(vault.share_price())} while the request waited")
    vault.liquidate("keeper", 0)
    print(f"  claimable before lock expiry: {fmt(vault.claimable_redeem_request('alice'))}")
    ledger.advance_time(ledger.current_time + CONFIG.lock_duration)
    vault.liquidate("keeper", 0)
    print(f"  claimable after lock expiry : {fmt(vault.claimable_redeem_request('alice'))}")


def step_08_claim(vault: Vault):
    step_header(8, "CLAIM", "The claim pays min(request price, current price).")
    paid = vault.redeem(usdc(CONFIG.request_shares), "alice", "alice")
    print(f"  alice received {fmt(paid)} USDC for {CONFIG.request_shares} shares")
    show_pool(vault)


def step_09_flash(ledger: Ledger, vault: Vault):
    step_header(9, "FLASH LOAN", "Borrow and repay within one call, or nothing happens.")
    vault.flash_loan(PoliteBorrower(ledger), "USDC", usdc(CONFIG.flash_amount))
    print(f"  settled; fees owed to collector: {fmt(vault.state.flash.claimable_fees)}")
    before = ledger.get_balance("arb", "USDC")
    try:
        vault.flash_loan(PoliteBorrower(ledger, short=Decimal(1)), "USDC", usdc(CONFIG.flash_amount))
    except IntegrityViolation as e:
        print(f"  short repayment rejected: {e}")
    print(f"  borrower balance unchanged: {ledger.get_balance('arb', 'USDC') == before}")


def step_10_conservation(ledger: Ledger):
    step_header(10, "CONSERVATION", "Every unit still sums to zero across all wallets.")
    result = ledger.verify_double_entry({"USDC": Decimal(0), "vUSDC": Decimal(0)})
    print(f"  valid: {result['valid']}  transactions: {len(ledger.transaction_log)}")


def main():
    """Run the complete tutorial."""
    print("=" * 70)
    print("       VAULTLEDGER - INTERACTIVE TUTORIAL")
    print("=" * 70)
    if QUICK_MODE:
        print("Running in QUICK mode (no pauses)")
    wait_for_enter()

    ledger = step_01_setup()
    wait_for_enter()
    vault = step_02_share_unit(ledger)
    wait_for_enter()
    step_03_seed(vault)
    wait_for_enter()
    step_04_gain(ledger, vault)
    wait_for_enter()
    step_05_deposit(vault)
    wait_for_enter()
    step_06_request(vault)
    wait_for_enter()
    step_07_liquidity_event(ledger, vault)
    wait_for_enter()
    step_08_claim(vault)
    wait_for_enter()
    step_09_flash(ledger, vault)
    wait_for_enter()
    step_10_conservation(ledger)

    print("""
    Next steps:
      - See vaultledger/pool/*.py for the pool engine
      - Run tests: pytest tests/
    """)


if __name__ == "__main__":
    main()
