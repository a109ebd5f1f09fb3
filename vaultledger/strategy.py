"""
strategy.py - Capital deployment back-ends for a vault

Classes:
- Strategy: Protocol the vault uses for capital it does not hold idle
- LedgerStrategy: Keeps deployed capital in its own ledger wallet

How a strategy earns yield is its own business; the vault only sees
invested_value() and the assets that come back from liquidate() and
harvest().
"""

from decimal import Decimal
from typing import Protocol, runtime_checkable

from .core import InsufficientFunds, InvalidAmount, SYSTEM_WALLET


@runtime_checkable
class Strategy(Protocol):
    """
    Protocol for strategy back-ends.

    invest() and liquidate() move assets between the vault wallet and the
    strategy and return the amount actually moved. harvest() delivers
    rewards to the vault wallet and returns their amount.
    """

    def invested_value(self) -> Decimal:
        """Current value of the deployed capital, in asset minimal units."""
        ...

    def invest(self, amount: Decimal) -> Decimal:
        ...

    def liquidate(self, amount: Decimal) -> Decimal:
        ...

    def harvest(self) -> Decimal:
        ...


class LedgerStrategy:
    """
    Strategy holding deployed capital in a wallet on the vault's ledger.

    Yield is simulated: accrue() mints asset into the strategy wallet (the
    invested value rises at once), add_rewards() queues an amount that the
    next harvest() pays straight to the vault wallet.

    Example:
        strategy = LedgerStrategy(ledger, "strat", "vUSDC", "USDC")
        vault = Vault(ledger, "vUSDC", roles, strategy)
        vault.invest("ops", Decimal("60000000"))
        strategy.accrue(Decimal("1000000"))
    """

    def __init__(self, ledger, wallet: str, vault_wallet: str, asset: str):
        self.ledger = ledger
        self.wallet = wallet
        self.vault_wallet = vault_wallet
        self.asset = asset
        self.pending_rewards = Decimal("0")
        if not ledger.is_registered(wallet):
            ledger.register_wallet(wallet)

    def _contract_id(self, what: str) -> str:
        return f"{self.wallet}:{what}:{len(self.ledger.transaction_log)}"

    def invested_value(self) -> Decimal:
        return self.ledger.get_balance(self.wallet, self.asset)

    def invest(self, amount: Decimal) -> Decimal:
        if amount <= 0:
            raise InvalidAmount("invest amount must be positive")
        self.ledger.transfer(self.vault_wallet, self.wallet, self.asset, amount, self._contract_id("invest"))
        return amount

    def liquidate(self, amount: Decimal) -> Decimal:
        recovered = min(amount, self.invested_value())
        if recovered > 0:
            self.ledger.transfer(self.wallet, self.vault_wallet, self.asset, recovered,
                                 self._contract_id("liquidate"))
        return recovered

    def harvest(self) -> Decimal:
        rewards, self.pending_rewards = self.pending_rewards, Decimal("0")
        if rewards > 0:
            self.ledger.transfer(SYSTEM_WALLET, self.vault_wallet, self.asset, rewards,
                                 self._contract_id("harvest"))
        return rewards

    def accrue(self, amount: Decimal) -> None:
        """Grow the invested value by `amount` (negative to book a loss)."""
        if amount > 0:
            self.ledger.transfer(SYSTEM_WALLET, self.wallet, self.asset, amount,
                                 self._contract_id("accrue"))
        elif amount < 0:
            if -amount > self.invested_value():
                raise InsufficientFunds(f"{self.wallet} cannot lose more than {self.invested_value()}")
            self.ledger.transfer(self.wallet, SYSTEM_WALLET, self.asset, -amount,
                                 self._contract_id("loss"))

    def add_rewards(self, amount: Decimal) -> None:
        """Queue rewards for the next harvest()."""
        if amount <= 0:
            raise InvalidAmount("rewards must be positive")
        self.pending_rewards += amount

    def __repr__(self):
        return f"LedgerStrategy({self.wallet}, invested={self.invested_value()})"
