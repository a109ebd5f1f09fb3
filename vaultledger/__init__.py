"""
vaultledger - Pooled-custody vault accounting on a double-entry ledger

Usage:
    from datetime import datetime
    from decimal import Decimal
    from vaultledger import Ledger, Vault, RoleRegistry, ADMIN, SYSTEM_WALLET, token, create_vault_unit

    ledger = Ledger("main", datetime(2025, 1, 1))
    ledger.register_unit(token("USDC", "USD Coin", decimals=6))
    ledger.register_unit(create_vault_unit("vUSDC", "USDC Vault", "USDC", 6))
    ledger.register_wallet("treasury")
    ledger.register_wallet("alice")
    ledger.transfer(SYSTEM_WALLET, "treasury", "USDC", Decimal("100000000"))
    ledger.transfer(SYSTEM_WALLET, "alice", "USDC", Decimal("50000000"))

    vault = Vault(ledger, "vUSDC", RoleRegistry({"treasury": ADMIN}))
    vault.seed_liquidity("treasury", Decimal("100000000"), Decimal("1000000000"))
    shares = vault.deposit(Decimal("50000000"), "alice")
    vault.request_redeem(shares, "alice", "alice")
"""

__version__ = "0.1.0"

# Core types
from .core import (
    LedgerView,
    Move,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    build_transaction,
    Unit,
    UnitStateChange,
    ExecuteResult,
    token,
    SYSTEM_WALLET,
    UNIT_TYPE_TOKEN,
    UNIT_TYPE_VAULT_SHARE,
    # Errors
    LedgerError,
    InvalidAmount,
    CapacityExceeded,
    Unauthorized,
    StaleOrInvalidRequest,
    IntegrityViolation,
    InsufficientFunds,
    BalanceConstraintViolation,
    TransferRuleViolation,
    ReentrantCall,
    PoolPaused,
    UnitNotRegistered,
    WalletNotRegistered,
)

# Ledger
from .ledger import Ledger

# Arithmetic
from .fixed_point import (
    BP_BASIS,
    SECONDS_PER_YEAR,
    to_amount,
    mul_div,
    bp,
    sub_bp,
    add_bp,
    rev_sub_bp,
)

# Roles and strategies
from .access import AccessControl, RoleRegistry, KEEPER, MANAGER, ADMIN
from .strategy import Strategy, LedgerStrategy

# Pools
from .pool import (
    Fees,
    DEFAULT_MAX_FEES,
    FeeQuote,
    PoolEvent,
    create_vault_unit,
    load_pool,
    FLASH_CALLBACK_SUCCESS,
    FlashBorrower,
    Vault,
)

__all__ = [
    'LedgerView', 'Move', 'Transaction', 'PendingTransaction', 'TransactionOrigin', 'OriginType',
    'build_transaction', 'Unit', 'UnitStateChange', 'ExecuteResult', 'token',
    'SYSTEM_WALLET', 'UNIT_TYPE_TOKEN', 'UNIT_TYPE_VAULT_SHARE',
    'LedgerError', 'InvalidAmount', 'CapacityExceeded', 'Unauthorized', 'StaleOrInvalidRequest',
    'IntegrityViolation', 'InsufficientFunds', 'BalanceConstraintViolation', 'TransferRuleViolation',
    'ReentrantCall', 'PoolPaused', 'UnitNotRegistered', 'WalletNotRegistered',
    'Ledger',
    'BP_BASIS', 'SECONDS_PER_YEAR', 'to_amount', 'mul_div', 'bp', 'sub_bp', 'add_bp', 'rev_sub_bp',
    'AccessControl', 'RoleRegistry', 'KEEPER', 'MANAGER', 'ADMIN',
    'Strategy', 'LedgerStrategy',
    'Fees', 'DEFAULT_MAX_FEES', 'FeeQuote', 'PoolEvent', 'create_vault_unit', 'load_pool',
    'FLASH_CALLBACK_SUCCESS', 'FlashBorrower', 'Vault',
]
