"""
pool - Vault pools held on a Ledger

The pure modules (state, conversion, fees, redemption, operations, flash)
compute; Vault executes.
"""

from .state import (
    Fees,
    Checkpoint,
    RedemptionRequest,
    RequestAggregate,
    FlashState,
    RescueRequest,
    RESCUE_TIMELOCK,
    RESCUE_VALIDITY,
    PoolTerms,
    PoolState,
    DEFAULT_MAX_FEES,
    create_vault_unit,
    load_pool,
    to_state_dict,
    redemption_lock_transfer_rule,
)
from .conversion import (
    PoolBalances,
    read_balances,
    calculate_total_assets,
    calculate_accounted_assets,
    calculate_accounted_supply,
    calculate_available,
    calculate_share_price,
    calculate_rounding_dust,
    calculate_unowned_assets,
    assets_to_shares,
    shares_to_assets,
    calculate_deposit_shares,
    calculate_mint_assets,
)
from .fees import (
    FeeQuote,
    calculate_fees,
    calculate_fee_shares,
    calculate_unrealized_profit,
)
from .redemption import (
    ExitQuote,
    is_claimable,
    calculate_claimable_shares,
    calculate_request_price,
    calculate_cancel_cost,
    calculate_exit,
    place_request,
    release_request,
    mark_liquidity,
)
from .operations import (
    PoolEvent,
    PoolUpdate,
    compute_deposit,
    compute_mint,
    compute_withdraw,
    compute_redeem,
    compute_request_redeem,
    compute_request_withdraw,
    compute_cancel_redeem_request,
    compute_approve,
    compute_share_transfer,
    compute_fee_collection,
    compute_claim_asset_fees,
    compute_set_fees,
    compute_pause,
    compute_unpause,
    compute_liquidity_event,
    compute_request_rescue,
    compute_rescue,
)
from .flash import (
    FLASH_CALLBACK_SUCCESS,
    FlashBorrower,
    calculate_flash_fee,
    calculate_max_flash_loan,
    run_flash_loan,
)
from .vault import Vault
