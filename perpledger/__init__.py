"""
perpledger - Multi-pool perpetual trading ledger

Position and collateral accounting for a perpetual exchange whose markets are
backed by several LP collateral pools.

Usage:
    from decimal import Decimal
    from perpledger import (
        PerpLedger, CollateralToken, PoolConfig, AdlConfig, MarketConfig,
    )

    ledger = PerpLedger("perp")
    ledger.register_token(CollateralToken("USDC", 6))
    ledger.create_pool(
        "pool1", "USDC",
        PoolConfig(borrowing_k=Decimal("6.36306"), borrowing_b=Decimal("6.58938"),
                   liquidity_cap_usd=Decimal("1000000")),
        {"LongBTC": AdlConfig(Decimal("0.80"), Decimal("0.75"), Decimal("0.70"))},
    )
    ledger.create_market("LongBTC", True, ["pool1"], MarketConfig(
        oracle_id="BTC", position_fee_rate=Decimal("0.001"),
        liquidation_fee_rate=Decimal("0.002"), initial_margin_rate=Decimal("0.006"),
        maintenance_margin_rate=Decimal("0.005"), lot_size=Decimal("0.1"),
    ))

    prices = {"USDC": Decimal("1"), "BTC": Decimal("50000")}
    ledger.add_liquidity("pool1", "lp", Decimal("500000"), prices)
    ledger.deposit_collateral("trader:0", "USDC", Decimal("10000"))
    ledger.open_position("trader:0", "LongBTC", Decimal("1"), prices)
"""

from .core import (
    Transfer,
    OperationType,
    LiquidationRegime,
    FEE_WALLET,
    EXTERNAL_WALLET,
    SECONDS_PER_YEAR,
    DEFAULT_DUST_THRESHOLD_USD,
    account_wallet,
    pool_wallet,
    to_decimal,
    to_wad,
    PerpLedgerError,
    InvalidAmount,
    InvalidCloseSize,
    EssentialConfigNotSet,
    MissingPrice,
    StalePrice,
    SafePositionAccount,
    UnknownPool,
    UnknownMarket,
    UnknownToken,
    PositionNotFound,
    UnauthorizedCaller,
    DeleverageNotAllowed,
    MarketFull,
    InsufficientLiquidity,
    LiquidityCapExceeded,
    UnsafePositionAccount,
    InsufficientCollateralUsd,
)

from .config import (
    EngineConfig,
    PoolConfig,
    AdlConfig,
    MarketConfig,
    load_engine_config,
    load_pool_config,
    load_adl_config,
    load_market_config,
)

from .tokens import CollateralToken, to_raw_amount, from_raw_amount

from .pricing_source import (
    PriceOracle,
    StaticPriceOracle,
    TimeSeriesPriceOracle,
    collect_prices,
)

from .borrowing import (
    calculate_utilization,
    calculate_borrowing_apy,
    calculate_accrual_delta,
    calculate_borrowing_fee,
)

from .pool import (
    CollateralPool,
    PoolMarketState,
    calculate_position_pnl,
    calculate_capped_pnl,
    calculate_nav,
)

from .market import Market, MarketStateView, BackingPoolView

from .account import (
    PoolLeg,
    PositionAccount,
    PositionView,
    AccountView,
    encode_position_id,
    decode_position_id,
)

from .allocation import (
    PoolCapacity,
    allocate_open_size,
    allocate_close_size,
    round_to_lot,
)

from .margin import LegExposure, MarginStatus, calculate_margin_status

from .liquidation import (
    WaterfallStep,
    LiquidatedLeg,
    apply_waterfall_step,
    classify_liquidation,
    is_deleverage_triggered,
    calculate_deleverage_pnl,
)

from .collaterals import (
    CollateralPolicy,
    OrderedCollateralPolicy,
    DebitPlan,
    plan_collateral_debit,
    calculate_collateral_usd,
)

from .collaborators import (
    TokenBridge,
    FeeRouter,
    Swapper,
    SwapFailed,
    RecordingTokenBridge,
    FeeCollector,
    FixedRateSwapper,
)

from .results import (
    LegChange,
    PositionResult,
    LiquidationResult,
    ReallocationResult,
    LiquidityResult,
    CollateralResult,
    BorrowingUpdate,
    OperationRecord,
)

from .ledger import PerpLedger


__all__ = [
    # Core
    'Transfer', 'OperationType', 'LiquidationRegime',
    'FEE_WALLET', 'EXTERNAL_WALLET', 'SECONDS_PER_YEAR', 'DEFAULT_DUST_THRESHOLD_USD',
    'account_wallet', 'pool_wallet', 'to_decimal', 'to_wad',
    # Errors
    'PerpLedgerError', 'InvalidAmount', 'InvalidCloseSize', 'EssentialConfigNotSet',
    'MissingPrice', 'StalePrice', 'SafePositionAccount', 'UnknownPool', 'UnknownMarket',
    'UnknownToken', 'PositionNotFound', 'UnauthorizedCaller', 'DeleverageNotAllowed',
    'MarketFull', 'InsufficientLiquidity', 'LiquidityCapExceeded',
    'UnsafePositionAccount', 'InsufficientCollateralUsd',
    # Config
    'EngineConfig', 'PoolConfig', 'AdlConfig', 'MarketConfig',
    'load_engine_config', 'load_pool_config', 'load_adl_config', 'load_market_config',
    # Tokens and pricing
    'CollateralToken', 'to_raw_amount', 'from_raw_amount',
    'PriceOracle', 'StaticPriceOracle', 'TimeSeriesPriceOracle', 'collect_prices',
    # Borrowing and pools
    'calculate_utilization', 'calculate_borrowing_apy', 'calculate_accrual_delta',
    'calculate_borrowing_fee',
    'CollateralPool', 'PoolMarketState', 'calculate_position_pnl', 'calculate_capped_pnl',
    'calculate_nav',
    # Markets and accounts
    'Market', 'MarketStateView', 'BackingPoolView',
    'PoolLeg', 'PositionAccount', 'PositionView', 'AccountView',
    'encode_position_id', 'decode_position_id',
    # Allocation, margin, liquidation
    'PoolCapacity', 'allocate_open_size', 'allocate_close_size', 'round_to_lot',
    'LegExposure', 'MarginStatus', 'calculate_margin_status',
    'WaterfallStep', 'LiquidatedLeg', 'apply_waterfall_step', 'classify_liquidation',
    'is_deleverage_triggered', 'calculate_deleverage_pnl',
    # Collateral and collaborators
    'CollateralPolicy', 'OrderedCollateralPolicy', 'DebitPlan', 'plan_collateral_debit',
    'calculate_collateral_usd',
    'TokenBridge', 'FeeRouter', 'Swapper', 'SwapFailed',
    'RecordingTokenBridge', 'FeeCollector', 'FixedRateSwapper',
    # Results
    'LegChange', 'PositionResult', 'LiquidationResult', 'ReallocationResult',
    'LiquidityResult', 'CollateralResult', 'BorrowingUpdate', 'OperationRecord',
    # Ledger
    'PerpLedger',
]
