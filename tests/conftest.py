"""
conftest.py - Shared pytest fixtures for perpledger tests

Provides the standard test world used across unit, functional and
conformance tests:
- Three tokens: USDC (6 decimals), ARB (18), BTC (8)
- Up to three collateral pools (pool1/pool2 in USDC, pool3 in BTC)
- Two markets on the BTC oracle: LongBTC and ShortBTC
- Builders for funded ledgers and price maps
"""

import copy
import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, Optional

from perpledger import (
    PerpLedger, EngineConfig, PoolConfig, AdlConfig, MarketConfig,
    CollateralToken, FeeCollector, RecordingTokenBridge,
)


T0 = datetime(2024, 1, 1)

TRADER = "trader:0"
LP = "lp"

POOL_CURVES = {
    "pool1": ("USDC", Decimal("6.36306"), Decimal("6.58938")),
    "pool2": ("USDC", Decimal("3.46024"), Decimal("2.34434")),
    "pool3": ("BTC", Decimal("1.92131"), Decimal("2.91416")),
}

DEFAULT_ADL = AdlConfig(
    reserve_rate=Decimal("0.80"),
    trigger_rate=Decimal("0.75"),
    max_pnl_rate=Decimal("0.70"),
)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def make_prices(btc="50000", arb="2") -> Dict[str, Decimal]:
    return {"USDC": Decimal("1"), "ARB": Decimal(str(arb)), "BTC": Decimal(str(btc))}


def market_config(lot_size: str = "0.1", **overrides) -> MarketConfig:
    values = dict(
        oracle_id="BTC",
        position_fee_rate=Decimal("0.001"),
        liquidation_fee_rate=Decimal("0.002"),
        initial_margin_rate=Decimal("0.006"),
        maintenance_margin_rate=Decimal("0.005"),
        lot_size=Decimal(lot_size),
    )
    values.update(overrides)
    return MarketConfig(**values)


def build_ledger(
    pools: Iterable[str] = ("pool1", "pool2", "pool3"),
    lot_size: str = "0.1",
    high_priority: Iterable[str] = (),
    funded: bool = True,
    swapper=None,
) -> PerpLedger:
    """
    Build a ledger with the standard tokens, pools and both BTC markets.

    With funded=True, USDC pools receive 1,000,000 USDC and the BTC pool
    20 BTC from LP, at BTC = 50,000. After the 0.01% liquidity fee each
    pool holds 999,900 USD of AUM.
    """
    pools = tuple(pools)
    high_priority = set(high_priority)
    ledger = PerpLedger(
        "test",
        initial_time=T0,
        config=EngineConfig(borrowing_base_apy=Decimal("0.10")),
        fee_router=FeeCollector(),
        token_bridge=RecordingTokenBridge(),
        swapper=swapper,
    )
    ledger.register_token(CollateralToken("USDC", 6))
    ledger.register_token(CollateralToken("ARB", 18))
    ledger.register_token(CollateralToken("BTC", 8))
    for pool_id in pools:
        token, k, b = POOL_CURVES[pool_id]
        ledger.create_pool(
            pool_id,
            token,
            PoolConfig(
                borrowing_k=k,
                borrowing_b=b,
                liquidity_cap_usd=Decimal("1000000"),
                liquidity_fee_rate=Decimal("0.0001"),
                is_high_priority=pool_id in high_priority,
            ),
            {"LongBTC": DEFAULT_ADL, "ShortBTC": DEFAULT_ADL},
        )
    ledger.create_market("LongBTC", True, pools, market_config(lot_size))
    ledger.create_market("ShortBTC", False, pools, market_config(lot_size))
    if funded:
        prices = make_prices()
        for pool_id in pools:
            amount = Decimal("20") if POOL_CURVES[pool_id][0] == "BTC" else Decimal("1000000")
            ledger.add_liquidity(pool_id, LP, amount, prices)
    return ledger


def snapshot(ledger: PerpLedger):
    """Comparable copy of every piece of mutable ledger state."""
    return copy.deepcopy((ledger.pools, ledger.accounts, ledger.list_active_position_ids(0, 10_000)))


def after(days: float = 0, seconds: float = 0, start: Optional[datetime] = None) -> datetime:
    return (start or T0) + timedelta(days=days, seconds=seconds)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def prices():
    """Standard prices: USDC 1, ARB 2, BTC 50,000."""
    return make_prices()


@pytest.fixture
def ledger():
    """Funded three-pool ledger."""
    return build_ledger()


@pytest.fixture
def single_pool_ledger():
    """Funded ledger whose markets are backed by pool1 only."""
    return build_ledger(pools=("pool1",))


@pytest.fixture
def two_pool_ledger():
    """Funded ledger with two USDC pools."""
    return build_ledger(pools=("pool1", "pool2"))


@pytest.fixture(scope="session")
def ledger_factory():
    """Builder usable from hypothesis tests."""
    return build_ledger


@pytest.fixture(scope="session")
def prices_factory():
    return make_prices


@pytest.fixture(scope="session")
def snapshot_state():
    return snapshot
