#!/usr/bin/env python3
"""
demo.py - Walkthrough: a two-pool perpetual market, step by step

Each step builds on the previous one. Press Enter to advance.

WHAT YOU'LL SEE:
  1-2: Setup        - Tokens, pools, markets, liquidity providers
  3-4: Trading      - Opening across pools, borrowing accrual
  5-6: Management   - Partial close with profit, reallocation between pools
  7-8: Risk         - Liquidation waterfall, auto-deleveraging

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import logging
import sys

from perpledger import (
    PerpLedger, EngineConfig, PoolConfig, AdlConfig, MarketConfig,
    CollateralToken, PerpLedgerError,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Parameters for the walkthrough. Modify these to experiment."""
    start_time: datetime = datetime(2024, 1, 1)
    btc_price: Decimal = Decimal("50000")
    pool_deposit: Decimal = Decimal("1000000")
    trader_deposit: Decimal = Decimal("20000")
    open_size: Decimal = Decimal("3")
    days_held: int = 30
    exit_price: Decimal = Decimal("52000")
    crash_price: Decimal = Decimal("49200")
    rally_price: Decimal = Decimal("100000")


CONFIG = DemoConfig()

QUICK_MODE = "--quick" in sys.argv


def wait_for_enter():
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def section_header(text: str):
    print(f"\n--- {text} ---\n")


def prices_at(btc) -> dict:
    return {"USDC": Decimal("1"), "BTC": Decimal(btc)}


def show_position(ledger: PerpLedger, position_id: str):
    for position in ledger.list_account_positions(position_id):
        side = "long" if position.is_long else "short"
        print(f"{position_id} {position.market_id} ({side}) size {position.total_size}")
        for leg in position.legs:
            print(f"    {leg.pool_id:<8} size {leg.size:<6} entry {leg.entry_price}")
    for token, amount in ledger.list_account_collaterals(position_id):
        print(f"    collateral {token}: {amount}")


# ============================================================================
# SETUP (Steps 1-2)
# ============================================================================

def step_01_setup() -> PerpLedger:
    """Register tokens, pools and markets."""
    step_header(1, "Pools and Markets",
        "Markets borrow liquidity from one or more collateral pools.")

    ledger = PerpLedger(
        "demo",
        initial_time=CONFIG.start_time,
        config=EngineConfig(borrowing_base_apy=Decimal("0.10")),
        verbose=True,
    )
    ledger.register_token(CollateralToken("USDC", 6))
    ledger.register_token(CollateralToken("BTC", 8))

    adl = AdlConfig(reserve_rate="0.80", trigger_rate="0.75", max_pnl_rate="0.70")
    curves = {"pool1": ("6.36306", "6.58938"), "pool2": ("3.46024", "2.34434")}
    for pool_id, (k, b) in curves.items():
        ledger.create_pool(
            pool_id,
            "USDC",
            PoolConfig(
                borrowing_k=k,
                borrowing_b=b,
                liquidity_cap_usd=Decimal("5000000"),
                liquidity_fee_rate=Decimal("0.0001"),
            ),
            {"LongBTC": adl, "ShortBTC": adl},
        )

    market = MarketConfig(
        oracle_id="BTC",
        position_fee_rate="0.001",
        liquidation_fee_rate="0.002",
        initial_margin_rate="0.006",
        maintenance_margin_rate="0.005",
        lot_size="0.1",
    )
    ledger.create_market("LongBTC", True, tuple(curves), market)
    ledger.create_market("ShortBTC", False, tuple(curves), market)

    section_header("Registered")
    print(f"Pools:   {ledger.list_pools()}")
    print(f"Markets: {ledger.list_markets()}")
    return ledger


def step_02_liquidity(ledger: PerpLedger):
    """LPs fund both pools."""
    step_header(2, "Liquidity Providers",
        "LP shares are minted at NAV; the pool's AUM bounds what it can back.")
    wait_for_enter()

    prices = prices_at(CONFIG.btc_price)
    for pool_id in ledger.list_pools():
        ledger.add_liquidity(pool_id, "lp", CONFIG.pool_deposit, prices)

    section_header("Pool State")
    for pool_id in ledger.list_pools():
        print(f"{pool_id}: AUM {ledger.get_aum_usd(pool_id, prices)} "
              f"NAV {ledger.pool_nav(pool_id, prices)} "
              f"LP shares {ledger.share_balance(pool_id, 'lp')}")


# ============================================================================
# TRADING (Steps 3-4)
# ============================================================================

def step_03_open(ledger: PerpLedger):
    """Open a long that is split across both pools."""
    step_header(3, "Opening a Position",
        "Size is allocated in lots, proportional to each pool's residual capacity.")
    wait_for_enter()

    prices = prices_at(CONFIG.btc_price)
    ledger.deposit_collateral("alice:0", "USDC", CONFIG.trader_deposit)
    ledger.open_position("alice:0", "LongBTC", CONFIG.open_size, prices)

    section_header("Position")
    show_position(ledger, "alice:0")
    margin = ledger.account_margin("alice:0", prices)
    print(f"\nMargin balance {margin.margin_balance_usd}, "
          f"initial {margin.initial_margin_usd}, maintenance {margin.maintenance_margin_usd}")


def step_04_borrowing(ledger: PerpLedger):
    """Advance time and accrue borrowing."""
    step_header(4, "Borrowing Fees",
        "Each pool charges an APY that grows exponentially with its utilization.")
    wait_for_enter()

    prices = prices_at(CONFIG.btc_price)
    for pool_id in ledger.list_pools():
        print(f"{pool_id} LongBTC APY: {ledger.borrowing_apy(pool_id, 'LongBTC', prices):.6f}")

    ledger.advance_time(ledger.current_time + timedelta(days=CONFIG.days_held))
    updates = ledger.update_borrowing("LongBTC", prices)

    section_header(f"After {CONFIG.days_held} days")
    for update in updates:
        print(f"{update.pool_id}: utilization {update.utilization:.6f} "
              f"accrued per USD {update.accrued:.10f}")
    print(f"\nUnpaid borrowing: {ledger.account_margin('alice:0', prices).borrowing_fee_usd:.2f} USD")


# ============================================================================
# MANAGEMENT (Steps 5-6)
# ============================================================================

def step_05_partial_close(ledger: PerpLedger):
    """Close part of the position in profit."""
    step_header(5, "Partial Close",
        "Profits are paid by the pools; borrowing and the position fee are charged.")
    wait_for_enter()

    result = ledger.close_position("alice:0", "LongBTC", Decimal("1"), prices_at(CONFIG.exit_price))

    section_header("Realized")
    print(f"PnL:          {result.realized_pnl_usd}")
    print(f"Borrowing:    {result.borrowing_fee_usd:.2f}")
    print(f"Position fee: {result.position_fee_usd}")
    show_position(ledger, "alice:0")


def step_06_reallocate(ledger: PerpLedger):
    """Move a lot from one pool to the other."""
    step_header(6, "Reallocation",
        "Pools settle the moved size's unrealized PnL between themselves.")
    wait_for_enter()

    prices = prices_at(CONFIG.exit_price)
    result = ledger.reallocate("alice:0", "LongBTC", "pool1", "pool2", Decimal("0.1"), prices)

    section_header("Moved")
    print(f"pool1 -> pool2: {result.size} BTC, pool payment {result.pool_payment_usd} USD")
    show_position(ledger, "alice:0")


# ============================================================================
# RISK (Steps 7-8)
# ============================================================================

def step_07_liquidation(ledger: PerpLedger):
    """A thinly margined long is liquidated after a drop."""
    step_header(7, "Liquidation",
        "Margin pays PnL, then borrowing, then the liquidation fee; pools absorb the rest.")
    wait_for_enter()

    ledger.deposit_collateral("bob:0", "USDC", Decimal("1000"))
    ledger.open_position("bob:0", "LongBTC", Decimal("1"), prices_at(CONFIG.btc_price))

    crash = prices_at(CONFIG.crash_price)
    margin = ledger.account_margin("bob:0", crash)
    print(f"At {CONFIG.crash_price}: margin {margin.margin_balance_usd} "
          f"vs maintenance {margin.maintenance_margin_usd}")

    result = ledger.liquidate("bob:0", crash)
    section_header("Waterfall")
    print(f"Regime:          {result.regime.value}")
    print(f"Liquidation fee: {result.liquidation_fee_usd}")
    print(f"Left to bob:     {result.collaterals}")


def step_08_adl(ledger: PerpLedger):
    """A runaway winner is deleveraged."""
    step_header(8, "Auto-Deleveraging",
        "Once PnL passes a pool's trigger, an operator may close it at a capped profit.")
    wait_for_enter()

    ledger.deposit_collateral("carol:0", "USDC", Decimal("5000"))
    ledger.open_position("carol:0", "LongBTC", Decimal("1"), prices_at(CONFIG.btc_price))

    rally = prices_at(CONFIG.rally_price)
    print(f"ADL allowed at {CONFIG.rally_price}: "
          f"{ledger.is_deleverage_allowed('carol:0', 'LongBTC', rally)}")

    try:
        ledger.fill_adl_order("carol:0", "LongBTC", rally, "keeper")
    except PerpLedgerError as exc:
        print(f"Rejected: {type(exc).__name__}: {exc}")

    ledger.grant_deleverage_role("keeper")
    result = ledger.fill_adl_order("carol:0", "LongBTC", rally, "keeper")
    section_header("Deleveraged")
    print(f"Capped PnL: {result.realized_pnl_usd} (uncapped would be "
          f"{CONFIG.rally_price - CONFIG.btc_price})")


def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    print("""
    perpledger walkthrough

    Traders post collateral into position accounts. Each market borrows its
    liquidity from collateral pools funded by LPs. Pools earn borrowing fees
    and take the other side of trader PnL.
    """)
    ledger = step_01_setup()
    step_02_liquidity(ledger)
    step_03_open(ledger)
    step_04_borrowing(ledger)
    step_05_partial_close(ledger)
    step_06_reallocate(ledger)
    step_07_liquidation(ledger)
    step_08_adl(ledger)

    section_header("Summary")
    prices = prices_at(CONFIG.rally_price)
    for pool_id in ledger.list_pools():
        print(f"{pool_id}: AUM {ledger.get_aum_usd(pool_id, prices):.2f} "
              f"NAV {ledger.pool_nav(pool_id, prices):.6f}")
    print(f"Fees collected: {dict(ledger.fee_router.collected)}")
    print(f"Operations logged: {len(ledger.operation_log)}")


if __name__ == "__main__":
    main()
