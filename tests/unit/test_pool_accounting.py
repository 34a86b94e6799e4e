"""
test_pool_accounting.py - Unit tests for pool valuation

Tests:
- Trader PnL for long and short exposure
- Upside cap applied to display AUM
- Size-weighted entry blending
- Liquidity valuation across tokens
- Settlement vs display AUM on CollateralPool
- LP share NAV
"""

import pytest
from datetime import datetime
from decimal import Decimal

from perpledger import (
    CollateralPool, PoolMarketState, PoolConfig, AdlConfig,
    calculate_position_pnl, calculate_capped_pnl, calculate_nav,
    EssentialConfigNotSet, MissingPrice,
)
from perpledger.pool import (
    calculate_blended_entry, calculate_liquidity_usd, calculate_pool_pnl_usd,
    calculate_reduced_entry,
)


ADL = AdlConfig(Decimal("0.80"), Decimal("0.75"), Decimal("0.70"))


def make_pool(size="1", entry="50000", is_long=True, usdc="1000000"):
    pool = CollateralPool(
        pool_id="pool1",
        collateral_token="USDC",
        config=PoolConfig(
            borrowing_k=Decimal("6.36306"), borrowing_b=Decimal("6.58938"),
            liquidity_cap_usd=Decimal("2000000"),
        ),
        adl_configs={"LongBTC": ADL},
    )
    pool.market_states["LongBTC"] = PoolMarketState(
        is_long=is_long, total_size=Decimal(size), average_entry_price=Decimal(entry),
    )
    pool.credit("USDC", Decimal(usdc))
    return pool


# ============================================================================
# PNL
# ============================================================================

class TestPositionPnl:
    """Tests for calculate_position_pnl and calculate_capped_pnl."""

    def test_long_profit(self):
        assert calculate_position_pnl(True, Decimal("2"), Decimal("100"), Decimal("110")) == Decimal("20")

    def test_short_profit(self):
        assert calculate_position_pnl(False, Decimal("2"), Decimal("100"), Decimal("90")) == Decimal("20")

    def test_short_loss(self):
        assert calculate_position_pnl(False, Decimal("1"), Decimal("100"), Decimal("130")) == Decimal("-30")

    def test_zero_size(self):
        assert calculate_position_pnl(True, Decimal("0"), Decimal("100"), Decimal("130")) == Decimal("0")

    def test_cap_limits_upside(self):
        # 1 * 50000 * 0.7 = 35000
        capped = calculate_capped_pnl(Decimal("40000"), Decimal("1"), Decimal("50000"), Decimal("0.70"))
        assert capped == Decimal("35000")

    def test_cap_leaves_losses(self):
        capped = calculate_capped_pnl(Decimal("-40000"), Decimal("1"), Decimal("50000"), Decimal("0.70"))
        assert capped == Decimal("-40000")


class TestBlendedEntry:

    def test_blend(self):
        assert calculate_blended_entry(
            Decimal("1"), Decimal("100"), Decimal("3"), Decimal("200")
        ) == Decimal("175")

    def test_from_empty(self):
        assert calculate_blended_entry(
            Decimal("0"), Decimal("0"), Decimal("0.5"), Decimal("50000")
        ) == Decimal("50000")

    def test_truncated_to_18_places(self):
        blended = calculate_blended_entry(Decimal("1"), Decimal("0"), Decimal("2"), Decimal("1"))
        assert blended == Decimal("0.666666666666666666")


class TestReducedEntry:
    """Removing a leg keeps the average equal to the mean of what is left."""

    def test_remove_cheaper_leg(self):
        # 1 @ 50,000 and 1 @ 60,000 average 55,000; removing the first leaves 60,000
        assert calculate_reduced_entry(
            Decimal("2"), Decimal("55000"), Decimal("1"), Decimal("50000")
        ) == Decimal("60000")

    def test_inverse_of_blend(self):
        blended = calculate_blended_entry(Decimal("1"), Decimal("100"), Decimal("3"), Decimal("200"))
        assert calculate_reduced_entry(Decimal("4"), blended, Decimal("3"), Decimal("200")) == Decimal("100")

    def test_same_entry_unchanged(self):
        assert calculate_reduced_entry(
            Decimal("3"), Decimal("50000"), Decimal("1.5"), Decimal("50000")
        ) == Decimal("50000")

    def test_nothing_left(self):
        assert calculate_reduced_entry(
            Decimal("1"), Decimal("50000"), Decimal("1"), Decimal("50000")
        ) == Decimal("0")


# ============================================================================
# AUM
# ============================================================================

class TestPoolAum:
    """Tests for settlement and display AUM."""

    def test_liquidity_usd_multi_token(self):
        balances = {"USDC": Decimal("1000"), "BTC": Decimal("0.5")}
        prices = {"USDC": Decimal("1"), "BTC": Decimal("40000")}
        assert calculate_liquidity_usd(balances, prices) == Decimal("21000")

    def test_liquidity_usd_missing_price(self):
        with pytest.raises(MissingPrice):
            calculate_liquidity_usd({"BTC": Decimal("1")}, {})

    def test_empty_balance_needs_no_price(self):
        assert calculate_liquidity_usd({"BTC": Decimal("0")}, {}) == Decimal("0")

    def test_trader_profit_reduces_aum(self):
        pool = make_pool()
        aum = pool.aum_usd({"USDC": Decimal("1")}, {"LongBTC": Decimal("90000")})
        assert aum == Decimal("960000")

    def test_display_aum_caps_trader_profit(self):
        pool = make_pool()
        aum = pool.estimated_aum_usd({"USDC": Decimal("1")}, {"LongBTC": Decimal("90000")})
        assert aum == Decimal("965000")

    def test_trader_loss_increases_both(self):
        pool = make_pool()
        token_prices = {"USDC": Decimal("1")}
        market_prices = {"LongBTC": Decimal("40000")}
        assert pool.aum_usd(token_prices, market_prices) == Decimal("1010000")
        assert pool.estimated_aum_usd(token_prices, market_prices) == Decimal("1010000")

    def test_closed_market_needs_no_price(self):
        pool = make_pool(size="0", entry="0")
        assert pool.aum_usd({"USDC": Decimal("1")}, {}) == Decimal("1000000")

    def test_open_market_requires_price(self):
        pool = make_pool()
        with pytest.raises(MissingPrice):
            pool.aum_usd({"USDC": Decimal("1")}, {})

    def test_cap_requires_adl_config(self):
        states = {"ShortBTC": PoolMarketState(
            is_long=False, total_size=Decimal("1"), average_entry_price=Decimal("100"),
        )}
        with pytest.raises(EssentialConfigNotSet):
            calculate_pool_pnl_usd(states, {}, {"ShortBTC": Decimal("90")}, capped=True)

    def test_capacity_bounded_by_cap(self):
        pool = make_pool()
        assert pool.capacity_usd(Decimal("3000000")) == Decimal("2000000")
        assert pool.capacity_usd(Decimal("500")) == Decimal("500")


class TestPoolBalances:

    def test_debit_rejects_overdraft(self):
        pool = make_pool(usdc="10")
        with pytest.raises(ValueError):
            pool.debit("USDC", Decimal("11"))

    def test_missing_adl_config(self):
        pool = make_pool()
        with pytest.raises(EssentialConfigNotSet):
            pool.adl_config("ShortBTC")

    def test_open_markets(self):
        pool = make_pool()
        pool.market_states["ShortBTC"] = PoolMarketState(is_long=False)
        assert pool.open_markets() == ("LongBTC",)


class TestNav:

    def test_empty_pool_nav_is_one(self):
        assert calculate_nav(Decimal("0"), Decimal("0")) == Decimal("1")

    def test_nav(self):
        assert calculate_nav(Decimal("800"), Decimal("1000")) == Decimal("0.8")


class TestPoolMarketState:

    def test_negative_size_rejected(self):
        with pytest.raises(ValueError):
            PoolMarketState(is_long=True, total_size=Decimal("-1"))

    def test_empty_state_has_no_entry(self):
        with pytest.raises(ValueError):
            PoolMarketState(is_long=True, total_size=Decimal("0"), average_entry_price=Decimal("1"))

    def test_frozen(self):
        state = PoolMarketState(is_long=True, last_borrowing_update_time=datetime(2024, 1, 1))
        with pytest.raises(AttributeError):
            state.total_size = Decimal("1")
